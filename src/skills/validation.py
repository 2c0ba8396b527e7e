"""Param schemas per action type and the validation decorator for handlers."""

from functools import wraps
from typing import Any, Callable, Dict, List, Literal, Type, TypeVar, cast

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..ignition.errors import InvalidParamsError

F = TypeVar("F", bound=Callable[..., Any])


class OpaqueParams(BaseModel):
    """Fallback for action types without a known schema; keeps every key."""

    model_config = ConfigDict(extra="allow")


class McpCallParams(BaseModel):
    """Params for ``mcp:call``."""

    model_config = ConfigDict(extra="forbid")

    server: str = Field(..., min_length=1, description="Server slug or id")
    tool: str = Field(..., min_length=1, description="Tool name on the server")
    params: Dict[str, Any] = Field(default_factory=dict)


class SetVariableParams(BaseModel):
    """Params for ``variable:set``."""

    value: Any = None


class LogParams(BaseModel):
    """Params for ``log``."""

    message: str = ""
    level: Literal["debug", "info", "warning", "error"] = "info"


class WaitParams(BaseModel):
    """Params for ``wait``."""

    ms: int = Field(..., ge=0, le=300_000)


class ConfigSetParams(BaseModel):
    """Params for ``config:set``."""

    values: Dict[str, Any] = Field(..., min_length=1)


PARAM_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "mcp:call": McpCallParams,
    "variable:set": SetVariableParams,
    "log": LogParams,
    "wait": WaitParams,
    "config:set": ConfigSetParams,
}


def params_schema_for(action_type: str) -> Type[BaseModel]:
    """Schema for an action type, falling back to OpaqueParams."""
    return PARAM_SCHEMAS.get(action_type, OpaqueParams)


def parse_params(action_type: str, params: Dict[str, Any]) -> BaseModel:
    """
    Validate params against their action type's schema.

    Raises:
        InvalidParamsError: If the params do not match
    """
    schema = params_schema_for(action_type)
    try:
        return schema(**params)
    except ValidationError as e:
        raise InvalidParamsError(
            action_type=action_type,
            schema=schema,
            params=params,
            validation_error=e,
        ) from e


def required_param_names(action_type: str) -> List[str]:
    """Names of params a manifest must declare for an action type."""
    schema = params_schema_for(action_type)
    return [name for name, info in schema.model_fields.items() if info.is_required()]


def validate_params(schema: Type[BaseModel]) -> Callable[[F], F]:
    """
    Decorator to validate resolved handler params against a Pydantic schema.

    Validates params before the handler's handle() method runs. Raises
    InvalidParamsError with detailed validation errors if validation fails;
    ActionHandler.run turns that into a failed ActionResult.

    Args:
        schema: Pydantic BaseModel class to validate against

    Returns:
        Decorated function

    Example:
        ```python
        class SendSms(ActionHandler):
            type = "sms:send"

            @validate_params(SendSmsParams)
            async def handle(self, params, context):
                # params is guaranteed to match SendSmsParams here
                ...
        ```
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(self: Any, params: Dict[str, Any], context: Any) -> Any:
            try:
                validated = schema(**params)
                validated_params = validated.model_dump()
            except ValidationError as e:
                raise InvalidParamsError(
                    action_type=getattr(self, "type", "unknown"),
                    schema=schema,
                    params=params,
                    validation_error=e,
                ) from e

            return await func(self, validated_params, context)

        return cast(F, wrapper)

    return decorator
