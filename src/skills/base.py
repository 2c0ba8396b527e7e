"""Base ActionHandler class - foundation for all action handlers."""

import inspect
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ..ignition.context import ExecutionContext
    from ..ignition.models import AuditLogEntry


class ActionResult(BaseModel):
    """
    What a handler reports back.

    Handlers that change external state set ``reversible`` and give the
    ``before_state`` snapshot taken before they mutated anything, so the
    change can be rolled back later.
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    reversible: bool = False
    target: Optional[str] = None
    before_state: Optional[Any] = Field(None, alias="beforeState")
    after_state: Optional[Any] = Field(None, alias="afterState")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **kwargs: Any) -> "ActionResult":
        return cls(success=True, data=data, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs: Any) -> "ActionResult":
        return cls(success=False, error=error, **kwargs)


def coerce_result(value: Any) -> ActionResult:
    """Accept an ActionResult, a result dict, or bare data from a handler."""
    if isinstance(value, ActionResult):
        return value
    if isinstance(value, dict) and "success" in value:
        return ActionResult.model_validate(value)
    return ActionResult.ok(value)


class HandlerTrace(BaseModel):
    """Trace of a single handler invocation."""

    action_type: str
    invocation_id: str
    params: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class ActionHandler(ABC):
    """
    Base class for all action handlers.

    A handler is the concrete implementation behind one action type. The
    engine resolves templates and checks permissions before calling
    ``handle``; the handler must not write to ``context.variables``.

    Example:
        class CreateNote(ActionHandler):
            type = "notes:create"
            permission = "notes:write"

            async def handle(self, params, context):
                note = await notes_api.create(params["text"])
                return ActionResult.ok(note, target=f"note:{note['id']}")
    """

    type: str = "base"
    description: str = ""
    permission: Optional[str] = None

    def required_permission(self, params: Dict[str, Any]) -> Optional[str]:
        """Capability the resolved params need; None means no check."""
        return self.permission

    @abstractmethod
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        """
        Perform the action.

        Args:
            params: Params with every template resolved
            context: The run's execution context

        Returns:
            ActionResult describing the outcome
        """

    async def revert(
        self, entry: "AuditLogEntry", context: Optional["ExecutionContext"]
    ) -> ActionResult:
        """Undo a logged action using ``entry.before_state``."""
        raise NotImplementedError(f"Handler '{self.type}' has no inverse")

    @property
    def supports_revert(self) -> bool:
        return type(self).revert is not ActionHandler.revert

    async def run(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> tuple[ActionResult, HandlerTrace]:
        """
        Run the handler with tracing.

        Exceptions raised by ``handle`` become failed results; they never
        escape into the scheduler.
        """
        trace = HandlerTrace(
            action_type=self.type,
            invocation_id=str(uuid.uuid4()),
            params=params,
            started_at=datetime.now(timezone.utc),
        )
        start = time.perf_counter()

        try:
            result = coerce_result(await self.handle(params, context))
        except Exception as e:
            result = ActionResult.fail(f"{type(e).__name__}: {e}")

        trace.completed_at = datetime.now(timezone.utc)
        trace.duration_ms = int((time.perf_counter() - start) * 1000)
        trace.result = result.model_dump()
        trace.error = result.error

        return result, trace

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type='{self.type}'>"


HandlerFunc = Callable[[Dict[str, Any], "ExecutionContext"], Union[Any, Awaitable[Any]]]
RevertFunc = Callable[
    ["AuditLogEntry", Optional["ExecutionContext"]], Union[Any, Awaitable[Any]]
]


class FunctionHandler(ActionHandler):
    """Adapts a plain (sync or async) function to the handler contract."""

    def __init__(
        self,
        action_type: str,
        func: HandlerFunc,
        permission: Optional[str] = None,
        reverter: Optional[RevertFunc] = None,
        description: str = "",
    ) -> None:
        self.type = action_type
        self.permission = permission
        self.description = description or (func.__doc__ or "").strip()
        self._func = func
        self._reverter = reverter

    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        value = self._func(params, context)
        if inspect.isawaitable(value):
            value = await value
        return coerce_result(value)

    async def revert(
        self, entry: "AuditLogEntry", context: Optional["ExecutionContext"]
    ) -> ActionResult:
        if self._reverter is None:
            return await super().revert(entry, context)
        value = self._reverter(entry, context)
        if inspect.isawaitable(value):
            value = await value
        return coerce_result(value)

    @property
    def supports_revert(self) -> bool:
        return self._reverter is not None
