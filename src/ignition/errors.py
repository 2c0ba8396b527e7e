"""Custom exceptions for skill execution with enhanced error context."""

from difflib import get_close_matches
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError


class ErrorCode(str, Enum):
    """Machine-readable codes carried by typed results."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CYCLIC_DEPENDENCY = "CYCLIC_DEPENDENCY"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DEPENDENCY_NOT_MET = "DEPENDENCY_NOT_MET"
    HANDLER_ERROR = "HANDLER_ERROR"
    UNKNOWN_ACTION_TYPE = "UNKNOWN_ACTION_TYPE"
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    CANCELLED = "CANCELLED"
    NOT_FOUND = "NOT_FOUND"
    NOT_REVERSIBLE = "NOT_REVERSIBLE"
    ALREADY_REVERTED = "ALREADY_REVERTED"
    NO_INVERSE = "NO_INVERSE"
    INVERSE_FAILED = "INVERSE_FAILED"


class IgnitionError(Exception):
    """Base exception for skill execution errors."""

    code: ErrorCode = ErrorCode.HANDLER_ERROR


class ManifestLoadError(IgnitionError):
    """Raised when a manifest document cannot be read or parsed."""

    code = ErrorCode.VALIDATION_ERROR


class ManifestValidationError(IgnitionError):
    """
    Raised when a caller insists on a valid manifest and it is not.

    Carries every issue found so a host can surface them all at once.
    """

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, issues: List[Any], slug: Optional[str] = None):
        self.issues = issues
        self.slug = slug

        message = f"Manifest '{slug or 'unknown'}' failed validation "
        message += f"({len(issues)} issue(s))\n"
        for issue in issues:
            message += f"  - {issue}\n"

        super().__init__(message)


class CyclicDependencyError(IgnitionError):
    """Raised when the dependsOn graph of a manifest contains a cycle."""

    code = ErrorCode.CYCLIC_DEPENDENCY

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")


class PermissionDeniedError(IgnitionError):
    """
    Raised when an action's capability is not covered by the granted set.

    Lists the granted patterns so the missing grant is easy to spot.
    """

    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, required: str, granted: List[str], action_id: str):
        self.required = required
        self.granted = granted
        self.action_id = action_id

        message = f"Permission denied for action '{action_id}'\n"
        message += f"  Required: {required}\n"
        if granted:
            message += "  Granted:\n"
            for pattern in sorted(granted):
                message += f"    - {pattern}\n"
        else:
            message += "  Granted: (none)\n"
        message += (
            f"\nTip: Grant '{required}' or a covering wildcard on the installation.\n"
        )

        super().__init__(message)


class DependencyNotMetError(IgnitionError):
    """Raised when an upstream action failed or was skipped."""

    code = ErrorCode.DEPENDENCY_NOT_MET

    def __init__(self, action_id: str, unmet: List[str]):
        self.action_id = action_id
        self.unmet = unmet
        super().__init__(
            f"Action '{action_id}' depends on unfinished action(s): {', '.join(unmet)}"
        )


class UnknownActionTypeError(IgnitionError):
    """
    Raised when no handler is registered for an action type.

    Provides suggestions for close matches and lists available types.
    """

    code = ErrorCode.UNKNOWN_ACTION_TYPE

    def __init__(self, action_type: str, action_id: str, available_types: List[str]):
        self.action_type = action_type
        self.action_id = action_id
        self.available_types = available_types

        suggestions = get_close_matches(action_type, available_types, n=3, cutoff=0.6)

        message = f"No handler registered for action type '{action_type}'\n"
        message += f"  Action: {action_id}\n"

        if suggestions:
            message += "\nDid you mean one of these?\n"
            for suggestion in suggestions:
                message += f"  - {suggestion}\n"

        message += f"\nRegistered types ({len(available_types)}):\n"
        for name in sorted(available_types):
            message += f"  - {name}\n"

        super().__init__(message)


class HandlerError(IgnitionError):
    """
    Raised (or captured) when a handler reports failure.

    Includes the resolved params for debugging.
    """

    code = ErrorCode.HANDLER_ERROR

    def __init__(
        self,
        action_type: str,
        action_id: str,
        params: Dict[str, Any],
        error: str,
        attempts: int = 1,
    ):
        self.action_type = action_type
        self.action_id = action_id
        self.params = params
        self.error = error
        self.attempts = attempts

        message = f"Action '{action_id}' ({action_type}) failed"
        if attempts > 1:
            message += f" after {attempts} attempts"
        message += f": {error}\n"

        if params:
            message += "Params:\n"
            for key, value in params.items():
                value_str = str(value)
                if len(value_str) > 100:
                    value_str = value_str[:97] + "..."
                message += f"  {key}: {value_str}\n"

        super().__init__(message)


class TemplateError(IgnitionError):
    """Raised when a template cannot be parsed."""

    code = ErrorCode.TEMPLATE_ERROR

    def __init__(self, template_str: str, error: Exception, field_name: str = "params"):
        self.template_str = template_str
        self.original_error = error
        self.field_name = field_name

        message = f"Template error in field '{field_name}'\n"
        message += f"  Template: {template_str}\n"
        message += f"  Error: {type(error).__name__}: {error}\n"

        super().__init__(message)


class InstallationNotFoundError(IgnitionError):
    """Raised when the store has no installation for an id."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, installation_id: str):
        self.installation_id = installation_id
        super().__init__(f"Installation not found: {installation_id}")


class ExecutionRecordFinalizedError(IgnitionError):
    """Raised on any attempt to mutate a finished execution record."""

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Execution '{execution_id}' is already {status} and cannot be modified"
        )


class StoreError(IgnitionError):
    """
    Raised when a storage operation fails.
    """

    def __init__(self, operation: str, key: str, original_error: Exception):
        self.operation = operation
        self.key = key
        self.original_error = original_error

        message = f"Store {operation} failed for '{key}'\n"
        message += f"  Error: {type(original_error).__name__}: {original_error}\n"

        super().__init__(message)


class InvalidParamsError(IgnitionError):
    """
    Raised when resolved action params fail their schema.

    Provides detailed Pydantic validation errors.
    """

    def __init__(
        self,
        action_type: str,
        schema: Type[BaseModel],
        params: Dict[str, Any],
        validation_error: ValidationError,
    ):
        self.action_type = action_type
        self.schema = schema
        self.params = params
        self.validation_error = validation_error

        message = f"Invalid params for action type '{action_type}'\n"
        message += f"  Schema: {schema.__name__}\n\n"

        message += "Validation errors:\n"
        for error in validation_error.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            message += f"  - {field}: {error['msg']}\n"

        super().__init__(message)
