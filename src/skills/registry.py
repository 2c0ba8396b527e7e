"""Action Registry - maps action types to handlers and dispatches actions."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from ..ignition.context import CancellationToken, ExecutionContext
from ..ignition.errors import (
    DependencyNotMetError,
    ErrorCode,
    PermissionDeniedError,
    TemplateError,
    UnknownActionTypeError,
)
from ..ignition.models import ActionSpec, ActionStatus, OnErrorPolicy, SkipReason
from .base import ActionHandler, ActionResult, FunctionHandler, HandlerFunc, HandlerTrace
from .mcp import MCPServerRegistry, mcp_capability

log = structlog.get_logger()

CapabilityResolver = Callable[[Dict[str, Any]], Optional[str]]


@dataclass
class DispatchOutcome:
    """Result of dispatching one action once."""

    action_id: str
    action_type: str
    status: ActionStatus
    reason: Optional[SkipReason] = None
    result: Optional[ActionResult] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    required_permission: Optional[str] = None
    trace: Optional[HandlerTrace] = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == ActionStatus.COMPLETED

    @property
    def invoked(self) -> bool:
        """Whether the handler was actually called."""
        return self.trace is not None

    @property
    def retryable(self) -> bool:
        """Only handler-reported failures are worth another attempt."""
        return self.status == ActionStatus.FAILED and self.error_code == ErrorCode.HANDLER_ERROR


class ActionRegistry:
    """
    Registry of action handlers.

    Built once per engine and passed by reference into each run; there is no
    process-wide instance.

    The capability an action needs belongs to its type, not to whichever
    handler is registered: ``mcp:call`` always requires
    ``mcp:<server>:<tool>``. Types without a resolver fall back to the
    handler's ``required_permission``.

    Example:
        registry = ActionRegistry()
        registry.register("notes:create", CreateNote())

        async def ping(params, context):
            return {"success": True, "data": "pong"}

        registry.register("ping", ping, permission="ping:send")
    """

    def __init__(self, servers: Optional[MCPServerRegistry] = None) -> None:
        self._handlers: Dict[str, ActionHandler] = {}
        self.servers = servers if servers is not None else MCPServerRegistry()
        self._capabilities: Dict[str, CapabilityResolver] = {
            "mcp:call": lambda params: mcp_capability(params, self.servers),
        }

    def set_capability(self, action_type: str, resolver: CapabilityResolver) -> None:
        """Make ``resolver`` decide the capability for every action of a type."""
        self._capabilities[action_type] = resolver

    def required_permission(self, action_type: str, params: Dict[str, Any]) -> Optional[str]:
        """Capability an action of this type needs with these resolved params."""
        resolver = self._capabilities.get(action_type)
        if resolver is not None:
            return resolver(params)
        handler = self.get(action_type)
        return handler.required_permission(params) if handler is not None else None

    def register(
        self,
        action_type: str,
        handler: Union[ActionHandler, HandlerFunc],
        permission: Optional[str] = None,
        replace: bool = False,
    ) -> ActionHandler:
        """
        Register a handler for an action type.

        Plain functions are wrapped in a FunctionHandler; ``permission`` sets
        the capability they require.
        """
        if not action_type:
            raise ValueError("Action type must be a non-empty string")

        if action_type in self._handlers and not replace:
            raise ValueError(f"Action type '{action_type}' is already registered")

        if isinstance(handler, ActionHandler):
            if permission is not None:
                handler.permission = permission
        elif callable(handler):
            handler = FunctionHandler(action_type, handler, permission=permission)
        else:
            raise TypeError(f"{handler!r} is neither an ActionHandler nor callable")

        self._handlers[action_type] = handler
        return handler

    def unregister(self, action_type: str) -> None:
        self._handlers.pop(action_type, None)

    def get(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    def get_or_raise(self, action_type: str, action_id: str = "unknown") -> ActionHandler:
        handler = self.get(action_type)
        if handler is None:
            raise UnknownActionTypeError(action_type, action_id, self.list_types())
        return handler

    def list_types(self) -> List[str]:
        return list(self._handlers.keys())

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    async def dispatch(
        self,
        spec: ActionSpec,
        context: ExecutionContext,
        statuses: Mapping[str, ActionStatus],
        cancel_token: Optional[CancellationToken] = None,
    ) -> DispatchOutcome:
        """
        Dispatch one action.

        Sequence: evaluate ``when.condition``; check ``dependsOn`` against the
        statuses of earlier actions in this run; resolve params; check the
        capability the action type requires; invoke the handler; bind its data
        to ``outputTo``.

        Args:
            spec: The action to dispatch
            context: The run's execution context
            statuses: Terminal status of every action already processed
            cancel_token: Discards the handler's result if the run was
                cancelled while it was in flight

        Returns:
            DispatchOutcome; never raises for action-level failures
        """
        start = time.perf_counter()

        def outcome(status: ActionStatus, **kwargs: Any) -> DispatchOutcome:
            return DispatchOutcome(
                action_id=spec.id,
                action_type=spec.type,
                status=status,
                duration_ms=int((time.perf_counter() - start) * 1000),
                **kwargs,
            )

        # (a) run condition
        if spec.when is not None:
            try:
                should_run = context.evaluate_condition(spec.when.condition)
            except TemplateError as e:
                return outcome(
                    ActionStatus.FAILED,
                    error_code=ErrorCode.TEMPLATE_ERROR,
                    error=str(e),
                )
            if not should_run:
                log.debug("action.skipped", action_id=spec.id, reason="condition-false")
                return outcome(ActionStatus.SKIPPED, reason=SkipReason.CONDITION_FALSE)

        # (b) dependencies
        unmet = [
            dep for dep in spec.depends_on if statuses.get(dep) != ActionStatus.COMPLETED
        ]
        if unmet and spec.on_error != OnErrorPolicy.CONTINUE:
            error = DependencyNotMetError(spec.id, unmet)
            log.debug("action.skipped", action_id=spec.id, reason="dependency-not-met", unmet=unmet)
            return outcome(
                ActionStatus.SKIPPED,
                reason=SkipReason.DEPENDENCY_NOT_MET,
                error_code=error.code,
                error=str(error),
            )

        # (c) params
        try:
            params = context.resolve_params(spec.params)
        except TemplateError as e:
            return outcome(
                ActionStatus.FAILED, error_code=ErrorCode.TEMPLATE_ERROR, error=str(e)
            )

        handler = self.get(spec.type)
        if handler is None:
            unknown = UnknownActionTypeError(spec.type, spec.id, self.list_types())
            return outcome(
                ActionStatus.FAILED,
                error_code=unknown.code,
                error=str(unknown),
                params=params,
            )

        # (d) permission
        required = self.required_permission(spec.type, params)
        if required and not context.is_allowed(required):
            denied = PermissionDeniedError(required, sorted(context.permissions), spec.id)
            log.warning(
                "action.permission_denied",
                action_id=spec.id,
                action_type=spec.type,
                required=required,
            )
            return outcome(
                ActionStatus.FAILED,
                error_code=denied.code,
                error=str(denied),
                params=params,
                required_permission=required,
            )

        # (e) invoke
        result, trace = await handler.run(params, context)

        if cancel_token is not None and cancel_token.cancelled:
            log.info("action.result_discarded", action_id=spec.id, reason="cancelled")
            return outcome(
                ActionStatus.SKIPPED,
                reason=SkipReason.CANCELLED,
                error_code=ErrorCode.CANCELLED,
                params=params,
                required_permission=required,
                trace=trace,
            )

        if not result.success:
            return outcome(
                ActionStatus.FAILED,
                result=result,
                error_code=ErrorCode.HANDLER_ERROR,
                error=result.error or "Handler reported failure",
                params=params,
                required_permission=required,
                trace=trace,
            )

        # (f) output binding
        if spec.output_to:
            context.set_variable(spec.output_to, result.data)

        return outcome(
            ActionStatus.COMPLETED,
            result=result,
            params=params,
            required_permission=required,
            trace=trace,
        )
