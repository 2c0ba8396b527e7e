"""Dependency-aware sequential scheduler with retry and error policy."""

import asyncio
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
)

import structlog

from .context import CancellationToken, ExecutionContext
from .errors import CyclicDependencyError, ErrorCode, HandlerError
from .models import ActionSpec, ActionStatus, OnErrorPolicy, RunStatus, SkipReason

if TYPE_CHECKING:
    from ..skills.base import ActionResult, HandlerTrace
    from ..skills.registry import ActionRegistry, DispatchOutcome

log = structlog.get_logger()

SleepFunc = Callable[[float], Awaitable[Any]]


def find_cycle(actions: Sequence[ActionSpec]) -> Optional[List[str]]:
    """
    Find a dependency cycle among ``actions``.

    Returns the cycle as a closed path (``["a", "b", "a"]``) or None. Ids
    missing from the list are ignored. Walks in declaration order, so the
    same input always reports the same cycle.
    """
    deps = {a.id: list(a.depends_on) for a in actions}
    visiting: List[str] = []
    done: set = set()

    def visit(node: str) -> Optional[List[str]]:
        if node in done:
            return None
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        visiting.append(node)
        for dep in deps.get(node, []):
            if dep in deps:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(node)
        return None

    for action in actions:
        cycle = visit(action.id)
        if cycle:
            return cycle
    return None


def plan_order(actions: Sequence[ActionSpec]) -> List[ActionSpec]:
    """
    Order actions so every action comes after its dependencies.

    Kahn's algorithm; among ready actions the one declared first goes first,
    so a list without dependencies keeps its declared order.

    Raises:
        CyclicDependencyError: If the dependency graph has a cycle
    """
    known = {a.id for a in actions}
    remaining = list(actions)
    placed: set = set()
    order: List[ActionSpec] = []

    while remaining:
        for i, action in enumerate(remaining):
            if all(d in placed or d not in known for d in action.depends_on):
                order.append(remaining.pop(i))
                placed.add(action.id)
                break
        else:
            raise CyclicDependencyError(find_cycle(remaining) or [a.id for a in remaining])

    return order


@dataclass
class ActionOutcome:
    """Terminal state of one action in a run."""

    action_id: str
    action_type: str
    status: ActionStatus
    reason: Optional[SkipReason] = None
    attempts: int = 0
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    result: Optional["ActionResult"] = None
    params: Dict[str, Any] = field(default_factory=dict)
    trace: Optional["HandlerTrace"] = None
    duration_ms: int = 0

    @classmethod
    def skipped(cls, spec: ActionSpec, reason: SkipReason) -> "ActionOutcome":
        return cls(
            action_id=spec.id,
            action_type=spec.type,
            status=ActionStatus.SKIPPED,
            reason=reason,
        )

    @classmethod
    def from_dispatch(
        cls, dispatch: "DispatchOutcome", attempts: int, duration_ms: int
    ) -> "ActionOutcome":
        return cls(
            action_id=dispatch.action_id,
            action_type=dispatch.action_type,
            status=dispatch.status,
            reason=dispatch.reason,
            attempts=attempts,
            error_code=dispatch.error_code,
            error=dispatch.error,
            result=dispatch.result,
            params=dispatch.params,
            trace=dispatch.trace,
            duration_ms=duration_ms,
        )

    @property
    def invoked(self) -> bool:
        """Whether a handler ran and its result was kept."""
        return self.status in (ActionStatus.COMPLETED, ActionStatus.FAILED) and (
            self.trace is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "attempts": self.attempts,
            "error_code": self.error_code.value if self.error_code else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ScheduleResult:
    """Outcome of running one action list."""

    status: RunStatus
    outcomes: Dict[str, ActionOutcome] = field(default_factory=dict)
    error_message: Optional[str] = None
    failed_action: Optional[str] = None

    def with_status(self, status: ActionStatus) -> List[ActionOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    @property
    def completed(self) -> List[ActionOutcome]:
        return self.with_status(ActionStatus.COMPLETED)

    @property
    def failed(self) -> List[ActionOutcome]:
        return self.with_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> List[ActionOutcome]:
        return self.with_status(ActionStatus.SKIPPED)


class ScheduleObserver:
    """Receives scheduler transitions; the engine turns them into events."""

    async def action_started(self, spec: ActionSpec, index: int, total: int) -> None:
        pass

    async def action_retrying(
        self, spec: ActionSpec, attempt: int, dispatch: "DispatchOutcome", delay_ms: int
    ) -> None:
        pass

    async def action_finished(
        self, spec: ActionSpec, outcome: ActionOutcome, index: int, total: int
    ) -> None:
        pass


class Scheduler:
    """
    Runs an action list one action at a time.

    Per action: pending -> skipped, or pending -> running -> completed |
    failed. A failure under ``stop`` (or ``retry`` once attempts run out)
    skips every remaining action with ``upstream-stop``; under ``continue``
    the run carries on. Cancellation is checked before each action.
    """

    def __init__(
        self,
        registry: "ActionRegistry",
        observer: Optional[ScheduleObserver] = None,
        sleep: SleepFunc = asyncio.sleep,
        max_retry_count: Optional[int] = None,
        default_retry_delay_ms: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.observer = observer or ScheduleObserver()
        self._sleep = sleep
        self.max_retry_count = max_retry_count
        self.default_retry_delay_ms = default_retry_delay_ms

    def max_attempts(self, spec: ActionSpec) -> int:
        if spec.on_error != OnErrorPolicy.RETRY:
            return 1
        retries = spec.retry_count
        if self.max_retry_count is not None:
            retries = min(retries, self.max_retry_count)
        return 1 + retries

    def retry_delay_ms(self, spec: ActionSpec) -> int:
        """Declared retryDelay, else the configured default."""
        if "retry_delay" in spec.model_fields_set or self.default_retry_delay_ms is None:
            return spec.retry_delay
        return self.default_retry_delay_ms

    async def run(
        self,
        actions: Sequence[ActionSpec],
        context: ExecutionContext,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ScheduleResult:
        """
        Run ``actions`` against ``context``.

        Raises:
            CyclicDependencyError: If the actions cannot be ordered
        """
        order = plan_order(actions)
        total = len(order)
        result = ScheduleResult(status=RunStatus.COMPLETED)
        statuses: Dict[str, ActionStatus] = {}

        for index, spec in enumerate(order, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                outcome = ActionOutcome.skipped(spec, SkipReason.CANCELLED)
            elif result.failed_action is not None:
                outcome = ActionOutcome.skipped(spec, SkipReason.UPSTREAM_STOP)
            else:
                await self.observer.action_started(spec, index, total)
                outcome = await self._run_action(spec, context, statuses, cancel_token)

            statuses[spec.id] = outcome.status
            result.outcomes[spec.id] = outcome
            await self.observer.action_finished(spec, outcome, index, total)

            if outcome.status == ActionStatus.FAILED:
                if spec.on_error == OnErrorPolicy.CONTINUE:
                    log.warning(
                        "scheduler.action.failed_continue",
                        action_id=spec.id,
                        error_code=outcome.error_code,
                    )
                elif result.failed_action is None:
                    result.failed_action = spec.id
                    result.error_message = _failure_message(outcome)
                    log.warning(
                        "scheduler.action.failed_stop",
                        action_id=spec.id,
                        error_code=outcome.error_code,
                        attempts=outcome.attempts,
                    )

        if any(o.reason == SkipReason.CANCELLED for o in result.outcomes.values()):
            result.status = RunStatus.CANCELLED
        elif result.failed_action is not None:
            result.status = RunStatus.FAILED

        return result

    async def _run_action(
        self,
        spec: ActionSpec,
        context: ExecutionContext,
        statuses: Dict[str, ActionStatus],
        cancel_token: Optional[CancellationToken],
    ) -> ActionOutcome:
        max_attempts = self.max_attempts(spec)
        delay_ms = self.retry_delay_ms(spec)
        attempt = 0
        duration_ms = 0

        while True:
            attempt += 1
            dispatch = await self.registry.dispatch(spec, context, statuses, cancel_token)
            duration_ms += dispatch.duration_ms

            if not dispatch.retryable or attempt >= max_attempts:
                break
            if cancel_token is not None and cancel_token.cancelled:
                break

            await self.observer.action_retrying(spec, attempt, dispatch, delay_ms)
            log.info(
                "scheduler.action.retrying",
                action_id=spec.id,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_ms=delay_ms,
            )
            await self._sleep(delay_ms / 1000)

        return ActionOutcome.from_dispatch(dispatch, attempts=attempt, duration_ms=duration_ms)


def _failure_message(outcome: ActionOutcome) -> str:
    if outcome.error_code == ErrorCode.HANDLER_ERROR:
        return str(
            HandlerError(
                outcome.action_type,
                outcome.action_id,
                outcome.params,
                outcome.error or "Handler reported failure",
                attempts=outcome.attempts,
            )
        ).rstrip()
    return (outcome.error or f"Action '{outcome.action_id}' failed").rstrip()
