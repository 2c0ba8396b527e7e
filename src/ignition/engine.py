"""IgnitionEngine - runs installed skills and streams their progress."""

import asyncio
import inspect
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import structlog

from ..skills.builtin import default_registry
from ..skills.registry import ActionRegistry, DispatchOutcome
from .audit import AuditLogger, RevertResult
from .config import IgnitionSettings
from .context import CancellationToken, ExecutionContext, ExecutionOverrides
from .errors import CyclicDependencyError, InstallationNotFoundError
from .metrics import MetricsCollector, SkillMetrics
from .models import (
    ActionSpec,
    ActionStatus,
    AuditLogEntry,
    ExecutionRecord,
    InstallationRecord,
    RunStatus,
    SkillManifest,
    Trigger,
)
from .progress import ProgressCallback, ProgressChannel, ProgressEvent, ProgressEventType
from .scheduler import ActionOutcome, Scheduler, ScheduleObserver, SleepFunc
from .store import SkillStore, open_store
from .validator import ManifestValidator, ValidationResult

log = structlog.get_logger()


class _RunObserver(ScheduleObserver):
    """Turns scheduler transitions into progress events, audit entries and metrics."""

    def __init__(
        self,
        engine: "IgnitionEngine",
        record: ExecutionRecord,
        context: ExecutionContext,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        self.engine = engine
        self.record = record
        self.context = context
        self.on_progress = on_progress

    async def emit(self, event: ProgressEvent) -> None:
        await self.engine._emit(self.record, self.on_progress, event)

    async def action_started(self, spec: ActionSpec, index: int, total: int) -> None:
        self.record.current_step = index
        await self.emit(
            ProgressEvent(
                type=ProgressEventType.STEP,
                action_id=spec.id,
                action_type=spec.type,
                action_name=spec.label,
                status=ActionStatus.RUNNING.value,
                data={"step": index, "total": total},
            )
        )

    async def action_retrying(
        self, spec: ActionSpec, attempt: int, dispatch: DispatchOutcome, delay_ms: int
    ) -> None:
        if self.engine.metrics:
            self.engine.metrics.record_retry(spec.type)
        await self.emit(
            ProgressEvent(
                type=ProgressEventType.LOG,
                action_id=spec.id,
                action_type=spec.type,
                action_name=spec.label,
                error=dispatch.error,
                data={
                    "message": f"Retrying '{spec.label}' after attempt {attempt}",
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                },
            )
        )

    async def action_finished(
        self, spec: ActionSpec, outcome: ActionOutcome, index: int, total: int
    ) -> None:
        finished = outcome.status != ActionStatus.SKIPPED
        await self.emit(
            ProgressEvent(
                type=ProgressEventType.ACTION,
                action_id=spec.id,
                action_type=spec.type,
                action_name=spec.label,
                status=outcome.status.value,
                error=outcome.error if outcome.status == ActionStatus.FAILED else None,
                duration=outcome.duration_ms if finished else None,
                data={
                    "reason": outcome.reason.value if outcome.reason else None,
                    "attempts": outcome.attempts,
                    "error_code": outcome.error_code.value if outcome.error_code else None,
                },
            )
        )

        await self.engine.audit.record(self.context, outcome)

        if self.engine.metrics:
            self.engine.metrics.record_action(
                spec.type, outcome.status.value, outcome.duration_ms / 1000
            )

        if self.engine.settings.persist_progress:
            await self.engine.store.update_execution(self.record)


class IgnitionEngine:
    """
    Runs installed skills.

    The engine handles:
    - Building a fresh ExecutionContext per run from the installation
    - Ordering and dispatching actions through the Scheduler
    - Streaming progress events to a callback or an async iterator
    - Writing audit entries and reverting reversible actions
    - Tracking run and action metrics

    Runtime failures never escape ``execute``; they end up in the record's
    ``error_message`` and an ``error`` progress event.

    Example:
        engine = IgnitionEngine(InMemoryStore())
        record = await engine.execute("inst-1", {"input": {"email": "a@b.co"}})

        async for event in engine.execute_with_stream("inst-1"):
            print(event.type, event.action_id, event.status)
    """

    def __init__(
        self,
        store: Optional[SkillStore] = None,
        registry: Optional[ActionRegistry] = None,
        settings: Optional[IgnitionSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """
        Initialize the IgnitionEngine.

        Args:
            store: Persistence for installations, executions and audit logs;
                built from settings.store_path when omitted
            registry: Action registry; defaults to the built-in handlers
            settings: Engine settings; read from the environment if omitted
            metrics: Optional MetricsCollector for run and action metrics
            sleep: Coroutine used between retries
        """
        self.settings = settings or IgnitionSettings()
        self.store = store if store is not None else open_store(self.settings)
        self.registry = registry if registry is not None else default_registry(store=self.store)
        self.metrics = SkillMetrics(metrics) if metrics is not None else None
        self.audit = AuditLogger(self.store, self.registry)
        self.validator = ManifestValidator(self.registry)
        self._sleep = sleep
        self._active: Dict[str, CancellationToken] = {}

    def validate(self, raw: Union[str, Dict[str, Any], SkillManifest]) -> ValidationResult:
        """Validate a manifest against this engine's registry."""
        return self.validator.validate(raw)

    async def install(
        self,
        manifest: Union[str, Dict[str, Any], SkillManifest],
        user_id: str,
        permissions: Optional[List[str]] = None,
        config: Optional[Dict[str, Any]] = None,
        environment: Optional[Dict[str, str]] = None,
        onboarding_data: Optional[Dict[str, Any]] = None,
        installation_id: Optional[str] = None,
    ) -> InstallationRecord:
        """
        Validate a manifest, store the installation and run its install hook.

        Permissions default to what the manifest requests. Onboarding fields
        not supplied take their declared defaults.

        Raises:
            ManifestValidationError: If the manifest has errors
        """
        skill = self.validate(manifest).raise_for_errors()

        data = {f.name: f.default for f in skill.onboarding if f.default is not None}
        data.update(onboarding_data or {})

        installation = InstallationRecord(
            id=installation_id or str(uuid.uuid4()),
            user_id=user_id,
            skill_id=skill.slug,
            status="installing",
            config=dict(config or {}),
            permissions_granted=list(
                permissions if permissions is not None else skill.permissions
            ),
            environment=dict(environment or {}),
            onboarding_data=data,
            manifest=skill,
        )
        await self.store.save_installation(installation)

        status = "installed"
        if skill.actions_for(Trigger.INSTALL):
            record = await self.execute(installation.id, trigger=Trigger.INSTALL)
            if record.status != RunStatus.COMPLETED:
                status = "error"

        stored = await self.store.get_installation(installation.id)
        installation = stored or installation
        installation.status = status
        await self.store.save_installation(installation)

        log.info(
            "engine.install.finished",
            installation_id=installation.id,
            skill=skill.slug,
            status=status,
        )
        return installation

    async def execute(
        self,
        installation_id: str,
        overrides: Optional[Union[ExecutionOverrides, Dict[str, Any]]] = None,
        trigger: Union[Trigger, str] = Trigger.RUN,
        on_progress: Optional[ProgressCallback] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Run an installation's actions.

        Args:
            installation_id: Installation to run
            overrides: Input, config, environment and variables for this run
            trigger: "run" or a lifecycle hook ("install", "uninstall", "update")
            on_progress: Called with every progress event, sync or async
            execution_id: Id for the record; generated if omitted

        Returns:
            The finished ExecutionRecord (completed, failed or cancelled)
        """
        execution_id = execution_id or str(uuid.uuid4())

        token = CancellationToken()
        self._active[execution_id] = token
        start = time.perf_counter()

        try:
            with structlog.contextvars.bound_contextvars(
                execution_id=execution_id, installation_id=installation_id
            ):
                try:
                    if not isinstance(overrides, ExecutionOverrides):
                        overrides = ExecutionOverrides.model_validate(overrides or {})
                    trigger = Trigger(trigger)
                except ValueError as e:
                    # Nothing is stored for a request that never became a run.
                    log.warning("engine.run.rejected", error=str(e))
                    record = ExecutionRecord(id=execution_id, installation_id=installation_id)
                    return await self._finish(
                        record, RunStatus.FAILED, f"Invalid run request: {e}", on_progress, start
                    )

                record = ExecutionRecord(
                    id=execution_id,
                    installation_id=installation_id,
                    trigger=trigger,
                    input=overrides.input,
                )
                return await self._run(record, overrides, trigger, on_progress, token, start)
        finally:
            self._active.pop(execution_id, None)

    async def _run(
        self,
        record: ExecutionRecord,
        overrides: ExecutionOverrides,
        trigger: Trigger,
        on_progress: Optional[ProgressCallback],
        token: CancellationToken,
        start: float,
    ) -> ExecutionRecord:
        try:
            installation = await self.store.get_installation(record.installation_id)
            actions = installation.manifest.actions_for(trigger) if installation else []
            record.total_steps = len(actions)
            await self.store.create_execution(record)
        except Exception as e:
            log.exception("engine.run.setup_failed")
            return await self._finish(
                record, RunStatus.FAILED, f"{type(e).__name__}: {e}", on_progress, start
            )

        start_data: Dict[str, Any] = {"trigger": trigger.value, "total_steps": len(actions)}
        if installation is not None:
            start_data["skill"] = installation.manifest.slug
            start_data["version"] = installation.manifest.version
        await self._emit(
            record, on_progress, ProgressEvent(type=ProgressEventType.START, data=start_data)
        )

        if installation is None:
            log.warning("engine.run.not_found")
            error = InstallationNotFoundError(record.installation_id)
            return await self._finish(
                record, RunStatus.FAILED, str(error), on_progress, start, persisted=True
            )

        skill = installation.manifest
        log.info(
            "engine.run.started", skill=skill.slug, trigger=trigger.value, actions=len(actions)
        )

        context: Optional[ExecutionContext] = None
        try:
            context = ExecutionContext.from_installation(installation, overrides, record.id)
            observer = _RunObserver(self, record, context, on_progress)
            scheduler = Scheduler(
                self.registry,
                observer=observer,
                sleep=self._sleep,
                max_retry_count=self.settings.max_retry_count,
                default_retry_delay_ms=self.settings.default_retry_delay_ms,
            )
            result = await scheduler.run(actions, context, token)
        except Exception as e:
            if isinstance(e, CyclicDependencyError):
                log.warning("engine.run.cyclic", cycle=e.cycle)
                error_message = str(e)
            else:
                log.exception("engine.run.crashed")
                error_message = f"{type(e).__name__}: {e}"
            return await self._finish(
                record,
                RunStatus.FAILED,
                error_message,
                on_progress,
                start,
                installation,
                context.snapshot_variables() if context is not None else None,
                persisted=True,
            )

        error_message = result.error_message
        if result.status == RunStatus.CANCELLED:
            error_message = "Execution cancelled"

        return await self._finish(
            record,
            result.status,
            error_message,
            on_progress,
            start,
            installation,
            context.snapshot_variables(),
            persisted=True,
        )

    async def _finish(
        self,
        record: ExecutionRecord,
        status: RunStatus,
        error_message: Optional[str],
        on_progress: Optional[ProgressCallback],
        start: float,
        installation: Optional[InstallationRecord] = None,
        output: Optional[Dict[str, Any]] = None,
        persisted: bool = False,
    ) -> ExecutionRecord:
        """
        Finalize a run, store it and emit the closing event.

        A stored record whose final write fails is finalized as ``failed``
        instead, with the storage error as its message.
        """
        if persisted:
            finished = record.model_copy(deep=True)
            self._close(finished, status, error_message, output, start)
            try:
                await self._persist(finished, installation)
            except Exception as e:
                log.exception("engine.run.persist_failed")
                status = RunStatus.FAILED
                error_message = f"Could not store execution: {type(e).__name__}: {e}"
            else:
                record = finished

        if not record.is_terminal:
            self._close(record, status, error_message, output, start)

        if self.metrics and installation is not None:
            self.metrics.record_run(
                installation.manifest.slug,
                record.trigger.value,
                status.value,
                (record.duration_ms or 0) / 1000,
            )

        log.info(
            "engine.run.finished",
            status=status.value,
            duration_ms=record.duration_ms,
            error=error_message,
        )
        await self._notify(on_progress, record.progress[-1])
        return record

    def _close(
        self,
        record: ExecutionRecord,
        status: RunStatus,
        error_message: Optional[str],
        output: Optional[Dict[str, Any]],
        start: float,
    ) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        if status == RunStatus.COMPLETED:
            final = ProgressEvent(
                type=ProgressEventType.COMPLETE,
                status=status.value,
                duration=duration_ms,
                data={"steps": record.total_steps},
            )
        else:
            final = ProgressEvent(
                type=ProgressEventType.ERROR,
                status=status.value,
                error=error_message,
                duration=duration_ms,
            )
        record.add_event(final)
        record.finish(status, error_message=error_message, output=output)

    async def _persist(
        self, record: ExecutionRecord, installation: Optional[InstallationRecord]
    ) -> None:
        await self.store.update_execution(record)
        if installation is not None and record.trigger == Trigger.RUN:
            latest = await self.store.get_installation(installation.id)
            if latest is not None:
                latest.last_run = record.completed_at
                await self.store.save_installation(latest)

    async def _emit(
        self,
        record: ExecutionRecord,
        on_progress: Optional[ProgressCallback],
        event: ProgressEvent,
    ) -> None:
        record.add_event(event)
        await self._notify(on_progress, event)

    async def _notify(
        self, on_progress: Optional[ProgressCallback], event: ProgressEvent
    ) -> None:
        if on_progress is None:
            return
        try:
            result = on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning(
                "engine.progress_callback.failed", error=str(e), event_type=event.type.value
            )

    async def execute_with_stream(
        self,
        installation_id: str,
        overrides: Optional[Union[ExecutionOverrides, Dict[str, Any]]] = None,
        trigger: Union[Trigger, str] = Trigger.RUN,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run an installation and yield its progress events as they happen.

        The stream ends after the final ``complete`` or ``error`` event.
        Closing the generator early cancels the run between actions.
        """
        channel = ProgressChannel()
        execution_id = str(uuid.uuid4())

        async def run() -> ExecutionRecord:
            try:
                return await self.execute(
                    installation_id,
                    overrides,
                    trigger,
                    on_progress=channel.send,
                    execution_id=execution_id,
                )
            finally:
                channel.close()

        task = asyncio.create_task(run())
        try:
            async for event in channel:
                yield event
        finally:
            if not task.done():
                self.cancel(execution_id)
            await task

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation of a running execution.

        The action in flight finishes (its result is discarded); every
        remaining action is skipped. Returns False if the run is not active.
        """
        token = self._active.get(execution_id)
        if token is None:
            return False
        token.cancel()
        log.info("engine.run.cancel_requested", execution_id=execution_id)
        return True

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._active

    async def revert(self, log_id: str) -> RevertResult:
        """Revert one audit log entry; failures come back as typed results."""
        return await self.audit.revert(log_id)

    async def get_revertible_logs(self, installation_id: str) -> List[AuditLogEntry]:
        return await self.audit.get_revertible_logs(installation_id)
