"""Audit logging of executed actions and rollback of reversible ones."""

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog
from pydantic import BaseModel

from .context import ExecutionContext
from .errors import ErrorCode
from .models import ActionStatus, AuditLogEntry, utcnow
from .scheduler import ActionOutcome
from .store import SkillStore

if TYPE_CHECKING:
    from ..skills.registry import ActionRegistry

log = structlog.get_logger()


class RevertResult(BaseModel):
    """Typed outcome of a revert attempt; failures are values, not exceptions."""

    success: bool
    log_id: str
    code: Optional[ErrorCode] = None
    error: Optional[str] = None
    entry: Optional[AuditLogEntry] = None
    data: Optional[Any] = None

    @classmethod
    def failure(
        cls,
        log_id: str,
        code: ErrorCode,
        error: str,
        entry: Optional[AuditLogEntry] = None,
    ) -> "RevertResult":
        return cls(success=False, log_id=log_id, code=code, error=error, entry=entry)


class AuditLogger:
    """
    Writes one audit entry per executed action and reverts reversible ones.

    An entry is reversible only when its handler reported ``reversible`` and
    succeeded; ``before_state`` is the handler's snapshot taken before it
    changed anything.

    Example:
        audit = AuditLogger(store, registry)
        for entry in await audit.get_revertible_logs(installation_id):
            result = await audit.revert(entry.id)
            if not result.success:
                print(result.code, result.error)
    """

    def __init__(self, store: SkillStore, registry: "ActionRegistry") -> None:
        self.store = store
        self.registry = registry
        self._revert_lock = asyncio.Lock()

    async def record(
        self, context: ExecutionContext, outcome: ActionOutcome
    ) -> Optional[AuditLogEntry]:
        """
        Record an executed action.

        Skipped actions are not audited and return None.
        """
        if outcome.status == ActionStatus.SKIPPED:
            return None

        result = outcome.result
        succeeded = outcome.status == ActionStatus.COMPLETED

        metadata: Dict[str, Any] = {
            "status": outcome.status.value,
            "attempts": outcome.attempts,
            "duration_ms": outcome.duration_ms,
        }
        if outcome.error:
            metadata["error"] = outcome.error
        if outcome.error_code:
            metadata["error_code"] = outcome.error_code.value
        if result is not None:
            metadata.update(result.metadata)

        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            installation_id=context.installation_id,
            execution_id=context.execution_id,
            action_id=outcome.action_id,
            action=outcome.action_type,
            target=(result.target if result and result.target else outcome.action_id),
            before_state=result.before_state if result else None,
            after_state=result.after_state if result else None,
            metadata=metadata,
            reversible=bool(result and result.reversible and succeeded),
        )

        await self.store.create_audit_log(entry)
        log.debug(
            "audit.recorded",
            log_id=entry.id,
            action_id=entry.action_id,
            reversible=entry.reversible,
        )
        return entry

    async def get_revertible_logs(
        self, installation_id: str, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        """Reversible, not yet reverted entries, most recent first."""
        return await self.store.list_audit_logs(
            installation_id, reversible=True, not_reverted=True, limit=limit
        )

    async def get_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        return await self.store.list_audit_logs(
            installation_id,
            action=action,
            reversible=reversible,
            not_reverted=not_reverted,
            limit=limit,
            offset=offset,
        )

    async def count_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
    ) -> int:
        return await self.store.count_audit_logs(
            installation_id, action=action, reversible=reversible, not_reverted=not_reverted
        )

    async def revert(
        self, log_id: str, context: Optional[ExecutionContext] = None
    ) -> RevertResult:
        """
        Undo a logged action by invoking its handler's inverse with ``before_state``.

        Reverting the same entry twice yields ALREADY_REVERTED and never runs
        the inverse again.
        """
        async with self._revert_lock:
            entry = await self.store.get_audit_log(log_id)
            if entry is None:
                return RevertResult.failure(
                    log_id, ErrorCode.NOT_FOUND, f"Audit log not found: {log_id}"
                )
            if not entry.reversible:
                return RevertResult.failure(
                    log_id,
                    ErrorCode.NOT_REVERSIBLE,
                    f"Action '{entry.action}' on '{entry.target}' is not reversible",
                    entry,
                )
            if entry.reverted:
                return RevertResult.failure(
                    log_id,
                    ErrorCode.ALREADY_REVERTED,
                    f"Audit log {log_id} was already reverted at {entry.reverted_at}",
                    entry,
                )

            handler = self.registry.get(entry.action)
            if handler is None or not handler.supports_revert:
                return RevertResult.failure(
                    log_id,
                    ErrorCode.NO_INVERSE,
                    f"No inverse available for action type '{entry.action}'",
                    entry,
                )

            try:
                inverse = await handler.revert(entry, context)
            except Exception as e:
                log.warning("audit.revert.failed", log_id=log_id, error=str(e))
                return RevertResult.failure(
                    log_id, ErrorCode.INVERSE_FAILED, f"{type(e).__name__}: {e}", entry
                )

            if not inverse.success:
                log.warning("audit.revert.failed", log_id=log_id, error=inverse.error)
                return RevertResult.failure(
                    log_id,
                    ErrorCode.INVERSE_FAILED,
                    inverse.error or "Inverse action failed",
                    entry,
                )

            if not await self.store.mark_reverted(log_id, utcnow()):
                return RevertResult.failure(
                    log_id,
                    ErrorCode.ALREADY_REVERTED,
                    f"Audit log {log_id} was already reverted",
                    entry,
                )

            log.info("audit.reverted", log_id=log_id, action=entry.action, target=entry.target)
            return RevertResult(
                success=True,
                log_id=log_id,
                entry=await self.store.get_audit_log(log_id),
                data=inverse.data,
            )
