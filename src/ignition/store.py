"""Persistence for installations, execution records and audit logs."""

import asyncio
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .config import IgnitionSettings
from .errors import StoreError
from .models import AuditLogEntry, ExecutionRecord, InstallationRecord

M = TypeVar("M", bound=BaseModel)

RECORD_ID_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]*")


def filter_audit_logs(
    entries: Iterable[AuditLogEntry],
    installation_id: str,
    action: Optional[str] = None,
    reversible: Optional[bool] = None,
    not_reverted: bool = False,
) -> List[AuditLogEntry]:
    """Matching entries, most recent first."""
    matched = [
        e
        for e in entries
        if e.installation_id == installation_id
        and (action is None or e.action == action)
        and (reversible is None or e.reversible == reversible)
        and not (not_reverted and e.reverted)
    ]
    # Stable sort keeps later-created entries first on timestamp ties.
    matched.reverse()
    matched.sort(key=lambda e: e.created_at, reverse=True)
    return matched


def _page(entries: List[M], limit: Optional[int], offset: int) -> List[M]:
    end = None if limit is None else offset + limit
    return entries[offset:end]


class SkillStore(ABC):
    """
    Storage contract used by the engine and the audit logger.

    Audit entries are append-only; ``mark_reverted`` is the only change
    allowed after creation.
    """

    @abstractmethod
    async def get_installation(self, installation_id: str) -> Optional[InstallationRecord]:
        ...

    @abstractmethod
    async def save_installation(self, installation: InstallationRecord) -> None:
        ...

    @abstractmethod
    async def create_execution(self, record: ExecutionRecord) -> None:
        ...

    @abstractmethod
    async def update_execution(self, record: ExecutionRecord) -> None:
        ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    @abstractmethod
    async def list_executions(
        self, installation_id: str, limit: Optional[int] = None
    ) -> List[ExecutionRecord]:
        """Executions of an installation, most recent first."""

    @abstractmethod
    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    @abstractmethod
    async def get_audit_log(self, log_id: str) -> Optional[AuditLogEntry]:
        ...

    @abstractmethod
    async def mark_reverted(self, log_id: str, reverted_at: datetime) -> bool:
        """
        Flip ``reverted`` on a reversible entry.

        Returns False, changing nothing, if the entry is missing, not
        reversible or already reverted.
        """

    @abstractmethod
    async def list_audit_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """Audit entries of an installation, most recent first."""

    async def count_audit_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
    ) -> int:
        logs = await self.list_audit_logs(
            installation_id, action=action, reversible=reversible, not_reverted=not_reverted
        )
        return len(logs)


class InMemoryStore(SkillStore):
    """Dictionary-backed store; hands out copies so callers never share state."""

    def __init__(self) -> None:
        self._installations: Dict[str, InstallationRecord] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._audit_logs: Dict[str, AuditLogEntry] = {}
        self._lock = asyncio.Lock()

    async def get_installation(self, installation_id: str) -> Optional[InstallationRecord]:
        installation = self._installations.get(installation_id)
        return installation.model_copy(deep=True) if installation else None

    async def save_installation(self, installation: InstallationRecord) -> None:
        async with self._lock:
            self._installations[installation.id] = installation.model_copy(deep=True)

    async def create_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._executions[record.id] = record.model_copy(deep=True)

    async def update_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._executions[record.id] = record.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(
        self, installation_id: str, limit: Optional[int] = None
    ) -> List[ExecutionRecord]:
        records = [
            r.model_copy(deep=True)
            for r in reversed(list(self._executions.values()))
            if r.installation_id == installation_id
        ]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return _page(records, limit, 0)

    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._lock:
            self._audit_logs[entry.id] = entry.model_copy(deep=True)
        return entry

    async def get_audit_log(self, log_id: str) -> Optional[AuditLogEntry]:
        entry = self._audit_logs.get(log_id)
        return entry.model_copy(deep=True) if entry else None

    async def mark_reverted(self, log_id: str, reverted_at: datetime) -> bool:
        async with self._lock:
            entry = self._audit_logs.get(log_id)
            if entry is None or not entry.reversible or entry.reverted:
                return False
            entry.reverted = True
            entry.reverted_at = reverted_at
            return True

    async def list_audit_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        matched = filter_audit_logs(
            self._audit_logs.values(), installation_id, action, reversible, not_reverted
        )
        return [e.model_copy(deep=True) for e in _page(matched, limit, offset)]


class JsonFileStore(SkillStore):
    """
    Store that keeps one JSON document per record on disk.

    Layout under ``root``::

        installations/<id>.json
        executions/<id>.json
        audit/<id>.json
    """

    def __init__(self, root: str = ".ignition") -> None:
        """
        Initialize JsonFileStore.

        Args:
            root: Directory to store records in
        """
        self.root = Path(root)
        for sub in ("installations", "executions", "audit"):
            (self.root / sub).mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, kind: str, key: str) -> Path:
        # Ids become file names; anything that could leave ``root`` is refused.
        if not RECORD_ID_RE.fullmatch(key):
            raise StoreError("resolve", f"{kind}/{key}", ValueError("Invalid record id"))
        return self.root / kind / f"{key}.json"

    def _write(self, kind: str, key: str, model: BaseModel) -> None:
        path = self._path(kind, key)
        try:
            path.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        except Exception as e:
            raise StoreError("save", f"{kind}/{key}", e) from e

    def _read(self, kind: str, key: str, model: Type[M]) -> Optional[M]:
        path = self._path(kind, key)
        try:
            if not path.exists():
                return None
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except Exception as e:
            raise StoreError("load", f"{kind}/{key}", e) from e

    def _read_all(self, kind: str, model: Type[M]) -> List[M]:
        records = []
        for path in sorted(self.root.joinpath(kind).glob("*.json")):
            record = self._read(kind, path.stem, model)
            if record is not None:
                records.append(record)
        return records

    async def get_installation(self, installation_id: str) -> Optional[InstallationRecord]:
        return self._read("installations", installation_id, InstallationRecord)

    async def save_installation(self, installation: InstallationRecord) -> None:
        async with self._lock:
            self._write("installations", installation.id, installation)

    async def create_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._write("executions", record.id, record)

    async def update_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._write("executions", record.id, record)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._read("executions", execution_id, ExecutionRecord)

    async def list_executions(
        self, installation_id: str, limit: Optional[int] = None
    ) -> List[ExecutionRecord]:
        records = [
            r
            for r in self._read_all("executions", ExecutionRecord)
            if r.installation_id == installation_id
        ]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return _page(records, limit, 0)

    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._lock:
            self._write("audit", entry.id, entry)
        return entry

    async def get_audit_log(self, log_id: str) -> Optional[AuditLogEntry]:
        return self._read("audit", log_id, AuditLogEntry)

    async def mark_reverted(self, log_id: str, reverted_at: datetime) -> bool:
        async with self._lock:
            entry = self._read("audit", log_id, AuditLogEntry)
            if entry is None or not entry.reversible or entry.reverted:
                return False
            entry.reverted = True
            entry.reverted_at = reverted_at
            self._write("audit", log_id, entry)
            return True

    async def list_audit_logs(
        self,
        installation_id: str,
        action: Optional[str] = None,
        reversible: Optional[bool] = None,
        not_reverted: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        matched = filter_audit_logs(
            self._read_all("audit", AuditLogEntry),
            installation_id,
            action,
            reversible,
            not_reverted,
        )
        return _page(matched, limit, offset)


def open_store(settings: Optional[IgnitionSettings] = None) -> SkillStore:
    """JsonFileStore under ``settings.store_path`` if set, else an InMemoryStore."""
    settings = settings or IgnitionSettings()
    if settings.store_path:
        return JsonFileStore(settings.store_path)
    return InMemoryStore()
