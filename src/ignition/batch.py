"""BatchExecutor - runs many skill executions concurrently."""

import asyncio
import csv
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .context import ExecutionOverrides
from .engine import IgnitionEngine
from .models import ExecutionRecord, RunStatus, Trigger

log = structlog.get_logger()

CSV_COLUMNS = ["index", "installation_id", "execution_id", "status", "duration_ms", "error"]


@dataclass
class BatchItem:
    """One run to perform: an installation plus its overrides."""

    installation_id: str
    overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_inputs(cls, installation_id: str, inputs: List[Dict[str, Any]]) -> List["BatchItem"]:
        """One item per input mapping, all against the same installation."""
        return [cls(installation_id, {"input": item}) for item in inputs]


@dataclass
class BatchResult:
    """Result of a single execution in a batch."""

    index: int
    item: BatchItem
    record: Optional[ExecutionRecord] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.record is not None and self.record.status == RunStatus.COMPLETED

    @property
    def status(self) -> str:
        return self.record.status.value if self.record else "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "installation_id": self.item.installation_id,
            "execution_id": self.record.id if self.record else None,
            "status": self.status,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class BatchResults:
    """Aggregated results from batch execution."""

    results: List[BatchResult] = field(default_factory=list)
    total_duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count

    @property
    def avg_duration_ms(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.duration_ms for r in self.results) / len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_duration_ms": self.avg_duration_ms,
            "total_duration_ms": self.total_duration_ms,
            "results": [r.to_dict() for r in self.results],
        }

    def to_json(self, output_path: str, indent: int = 2) -> None:
        """Export results to a JSON file."""
        path = Path(output_path)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=indent)

    def to_csv(self, output_path: str) -> None:
        """Export one row per run; empty cells stand for missing ids and errors."""
        with Path(output_path).open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            for result in self.results:
                row = result.to_dict()
                writer.writerow({k: "" if row[k] is None else row[k] for k in CSV_COLUMNS})


class BatchExecutor:
    """
    Run many executions concurrently, bounded by a semaphore.

    Each run is still strictly sequential inside; runs share nothing but the
    engine's store.

    Example:
        executor = BatchExecutor(engine, max_concurrency=5)
        items = BatchItem.for_inputs("inst-1", [{"email": "a@b.co"}, {"email": "c@d.co"}])
        results = await executor.execute_batch(items)
        print(f"Success: {results.success_count}/{results.total}")
        results.to_json("results.json")
    """

    def __init__(self, engine: IgnitionEngine, max_concurrency: int = 5) -> None:
        """
        Initialize batch executor.

        Args:
            engine: IgnitionEngine to run with
            max_concurrency: Maximum number of parallel executions
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.engine = engine
        self.max_concurrency = max_concurrency

    async def execute_batch(
        self,
        items: List[BatchItem],
        trigger: Union[Trigger, str] = Trigger.RUN,
    ) -> BatchResults:
        """
        Execute every item, at most ``max_concurrency`` at a time.

        Results keep the order of ``items``.
        """
        if not items:
            return BatchResults(results=[], total_duration_ms=0.0)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        start_time = time.perf_counter()

        log.info("batch.started", total=len(items), max_concurrency=self.max_concurrency)

        results = await asyncio.gather(
            *(
                self._execute_single(semaphore, i, item, trigger)
                for i, item in enumerate(items)
            )
        )

        total_duration_ms = (time.perf_counter() - start_time) * 1000
        batch = BatchResults(results=list(results), total_duration_ms=total_duration_ms)

        log.info(
            "batch.finished",
            success=batch.success_count,
            failed=batch.failure_count,
            avg_duration_ms=round(batch.avg_duration_ms),
        )
        return batch

    async def _execute_single(
        self,
        semaphore: asyncio.Semaphore,
        index: int,
        item: BatchItem,
        trigger: Union[Trigger, str],
    ) -> BatchResult:
        async with semaphore:
            start_time = time.perf_counter()
            record = await self.engine.execute(
                item.installation_id,
                ExecutionOverrides.model_validate(item.overrides),
                trigger,
            )
            duration_ms = (time.perf_counter() - start_time) * 1000

            return BatchResult(
                index=index,
                item=item,
                record=record,
                error=record.error_message if record.status != RunStatus.COMPLETED else None,
                duration_ms=duration_ms,
            )
