"""Ignition - skill manifests, validation and the execution runtime.

The runtime entry points live in their own modules because they depend on
``src.skills``::

    from src.ignition.engine import IgnitionEngine
    from src.ignition.batch import BatchExecutor
"""

from .audit import AuditLogger, RevertResult
from .config import IgnitionSettings
from .context import CancellationToken, ExecutionContext, ExecutionOverrides
from .errors import (
    CyclicDependencyError,
    DependencyNotMetError,
    ErrorCode,
    ExecutionRecordFinalizedError,
    HandlerError,
    IgnitionError,
    InstallationNotFoundError,
    InvalidParamsError,
    ManifestLoadError,
    ManifestValidationError,
    PermissionDeniedError,
    StoreError,
    TemplateError,
    UnknownActionTypeError,
)
from .loader import ManifestLoader, export_manifest
from .log import configure_logging
from .metrics import MetricsCollector, PrometheusExporter, SkillMetrics
from .models import (
    ActionSpec,
    ActionStatus,
    AuditLogEntry,
    ExecutionRecord,
    InstallationRecord,
    OnboardingField,
    OnErrorPolicy,
    RunStatus,
    ScheduleSpec,
    SkillHooks,
    SkillManifest,
    SkipReason,
    Trigger,
)
from .permissions import RiskLevel, describe_permission, is_allowed, risk_of
from .progress import ProgressChannel, ProgressEvent, ProgressEventType
from .scheduler import ActionOutcome, ScheduleResult, Scheduler, plan_order
from .store import InMemoryStore, JsonFileStore, SkillStore, open_store
from .validator import ManifestValidator, ValidationIssue, ValidationLevel, ValidationResult
from .visualizer import ManifestVisualizer

__all__ = [
    "SkillManifest",
    "ActionSpec",
    "OnboardingField",
    "ScheduleSpec",
    "SkillHooks",
    "InstallationRecord",
    "ExecutionRecord",
    "AuditLogEntry",
    "ActionStatus",
    "OnErrorPolicy",
    "RunStatus",
    "SkipReason",
    "Trigger",
    "ManifestLoader",
    "export_manifest",
    "ManifestValidator",
    "ValidationIssue",
    "ValidationLevel",
    "ValidationResult",
    "ManifestVisualizer",
    "RiskLevel",
    "is_allowed",
    "risk_of",
    "describe_permission",
    "ExecutionContext",
    "ExecutionOverrides",
    "CancellationToken",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressEventType",
    "Scheduler",
    "ScheduleResult",
    "ActionOutcome",
    "plan_order",
    "AuditLogger",
    "RevertResult",
    "SkillStore",
    "InMemoryStore",
    "JsonFileStore",
    "open_store",
    "IgnitionSettings",
    "configure_logging",
    "MetricsCollector",
    "SkillMetrics",
    "PrometheusExporter",
    "IgnitionError",
    "ErrorCode",
    "ManifestLoadError",
    "ManifestValidationError",
    "CyclicDependencyError",
    "PermissionDeniedError",
    "DependencyNotMetError",
    "HandlerError",
    "UnknownActionTypeError",
    "TemplateError",
    "InstallationNotFoundError",
    "ExecutionRecordFinalizedError",
    "StoreError",
    "InvalidParamsError",
]
