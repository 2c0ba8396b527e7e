"""Pydantic models for skill manifests, installations and run records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ExecutionRecordFinalizedError
from .progress import ProgressEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OnErrorPolicy(str, Enum):
    """What the scheduler does when an action fails."""

    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class Trigger(str, Enum):
    """Why a run was started; selects the action list to execute."""

    RUN = "run"
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"


class RunStatus(str, Enum):
    """Lifecycle of an execution record."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class ActionStatus(str, Enum):
    """Per-action state: pending -> skipped | running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why an action did not run."""

    CONDITION_FALSE = "condition-false"
    DEPENDENCY_NOT_MET = "dependency-not-met"
    UPSTREAM_STOP = "upstream-stop"
    CANCELLED = "cancelled"


class _ManifestModel(BaseModel):
    """Manifest parts are immutable and accept camelCase or snake_case keys."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class WhenClause(_ManifestModel):
    """Run condition for an action."""

    condition: str = Field(..., description="Template evaluated for truthiness")


class ActionSpec(_ManifestModel):
    """A single declared step of a skill."""

    id: str = Field(..., min_length=1, description="Unique id within its list")
    type: str = Field(..., min_length=1, description="Dispatch key for the handler")
    name: Optional[str] = Field(None, description="Human-readable label")
    params: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque params, may contain templates"
    )
    when: Optional[WhenClause] = None
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    on_error: OnErrorPolicy = Field(default=OnErrorPolicy.STOP, alias="onError")
    retry_count: int = Field(default=3, ge=0, alias="retryCount")
    retry_delay: int = Field(
        default=1000, ge=0, alias="retryDelay", description="Milliseconds"
    )
    output_to: Optional[str] = Field(None, alias="outputTo")

    @field_validator("when", mode="before")
    @classmethod
    def coerce_condition(cls, v: Any) -> Any:
        """Allow the shorthand ``when: "{{ config.flag }}"``."""
        if isinstance(v, str):
            return {"condition": v}
        return v

    @property
    def label(self) -> str:
        return self.name or self.id


class OnboardingDependency(_ManifestModel):
    """Conditional visibility: show a field only when another has a value."""

    field: str
    value: Optional[Any] = None


class OnboardingField(_ManifestModel):
    """A value collected from the user while installing a skill."""

    name: str = Field(..., min_length=1)
    label: Optional[str] = None
    type: str = Field(default="text")
    required: bool = False
    default: Optional[Any] = None
    options: List[Any] = Field(default_factory=list)
    description: Optional[str] = None
    depends_on: Optional[OnboardingDependency] = Field(None, alias="dependsOn")

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_field_name(cls, v: Any) -> Any:
        """Allow the shorthand ``dependsOn: "otherField"``."""
        if isinstance(v, str):
            return {"field": v}
        return v


class SkillHooks(_ManifestModel):
    """Lifecycle action lists."""

    install: List[ActionSpec] = Field(default_factory=list)
    uninstall: List[ActionSpec] = Field(default_factory=list)
    update: List[ActionSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def assign_hook_ids(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for hook in ("install", "uninstall", "update"):
                if isinstance(data.get(hook), list):
                    data[hook] = assign_action_ids(data[hook], f"{hook}-action")
        return data

    def for_trigger(self, trigger: Trigger) -> List[ActionSpec]:
        return list(getattr(self, trigger.value, []))


class ScheduleSpec(_ManifestModel):
    """A recurring trigger declared by the skill; the host fires it."""

    id: str = Field(..., min_length=1)
    cron: str = Field(..., min_length=1)
    enabled: bool = True
    actions: List[str] = Field(default_factory=list)


class SkillManifest(_ManifestModel):
    """
    A complete skill definition.

    A manifest names the permissions a skill requests, the onboarding data it
    needs and the ordered actions it runs. It is the portable unit exchanged
    between hosts as JSON.
    """

    name: str = Field(..., min_length=1)
    slug: str = Field(..., description="Lowercase [a-z0-9-] identifier")
    version: str = Field(..., description="Semantic version X.Y.Z")
    description: Optional[str] = None
    author: Optional[str] = None
    icon: Optional[str] = None
    category: str = "general"
    permissions: List[str] = Field(default_factory=list)
    onboarding: List[OnboardingField] = Field(default_factory=list)
    actions: List[ActionSpec] = Field(default_factory=list)
    hooks: Optional[SkillHooks] = None
    schedules: List[ScheduleSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def assign_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("actions"), list):
            data = dict(data)
            data["actions"] = assign_action_ids(data["actions"], "action")
        return data

    def actions_for(self, trigger: Trigger) -> List[ActionSpec]:
        """Return the action list a trigger runs."""
        if trigger == Trigger.RUN:
            return list(self.actions)
        if self.hooks is None:
            return []
        return self.hooks.for_trigger(trigger)

    def to_interchange(self) -> Dict[str, Any]:
        """Dump as the camelCase JSON interchange document."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def __repr__(self) -> str:
        return f"<SkillManifest slug='{self.slug}' version='{self.version}' actions={len(self.actions)}>"


def assign_action_ids(actions: List[Any], prefix: str) -> List[Any]:
    """Fill in missing action ids from their 1-based position."""
    result = []
    for i, action in enumerate(actions, start=1):
        if isinstance(action, dict) and not action.get("id"):
            action = {**action, "id": f"{prefix}-{i}"}
        result.append(action)
    return result


class InstallationRecord(BaseModel):
    """A skill installed for one user, with its granted permissions."""

    id: str
    user_id: str
    skill_id: str
    status: str = "installed"
    config: Dict[str, Any] = Field(default_factory=dict)
    permissions_granted: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    onboarding_data: Dict[str, Any] = Field(default_factory=dict)
    manifest: SkillManifest
    installed_at: datetime = Field(default_factory=utcnow)
    last_run: Optional[datetime] = None


class ExecutionRecord(BaseModel):
    """
    Persisted state of one run.

    Mutated only by the engine while running; any mutation after a terminal
    status raises ExecutionRecordFinalizedError.
    """

    id: str
    installation_id: str
    trigger: Trigger = Trigger.RUN
    status: RunStatus = RunStatus.RUNNING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    progress: List[ProgressEvent] = Field(default_factory=list)
    current_step: int = 0
    total_steps: int = 0
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __setattr__(self, name: str, value: Any) -> None:
        if self.is_terminal:
            raise ExecutionRecordFinalizedError(self.id, self.status.value)
        super().__setattr__(name, value)

    def add_event(self, event: ProgressEvent) -> None:
        if self.is_terminal:
            raise ExecutionRecordFinalizedError(self.id, self.status.value)
        self.progress.append(event)

    def finish(
        self,
        status: RunStatus,
        error_message: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move the record to a terminal status; status is assigned last."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        completed_at = utcnow()
        self.completed_at = completed_at
        self.duration_ms = int(
            (completed_at - self.started_at).total_seconds() * 1000
        )
        if error_message is not None:
            self.error_message = error_message
        if output is not None:
            self.output = output
        self.status = status


class AuditLogEntry(BaseModel):
    """
    Reversible record of one executed action.

    Only ``reverted``/``reverted_at`` change after creation, and only once.
    """

    id: str
    installation_id: str
    execution_id: Optional[str] = None
    action_id: Optional[str] = None
    action: str
    target: str
    before_state: Optional[Any] = None
    after_state: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    reversible: bool = False
    reverted: bool = False
    reverted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
