"""ExecutionContext - per-run state shared by the scheduler and handlers."""

from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from . import templates
from .models import InstallationRecord, SkillManifest
from .permissions import is_allowed


class ExecutionOverrides(BaseModel):
    """Caller-supplied values layered over the installation for one run."""

    input: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)


class CancellationToken:
    """Cooperative cancellation flag checked between actions."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ExecutionContext:
    """
    Context for one skill run.

    Owned by exactly one run. Handlers get read access to ``variables``; only
    the engine writes to it, through ``set_variable``, when an action declares
    ``outputTo``.
    """

    def __init__(
        self,
        installation_id: str,
        user_id: str,
        skill_id: str,
        manifest: SkillManifest,
        config: Optional[Dict[str, Any]] = None,
        environment: Optional[Dict[str, str]] = None,
        permissions: Optional[List[str]] = None,
        variables: Optional[Dict[str, Any]] = None,
        input: Optional[Dict[str, Any]] = None,
        onboarding_data: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> None:
        self.installation_id = installation_id
        self.user_id = user_id
        self.skill_id = skill_id
        self.manifest = manifest
        self.config: Dict[str, Any] = dict(config or {})
        self.environment: Dict[str, str] = dict(environment or {})
        self.permissions: frozenset = frozenset(permissions or [])
        self.input: Dict[str, Any] = dict(input or {})
        self.onboarding_data: Dict[str, Any] = dict(onboarding_data or {})
        self.execution_id = execution_id
        self._variables: Dict[str, Any] = dict(variables or {})

    @classmethod
    def from_installation(
        cls,
        installation: InstallationRecord,
        overrides: Optional[ExecutionOverrides] = None,
        execution_id: Optional[str] = None,
    ) -> "ExecutionContext":
        """Build a fresh context from an installation plus run overrides."""
        overrides = overrides or ExecutionOverrides()
        return cls(
            installation_id=installation.id,
            user_id=installation.user_id,
            skill_id=installation.skill_id,
            manifest=installation.manifest,
            config={**installation.config, **overrides.config},
            environment={**installation.environment, **overrides.environment},
            permissions=installation.permissions_granted,
            variables=overrides.variables,
            input=overrides.input,
            onboarding_data=installation.onboarding_data,
            execution_id=execution_id,
        )

    @property
    def variables(self) -> Mapping[str, Any]:
        """Read-only view of accumulated action outputs, in insertion order."""
        return MappingProxyType(self._variables)

    def set_variable(self, name: str, value: Any) -> None:
        """Bind an action output. Rebinding keeps the original position."""
        self._variables[name] = value

    def get_variable(self, name: str) -> Any:
        return self._variables.get(name)

    def snapshot_variables(self) -> Dict[str, Any]:
        return dict(self._variables)

    @property
    def scope(self) -> templates.TemplateScope:
        return templates.TemplateScope(
            variables=self._variables,
            config=self.config,
            input=self.input,
            onboarding_data=self.onboarding_data,
            environment=self.environment,
        )

    def resolve(self, template: Any) -> Any:
        return templates.resolve(template, self.scope)

    def resolve_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        resolved: Dict[str, Any] = templates.resolve_params(params, self.scope)
        return resolved

    def evaluate_condition(self, condition: Optional[str]) -> bool:
        return templates.evaluate_condition(condition, self.scope)

    def is_allowed(self, required: str) -> bool:
        return is_allowed(self.permissions, required)

    def __repr__(self) -> str:
        return (
            f"<ExecutionContext installation='{self.installation_id}' "
            f"skill='{self.manifest.slug}' variables={len(self._variables)}>"
        )
