"""ManifestValidator - validates skill manifests before they are installed or run."""

import argparse
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from .errors import ManifestLoadError, ManifestValidationError
from .loader import ManifestLoader
from .models import (
    ActionSpec,
    OnboardingField,
    ScheduleSpec,
    SkillManifest,
    assign_action_ids,
)
from .permissions import is_allowed, is_valid_pattern
from .scheduler import find_cycle
from .templates import check_syntax, has_expressions
from .visualizer import ManifestVisualizer

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
SEMVER_RE = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")
CRON_FIELD_RE = re.compile(r"^[A-Za-z0-9*/,\-?#LW]+$")

FIELD_TYPES = frozenset(
    {"text", "email", "url", "number", "boolean", "select", "secret", "textarea"}
)
HOOK_NAMES = ("install", "uninstall", "update")


class ValidationLevel(Enum):
    """Validation message severity levels."""

    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a manifest."""

    code: str
    message: str
    path: str = ""
    level: ValidationLevel = ValidationLevel.ERROR

    def __str__(self) -> str:
        prefix = f"[{self.level.value.upper()}]"
        if self.path:
            prefix += f" {self.path}"
        return f"{prefix}: {self.message}"

    def colored(self) -> str:
        colors = {
            ValidationLevel.ERROR: "\033[91m",  # Red
            ValidationLevel.WARNING: "\033[93m",  # Yellow
        }
        return f"{colors[self.level]}{self}\033[0m"

    def to_dict(self) -> Dict[str, str]:
        return {
            "code": self.code,
            "message": self.message,
            "path": self.path,
            "level": self.level.value,
        }


@dataclass
class ValidationResult:
    """
    Everything the validator found.

    ``manifest`` is set only when there are no errors; warnings never block.
    """

    manifest: Optional[SkillManifest]
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.level == ValidationLevel.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.level == ValidationLevel.WARNING]

    @property
    def valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> SkillManifest:
        """Return the manifest, or raise ManifestValidationError listing every error."""
        if self.manifest is None:
            raise ManifestValidationError(self.errors)
        return self.manifest


@dataclass
class _Parts:
    """The pieces of a manifest that parsed, for semantic checks."""

    slug: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    permissions: List[Any] = field(default_factory=list)
    onboarding: List[OnboardingField] = field(default_factory=list)
    action_lists: Dict[str, List[ActionSpec]] = field(default_factory=dict)
    schedules: List[ScheduleSpec] = field(default_factory=list)


class ManifestValidator:
    """
    Validate skill manifests.

    Pure: every problem is collected as a ValidationIssue, nothing is raised
    for bad input, and the same input always yields the same issues.

    Checks:
    - Structure (pydantic)
    - Slug and semantic version format
    - Action ids unique, dependencies known, dependency graph acyclic
    - Permission pattern grammar
    - Onboarding field names and visibility rules
    - Template syntax of conditions and params
    - Schedules: cron shape and action references
    - With a registry: unknown action types and implied permissions the
      manifest does not request (warnings)
    """

    def __init__(self, registry: Optional[Any] = None) -> None:
        """
        Initialize validator.

        Args:
            registry: Optional ActionRegistry to check action types against
        """
        self.registry = registry

    def validate(self, raw: Union[str, Dict[str, Any], SkillManifest]) -> ValidationResult:
        """
        Validate a manifest given as a document string, a dict or a model.

        Returns:
            ValidationResult with the manifest (if error-free) and all issues
        """
        issues: List[ValidationIssue] = []

        if isinstance(raw, SkillManifest):
            data: Any = raw.to_interchange()
        elif isinstance(raw, str):
            try:
                data = ManifestLoader().parse(raw)
            except ManifestLoadError as e:
                issues.append(ValidationIssue("PARSE_ERROR", str(e)))
                return ValidationResult(None, issues)
        else:
            data = raw

        if not isinstance(data, dict):
            issues.append(ValidationIssue("INVALID_STRUCTURE", "Manifest must be a mapping"))
            return ValidationResult(None, issues)

        manifest: Optional[SkillManifest] = None
        try:
            manifest = SkillManifest.model_validate(data)
        except ValidationError as e:
            issues.extend(_from_pydantic(e))

        parts = self._parts(manifest, data)

        self._check_identity(parts, issues)
        self._check_permissions(parts, issues)
        self._check_onboarding(parts, issues)
        for path, actions in parts.action_lists.items():
            self._check_actions(path, actions, parts, issues)
        self._check_schedules(parts, issues)

        has_errors = any(i.level == ValidationLevel.ERROR for i in issues)
        return ValidationResult(None if has_errors else manifest, issues)

    def _parts(self, manifest: Optional[SkillManifest], data: Dict[str, Any]) -> _Parts:
        if manifest is not None:
            lists = {"actions": list(manifest.actions)}
            if manifest.hooks is not None:
                for hook in HOOK_NAMES:
                    lists[f"hooks.{hook}"] = list(getattr(manifest.hooks, hook))
            return _Parts(
                slug=manifest.slug,
                version=manifest.version,
                description=manifest.description,
                permissions=list(manifest.permissions),
                onboarding=list(manifest.onboarding),
                action_lists=lists,
                schedules=list(manifest.schedules),
            )

        # Structure is broken somewhere; keep every piece that parses alone.
        parts = _Parts(
            slug=data.get("slug") if isinstance(data.get("slug"), str) else None,
            version=data.get("version") if isinstance(data.get("version"), str) else None,
            description=data.get("description"),
        )
        if isinstance(data.get("permissions"), list):
            parts.permissions = list(data["permissions"])
        parts.onboarding = _parse_each(OnboardingField, data.get("onboarding"))
        parts.schedules = _parse_each(ScheduleSpec, data.get("schedules"))
        if isinstance(data.get("actions"), list):
            parts.action_lists["actions"] = _parse_each(
                ActionSpec, assign_action_ids(data["actions"], "action")
            )
        hooks = data.get("hooks")
        if isinstance(hooks, dict):
            for hook in HOOK_NAMES:
                if isinstance(hooks.get(hook), list):
                    parts.action_lists[f"hooks.{hook}"] = _parse_each(
                        ActionSpec, assign_action_ids(hooks[hook], f"{hook}-action")
                    )
        return parts

    def _check_identity(self, parts: _Parts, issues: List[ValidationIssue]) -> None:
        if parts.slug is not None and not SLUG_RE.match(parts.slug):
            issues.append(
                ValidationIssue(
                    "INVALID_SLUG",
                    f"Slug '{parts.slug}' must be non-empty and use only a-z, 0-9 and '-'",
                    "slug",
                )
            )

        if parts.version is not None and not SEMVER_RE.match(parts.version):
            issues.append(
                ValidationIssue(
                    "INVALID_VERSION",
                    f"Version '{parts.version}' is not a semantic version (X.Y.Z)",
                    "version",
                )
            )

        if not parts.description or not str(parts.description).strip():
            issues.append(
                ValidationIssue(
                    "MISSING_DESCRIPTION",
                    "Skill description is missing",
                    "description",
                    ValidationLevel.WARNING,
                )
            )

    def _check_permissions(self, parts: _Parts, issues: List[ValidationIssue]) -> None:
        for i, pattern in enumerate(parts.permissions):
            if not is_valid_pattern(pattern):
                issues.append(
                    ValidationIssue(
                        "INVALID_PERMISSION",
                        f"Permission '{pattern}' is not a valid pattern "
                        "('*', 'category:*' or 'category:specific')",
                        f"permissions[{i}]",
                    )
                )

    def _check_onboarding(self, parts: _Parts, issues: List[ValidationIssue]) -> None:
        names = [f.name for f in parts.onboarding]
        seen: set = set()

        for i, onboarding_field in enumerate(parts.onboarding):
            path = f"onboarding[{i}]"
            if onboarding_field.name in seen:
                issues.append(
                    ValidationIssue(
                        "DUPLICATE_FIELD",
                        f"Onboarding field '{onboarding_field.name}' is declared twice",
                        f"{path}.name",
                    )
                )
            seen.add(onboarding_field.name)

            if onboarding_field.type not in FIELD_TYPES:
                issues.append(
                    ValidationIssue(
                        "INVALID_FIELD_TYPE",
                        f"Unknown field type '{onboarding_field.type}' "
                        f"(expected one of: {', '.join(sorted(FIELD_TYPES))})",
                        f"{path}.type",
                    )
                )

            if onboarding_field.type == "select" and not onboarding_field.options:
                issues.append(
                    ValidationIssue(
                        "MISSING_OPTIONS",
                        f"Select field '{onboarding_field.name}' has no options",
                        f"{path}.options",
                        ValidationLevel.WARNING,
                    )
                )

            dependency = onboarding_field.depends_on
            if dependency is not None:
                if dependency.field == onboarding_field.name:
                    issues.append(
                        ValidationIssue(
                            "INVALID_FIELD_DEPENDENCY",
                            f"Onboarding field '{onboarding_field.name}' depends on itself",
                            f"{path}.dependsOn",
                        )
                    )
                elif dependency.field not in names:
                    issues.append(
                        ValidationIssue(
                            "UNKNOWN_FIELD",
                            f"Onboarding field '{onboarding_field.name}' depends on "
                            f"unknown field '{dependency.field}'",
                            f"{path}.dependsOn.field",
                        )
                    )

    def _check_actions(
        self,
        list_path: str,
        actions: Sequence[ActionSpec],
        parts: _Parts,
        issues: List[ValidationIssue],
    ) -> None:
        ids = [a.id for a in actions]
        seen: set = set()
        outputs: Dict[str, str] = {}

        for i, action in enumerate(actions):
            path = f"{list_path}[{i}]"

            if action.id in seen:
                issues.append(
                    ValidationIssue(
                        "DUPLICATE_ACTION_ID",
                        f"Action id '{action.id}' is used more than once",
                        f"{path}.id",
                    )
                )
            seen.add(action.id)

            for dep in action.depends_on:
                if dep not in ids:
                    issues.append(
                        ValidationIssue(
                            "UNKNOWN_DEPENDENCY",
                            f"Action '{action.id}' depends on unknown action '{dep}'",
                            f"{path}.dependsOn",
                        )
                    )

            if action.when is not None:
                error = check_syntax(action.when.condition)
                if error:
                    issues.append(
                        ValidationIssue(
                            "INVALID_CONDITION",
                            f"Invalid condition syntax: {error}",
                            f"{path}.when.condition",
                        )
                    )

            for key, error in _param_syntax_errors(action.params, "params"):
                issues.append(
                    ValidationIssue(
                        "INVALID_TEMPLATE",
                        f"Invalid template syntax: {error}",
                        f"{path}.{key}",
                    )
                )

            if action.output_to:
                if action.output_to in outputs:
                    issues.append(
                        ValidationIssue(
                            "DUPLICATE_OUTPUT",
                            f"Actions '{outputs[action.output_to]}' and '{action.id}' "
                            f"both write variable '{action.output_to}'",
                            f"{path}.outputTo",
                            ValidationLevel.WARNING,
                        )
                    )
                else:
                    outputs[action.output_to] = action.id

            self._check_against_registry(path, action, parts, issues)

        cycle = find_cycle(actions)
        if cycle:
            issues.append(
                ValidationIssue(
                    "CYCLIC_DEPENDENCY",
                    f"Cyclic dependency: {' -> '.join(cycle)}",
                    list_path,
                )
            )

    def _check_against_registry(
        self,
        path: str,
        action: ActionSpec,
        parts: _Parts,
        issues: List[ValidationIssue],
    ) -> None:
        if self.registry is None:
            return

        handler = self.registry.get(action.type)
        if handler is None:
            issues.append(
                ValidationIssue(
                    "UNKNOWN_ACTION_TYPE",
                    f"No handler registered for action type '{action.type}'",
                    f"{path}.type",
                    ValidationLevel.WARNING,
                )
            )
            return

        # Templated params are only known at run time.
        if any(has_expressions(v) for v in action.params.values()):
            return
        required = self.registry.required_permission(action.type, action.params)
        if required and not is_allowed(parts.permissions, required):
            issues.append(
                ValidationIssue(
                    "PERMISSION_NOT_REQUESTED",
                    f"Action '{action.id}' needs '{required}', which the manifest "
                    "does not request",
                    f"{path}.type",
                    ValidationLevel.WARNING,
                )
            )

    def _check_schedules(self, parts: _Parts, issues: List[ValidationIssue]) -> None:
        run_ids = {a.id for a in parts.action_lists.get("actions", [])}
        seen: set = set()

        for i, schedule in enumerate(parts.schedules):
            path = f"schedules[{i}]"
            if schedule.id in seen:
                issues.append(
                    ValidationIssue(
                        "DUPLICATE_SCHEDULE_ID",
                        f"Schedule id '{schedule.id}' is used more than once",
                        f"{path}.id",
                    )
                )
            seen.add(schedule.id)

            if not is_valid_cron(schedule.cron):
                issues.append(
                    ValidationIssue(
                        "INVALID_CRON",
                        f"Cron expression '{schedule.cron}' must have five fields",
                        f"{path}.cron",
                    )
                )

            for action_id in schedule.actions:
                if action_id not in run_ids:
                    issues.append(
                        ValidationIssue(
                            "UNKNOWN_ACTION",
                            f"Schedule '{schedule.id}' references unknown action '{action_id}'",
                            f"{path}.actions",
                            ValidationLevel.WARNING,
                        )
                    )


def is_valid_cron(expression: str) -> bool:
    fields = expression.split()
    return len(fields) == 5 and all(CRON_FIELD_RE.match(f) for f in fields)


def _from_pydantic(error: ValidationError) -> List[ValidationIssue]:
    issues = []
    for e in error.errors():
        path = ".".join(
            f"[{loc}]" if isinstance(loc, int) else str(loc) for loc in e["loc"]
        ).replace(".[", "[")
        issues.append(ValidationIssue("VALIDATION_ERROR", e["msg"], path))
    return issues


def _parse_each(model: Any, items: Any) -> List[Any]:
    if not isinstance(items, list):
        return []
    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError:
            continue
    return parsed


def _param_syntax_errors(value: Any, path: str) -> List[tuple]:
    errors: List[tuple] = []
    if isinstance(value, str):
        error = check_syntax(value)
        if error:
            errors.append((path, error))
    elif isinstance(value, dict):
        for key, item in value.items():
            errors.extend(_param_syntax_errors(item, f"{path}.{key}"))
    elif isinstance(value, list):
        for i, item in enumerate(value):
            errors.extend(_param_syntax_errors(item, f"{path}[{i}]"))
    return errors


def main() -> None:
    """CLI entry point for manifest validation."""
    parser = argparse.ArgumentParser(
        description="Validate skill manifest files (JSON or YAML)"
    )
    parser.add_argument("manifest", help="Path to manifest file")
    parser.add_argument(
        "--graph",
        action="store_true",
        help="Print the action dependency graph as a Mermaid flowchart",
    )
    parser.add_argument(
        "--no-color", action="store_true", help="Disable colored output"
    )

    args = parser.parse_args()

    try:
        with open(args.manifest, encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        print(f"Error: cannot read {args.manifest}: {e}", file=sys.stderr)
        sys.exit(1)

    result = ManifestValidator().validate(content)

    for issue in result.issues:
        print(str(issue) if args.no_color else issue.colored())

    if result.issues:
        print(
            f"\nValidation Summary: {len(result.errors)} error(s), "
            f"{len(result.warnings)} warning(s)"
        )
    else:
        print("Manifest validation passed")

    if args.graph and result.manifest is not None:
        print()
        print(ManifestVisualizer().to_mermaid(result.manifest))

    sys.exit(0 if result.valid else 1)


if __name__ == "__main__":
    main()
