"""Template resolution for action params and run conditions.

Templates use ``{{ dotted.path }}`` expressions. The first path segment is
looked up in, in order: run variables, the reserved scope roots (``config``,
``input``, ``env``, ``onboarding``, ``variables``), installation config,
caller input and onboarding data. The first scope that has the segment wins.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from jinja2 import ChainableUndefined, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateError

_PATH = r"[A-Za-z_][\w-]*(?:\.[\w-]+)*"
_SINGLE_EXPR_RE = re.compile(rf"^\s*\{{\{{\s*({_PATH})\s*\}}\}}\s*$")
_PATH_EXPR_RE = re.compile(rf"\{{\{{\s*({_PATH})\s*\}}\}}")
_ANY_EXPR_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")

FALSY_STRINGS = frozenset({"", "false", "0", "null", "undefined", "none"})
RESERVED_ROOTS = ("config", "input", "env", "onboarding", "variables")

_LOOKUP_FN = "__resolve__"


@dataclass
class TemplateScope:
    """The data a template can see."""

    variables: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    input: Dict[str, Any] = field(default_factory=dict)
    onboarding_data: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)

    def _roots(self) -> Dict[str, Any]:
        return {
            "config": self.config,
            "input": self.input,
            "env": self.environment,
            "onboarding": self.onboarding_data,
            "variables": self.variables,
        }

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path; unknown paths give None."""
        parts = path.split(".")
        head = parts[0]

        found = False
        value: Any = None
        scopes = (
            self.variables,
            self._roots(),
            self.config,
            self.input,
            self.onboarding_data,
        )
        for scope in scopes:
            if head in scope:
                value = scope[head]
                found = True
                break
        if not found:
            return None

        for part in parts[1:]:
            value = _step(value, part)
            if value is None:
                return None
        return value

    def namespace(self) -> Dict[str, Any]:
        """Flat namespace for jinja rendering, same precedence as lookup."""
        ns: Dict[str, Any] = {}
        ns.update(self.onboarding_data)
        ns.update(self.input)
        ns.update(self.config)
        ns.update(self._roots())
        ns.update(self.variables)
        ns[_LOOKUP_FN] = self.lookup
        return ns


def _step(value: Any, part: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(part)
    if isinstance(value, (list, tuple)):
        if part.isdigit() and int(part) < len(value):
            return value[int(part)]
        return None
    if part.startswith("_"):
        return None
    return getattr(value, part, None)


def _finalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


_jinja_env = SandboxedEnvironment(
    autoescape=False,
    undefined=ChainableUndefined,
    finalize=_finalize,
)


def is_single_expression(template: str) -> bool:
    return bool(_SINGLE_EXPR_RE.match(template))


def has_expressions(template: Any) -> bool:
    return isinstance(template, str) and ("{{" in template or "{%" in template)


def resolve(template: Any, scope: TemplateScope, field_name: str = "params") -> Any:
    """
    Resolve one template value.

    A string that is exactly one ``{{ path }}`` expression returns the
    resolved value with its original type (None if unknown). Mixed text is
    rendered to a string, unknown paths becoming empty. Non-strings pass
    through untouched.

    Raises:
        TemplateError: If the template cannot be parsed
    """
    if not isinstance(template, str):
        return template

    match = _SINGLE_EXPR_RE.match(template)
    if match:
        return scope.lookup(match.group(1))

    if not has_expressions(template):
        return template

    # Plain paths go through lookup so hyphenated ids and scope precedence
    # behave the same as in single-expression templates.
    source = _PATH_EXPR_RE.sub(
        lambda m: "{{ %s(%r) }}" % (_LOOKUP_FN, m.group(1)), template
    )
    try:
        return _jinja_env.from_string(source).render(scope.namespace())
    except TemplateSyntaxError as e:
        raise TemplateError(template, e, field_name) from e
    except Exception as e:
        raise TemplateError(template, e, field_name) from e


def resolve_params(data: Any, scope: TemplateScope, field_name: str = "params") -> Any:
    """
    Recursively resolve every template inside dicts and lists.

    Unlike ``resolve``, a lone expression naming an unknown path gives ""
    so handlers receive a string wherever a template stood.
    """
    if isinstance(data, str):
        value = resolve(data, scope, field_name)
        if value is None and is_single_expression(data):
            return ""
        return value
    if isinstance(data, Mapping):
        return {
            key: resolve_params(value, scope, f"{field_name}.{key}")
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [
            resolve_params(item, scope, f"{field_name}[{i}]")
            for i, item in enumerate(data)
        ]
    return data


def is_truthy(value: Any) -> bool:
    """
    Truthiness used for run conditions.

    Falsy: None, False, numeric zero, empty collections, and strings whose
    stripped lower-case form is "", "false", "0", "null", "undefined" or
    "none". Everything else is truthy.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return len(value) > 0
    return True


def evaluate_condition(condition: Optional[str], scope: TemplateScope) -> bool:
    """Resolve a condition template and apply ``is_truthy``; no condition runs."""
    if condition is None:
        return True
    return is_truthy(resolve(condition, scope, field_name="when.condition"))


def check_syntax(template: str) -> Optional[str]:
    """Return a parse error message for a template, or None when it parses."""
    if not has_expressions(template):
        return None
    source = _PATH_EXPR_RE.sub(
        lambda m: "{{ %s(%r) }}" % (_LOOKUP_FN, m.group(1)), template
    )
    try:
        _jinja_env.parse(source)
    except TemplateSyntaxError as e:
        return str(e)
    return None


def extract_references(data: Any) -> Set[str]:
    """Collect the root names referenced by templates anywhere in ``data``."""
    refs: Set[str] = set()

    if isinstance(data, str):
        for expr in _ANY_EXPR_RE.findall(data):
            head = re.match(r"[A-Za-z_][\w-]*", expr)
            if head:
                refs.add(head.group(0))
    elif isinstance(data, Mapping):
        for value in data.values():
            refs.update(extract_references(value))
    elif isinstance(data, (list, tuple)):
        for item in data:
            refs.update(extract_references(item))

    return refs


def reference_paths(data: Any) -> List[str]:
    """Full dotted paths referenced by plain ``{{ path }}`` expressions."""
    paths: List[str] = []

    def walk(value: Any) -> None:
        if isinstance(value, str):
            paths.extend(_PATH_EXPR_RE.findall(value))
        elif isinstance(value, Mapping):
            for item in value.values():
                walk(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                walk(item)

    walk(data)
    return paths
