"""Permission pattern matching and risk classification."""

import re
from enum import Enum
from typing import Iterable, List, Set

GLOBAL_WILDCARD = "*"

_SEGMENT = r"[a-z0-9_.-]+"
_PATTERN_RE = re.compile(
    rf"^(?:\*|{_SEGMENT}(?::{_SEGMENT})*:(?:{_SEGMENT}|\*))$"
)
_TOKEN_SPLIT_RE = re.compile(r"[:_.-]+")

DELETE_TOKENS = frozenset({"delete", "remove", "destroy", "purge", "drop"})
EXECUTE_TOKENS = frozenset({"execute", "exec", "shell", "command"})
EXECUTE_CATEGORIES = frozenset({"server", "exec", "shell"})
ENV_CATEGORIES = frozenset({"env", "environment"})
WRITE_TOKENS = frozenset(
    {
        "write",
        "create",
        "update",
        "send",
        "add",
        "set",
        "post",
        "put",
        "patch",
        "upload",
        "insert",
        "modify",
        "publish",
        "deploy",
        "share",
    }
)


class RiskLevel(str, Enum):
    """Risk classification of a permission set, lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def is_valid_pattern(pattern: str) -> bool:
    """
    Check a pattern against the grammar.

    Valid forms are ``*``, ``category:*``, ``category:specific`` and deeper
    ``a:b:c`` / ``a:b:*``. A ``*`` is only allowed as a whole segment at the
    end, so ``mcp:gh*`` and ``*:read`` are rejected.
    """
    return isinstance(pattern, str) and bool(_PATTERN_RE.match(pattern))


def category_of(pattern: str) -> str:
    """Return the part of a pattern before its first ':'."""
    return pattern.split(":", 1)[0]


def is_allowed(granted: Iterable[str], required: str) -> bool:
    """
    Decide whether the granted patterns cover a required capability.

    Precedence:
        1. exact string match
        2. the global wildcard ``*`` is granted
        3. ``prefix:*`` is granted for a ':'-bounded prefix of ``required``
           (``mcp:*`` and ``mcp:ghl:*`` both cover ``mcp:ghl:create_contact``)

    Nothing else matches. Granted patterns that fail the grammar are ignored.
    """
    if not required:
        return False

    valid: Set[str] = {p for p in granted if is_valid_pattern(p)}

    if required in valid:
        return True

    if GLOBAL_WILDCARD in valid:
        return True

    parts = required.split(":")
    for i in range(1, len(parts)):
        if ":".join(parts[:i]) + ":*" in valid:
            return True

    return False


def missing_permissions(granted: Iterable[str], required: Iterable[str]) -> List[str]:
    """Return the required capabilities not covered by ``granted``, in order."""
    granted_set = set(granted)
    missing: List[str] = []
    for capability in required:
        if capability not in missing and not is_allowed(granted_set, capability):
            missing.append(capability)
    return missing


def _tokens(pattern: str) -> Set[str]:
    return {t for t in _TOKEN_SPLIT_RE.split(pattern.lower()) if t}


def _is_high(pattern: str) -> bool:
    category = category_of(pattern).lower()
    tokens = _tokens(pattern)

    if tokens & DELETE_TOKENS:
        return True
    if category in EXECUTE_CATEGORIES or tokens & EXECUTE_TOKENS:
        return True
    if category in ENV_CATEGORIES and (pattern.endswith(":*") or "write" in tokens):
        return True
    return False


def _is_write(pattern: str) -> bool:
    # A category wildcard grants whatever writes the category offers.
    if pattern.endswith(":*"):
        return True
    return bool(_tokens(pattern) & WRITE_TOKENS)


def risk_of(patterns: Iterable[str]) -> RiskLevel:
    """
    Classify a permission set.

    ``critical`` if it contains ``*``; ``high`` if any pattern denotes
    deletion, server-side execution or an environment write; ``medium`` if any
    denotes a write; otherwise ``low``. The result depends only on the set's
    contents, never on enumeration order.
    """
    pattern_set = set(patterns)

    if GLOBAL_WILDCARD in pattern_set:
        return RiskLevel.CRITICAL
    if any(_is_high(p) for p in pattern_set):
        return RiskLevel.HIGH
    if any(_is_write(p) for p in pattern_set):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def describe_permission(pattern: str) -> str:
    """Human-readable description of a pattern for consent screens."""
    if pattern == GLOBAL_WILDCARD:
        return "Full access to every capability"

    parts = pattern.split(":")
    if parts[-1] == "*":
        scope = " ".join(parts[:-1])
        return f"All {scope} capabilities"
    if parts[0] == "mcp" and len(parts) >= 3:
        return f"Call tool '{':'.join(parts[2:])}' on MCP server '{parts[1]}'"
    return f"{parts[0].capitalize()}: {' '.join(parts[1:]).replace('_', ' ')}"
