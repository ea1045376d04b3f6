"""Declarative routing rules: ``condition -> action`` evaluated by priority.

Conditions are single comparisons over dot paths into the routing
context, e.g. ``usage.fiveHour > 90`` or ``agent.type == "security-reviewer"``.
Nothing is ever executed; only field lookups and literal comparisons.
"""

from __future__ import annotations

import json
import logging
import operator
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

from omcm.config import OmcmPaths

logger = logging.getLogger(__name__)

VALID_ACTIONS = (
    "prefer_opencode",
    "force_opencode",
    "prefer_claude",
    "force_claude",
    "block",
    "default",
)

# Two-character operators must be tried before their one-character prefixes.
OPERATORS: list[tuple[str, Callable[[Any, Any], bool]]] = [
    (">=", operator.ge),
    ("<=", operator.le),
    ("!=", operator.ne),
    ("==", operator.eq),
    (">", operator.gt),
    ("<", operator.lt),
]

_MISSING = object()


@dataclass
class RoutingRule:
    id: str
    condition: str
    action: str
    priority: int = 0
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "RoutingRule":
        priority = data.get("priority")
        return cls(
            id=str(data.get("id") or ""),
            condition=str(data.get("condition") or ""),
            action=str(data.get("action") or ""),
            priority=priority if isinstance(priority, (int, float)) else 0,
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_RULES = [
    RoutingRule("high-usage-opencode", "usage.fiveHour > 90", "prefer_opencode", 100,
                "Prefer external agents above 90% of the 5-hour window"),
    RoutingRule("weekly-limit-opencode", "usage.weekly > 85", "prefer_opencode", 90,
                "Prefer external agents above 85% of the weekly window"),
    RoutingRule("complex-task-claude", 'task.complexity == "high"', "prefer_claude", 80,
                "Keep complex tasks on Claude"),
    RoutingRule("security-claude", 'agent.type == "security-reviewer"', "prefer_claude", 85,
                "Keep security review on Claude"),
    RoutingRule("ecomode-opencode", "mode.ecomode == true", "prefer_opencode", 95,
                "Prefer external agents in ecomode"),
]


def parse_condition(condition: str) -> tuple[str, str, Any] | None:
    """Split ``"<path> <op> <literal>"`` into ``(path, op, value)``.

    Literals: ``true``/``false``, numbers, double-quoted strings; anything
    else is taken as a bare string. Returns None when unparseable.
    """
    for symbol, _ in OPERATORS:
        if symbol in condition:
            parts = [part.strip() for part in condition.split(symbol)]
            if len(parts) != 2 or not parts[0]:
                return None
            return parts[0], symbol, _parse_literal(parts[1])
    return None


def _parse_literal(raw: str) -> Any:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1]
    try:
        return float(raw)
    except ValueError:
        return raw


def resolve_path(context: Any, path: str) -> Any:
    value = context
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def evaluate_condition(condition: str, context: dict) -> bool:
    """True when ``condition`` holds for ``context``; absent fields never match."""
    parsed = parse_condition(condition)
    if parsed is None:
        return False
    path, symbol, expected = parsed
    actual = resolve_path(context, path)
    if actual is _MISSING or actual is None:
        return symbol == "!="
    compare = dict(OPERATORS)[symbol]
    try:
        return bool(compare(actual, expected))
    except TypeError:
        return False


def interpret_action(action: str) -> dict[str, Any]:
    """Translate an action name into routing preferences."""
    if action == "prefer_opencode":
        return {"preferredProvider": "opencode", "forceProvider": False, "reason": "Rule: prefer OpenCode"}
    if action == "force_opencode":
        return {"preferredProvider": "opencode", "forceProvider": True, "reason": "Rule: force OpenCode"}
    if action == "prefer_claude":
        return {"preferredProvider": "claude", "forceProvider": False, "reason": "Rule: prefer Claude"}
    if action == "force_claude":
        return {"preferredProvider": "claude", "forceProvider": True, "reason": "Rule: force Claude"}
    if action == "block":
        return {"blocked": True, "reason": "Rule: blocked"}
    return {"preferredProvider": None, "forceProvider": False, "reason": "Default routing"}


def validate_rule(rule: dict) -> dict[str, Any]:
    errors = []
    if not rule.get("id"):
        errors.append('Missing "id"')
    if not rule.get("condition"):
        errors.append('Missing "condition"')
    if not rule.get("action"):
        errors.append('Missing "action"')
    if rule.get("action") and rule["action"] not in VALID_ACTIONS:
        errors.append(f"Invalid action: {rule['action']}")
    priority = rule.get("priority")
    if priority is not None and (isinstance(priority, bool) or not isinstance(priority, (int, float))):
        errors.append("Priority must be a number")
    return {"valid": not errors, "errors": errors}


class RoutingRulesEngine:
    """Default rules merged with the first valid user rules file."""

    def __init__(
        self,
        paths: OmcmPaths | None = None,
        cwd: Path | None = None,
        rules: list[RoutingRule] | None = None,
    ):
        self.paths = paths or OmcmPaths()
        self.cwd = cwd
        self._explicit = rules
        self._rules: list[RoutingRule] | None = None

    def _load_rules_file(self) -> list[RoutingRule] | None:
        for path in self.paths.rules_files(self.cwd):
            if not path.exists():
                continue
            try:
                parsed = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load rules from {path}: {e}")
                continue
            if isinstance(parsed, dict) and isinstance(parsed.get("rules"), list):
                rules = []
                for raw in parsed["rules"]:
                    if not isinstance(raw, dict):
                        continue
                    check = validate_rule(raw)
                    if not check["valid"]:
                        logger.warning(f"Skipping invalid rule in {path}: {check['errors']}")
                        continue
                    rules.append(RoutingRule.from_dict(raw))
                return rules
        return None

    def get_rules(self) -> list[RoutingRule]:
        """All active rules, sorted once by descending priority."""
        if self._rules is None:
            custom = self._explicit if self._explicit is not None else self._load_rules_file()
            merged = list(DEFAULT_RULES) + list(custom or [])
            # sorted() is stable, so equal priorities keep definition order
            self._rules = sorted(merged, key=lambda r: -r.priority)
        return self._rules

    def evaluate_routing(self, context: dict) -> dict[str, Any]:
        """First matching rule wins; ``{"matched": False, "action": "default"}`` otherwise."""
        matched = [
            rule for rule in self.get_rules()
            if rule.condition and rule.action and evaluate_condition(rule.condition, context)
        ]
        if not matched:
            return {"matched": False, "action": "default", "rule": None}
        return {
            "matched": True,
            "action": matched[0].action,
            "rule": matched[0],
            "allMatched": matched,
        }

    def list_rules(self) -> list[dict[str, Any]]:
        return [rule.to_dict() for rule in self.get_rules()]

    def invalidate(self) -> None:
        self._rules = None
