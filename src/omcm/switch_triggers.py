"""Advisory switch triggers: threshold checks that recommend an action.

Nothing here acts on its own; callers decide what to do with the
recommendation.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from rich.text import Text

logger = logging.getLogger(__name__)

ENV_PREFIX = "OMCM_TRIGGER_"

SWITCH_TRIGGERS: dict[str, dict[str, Any]] = {
    "hourly_rate": {"threshold": 50, "unit": "requests/hour", "action": "suggest_opencode"},
    "cost_budget": {"threshold": 5.0, "unit": "$/session", "action": "force_opencode"},
    "mcp_failure": {"threshold": 3, "unit": "consecutive", "action": "fallback_opencode"},
    "latency": {"threshold": 30000, "unit": "ms_avg", "action": "switch_model"},
    "token_burn_rate": {"threshold": 100000, "unit": "tokens/minute", "action": "suggest_downgrade"},
}

ACTION_PRIORITY = {
    "force_opencode": 100,
    "fallback_opencode": 80,
    "suggest_downgrade": 60,
    "switch_model": 40,
    "suggest_opencode": 20,
}

ACTION_SEVERITY = {
    "force_opencode": "critical",
    "fallback_opencode": "critical",
    "suggest_downgrade": "warning",
    "switch_model": "warning",
    "suggest_opencode": "info",
}

SEVERITY_STYLE = {"critical": "bold red", "warning": "yellow", "info": "cyan"}


@dataclass
class TriggerHit:
    name: str
    threshold: float
    actual: float
    action: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# trigger name -> (metric key, inclusive comparison, message builder)
_CHECKS = [
    ("hourly_rate", "hourly_requests", False,
     lambda v, t: f"Hourly request rate exceeded: {v} > {t}"),
    ("cost_budget", "session_cost", False,
     lambda v, t: f"Session cost budget exceeded: ${v:.2f} > ${t:.2f}"),
    ("mcp_failure", "mcp_consecutive_failures", True,
     lambda v, t: f"MCP consecutive failures: {v} >= {t}"),
    ("latency", "avg_latency_ms", False,
     lambda v, t: f"Average latency exceeded: {v}ms > {t}ms"),
    ("token_burn_rate", "token_burn_rate", False,
     lambda v, t: f"Token burn rate exceeded: {v} tokens/min > {t} tokens/min"),
]


def evaluate_triggers(metrics: Mapping[str, Any] | None, config: dict | None = None) -> dict[str, Any]:
    """Check each metric present in ``metrics`` against its threshold.

    Metric keys: ``hourly_requests``, ``session_cost``,
    ``mcp_consecutive_failures``, ``avg_latency_ms``, ``token_burn_rate``.
    Absent metrics are skipped.
    """
    if not metrics:
        return {"triggered": False, "triggers": []}
    config = config or SWITCH_TRIGGERS
    hits: list[TriggerHit] = []
    for name, key, inclusive, message in _CHECKS:
        value = metrics.get(key)
        trigger = config.get(name)
        if value is None or not trigger:
            continue
        threshold = trigger["threshold"]
        fired = value >= threshold if inclusive else value > threshold
        if fired:
            hits.append(TriggerHit(name, threshold, value, trigger["action"], message(value, threshold)))
    return {"triggered": bool(hits), "triggers": hits}


def get_recommended_action(triggers: list[TriggerHit] | None) -> dict[str, str]:
    """Highest-priority action among ``triggers``; ties keep the first hit."""
    if not triggers:
        return {"action": "none", "reason": "No triggers activated", "severity": "info"}

    selected = None
    best = -1
    for trigger in triggers:
        priority = ACTION_PRIORITY.get(trigger.action, 0)
        if priority > best:
            best = priority
            selected = trigger

    reason = selected.message
    if len(triggers) > 1:
        reason += f" (and {len(triggers) - 1} more trigger(s))"
    return {
        "action": selected.action,
        "reason": reason,
        "severity": ACTION_SEVERITY.get(selected.action, "info"),
    }


def create_trigger_config(overrides: dict | None = None, environ: Mapping[str, str] | None = None) -> dict:
    """Defaults, then ``OMCM_TRIGGER_<NAME>`` thresholds, then explicit overrides."""
    config = copy.deepcopy(SWITCH_TRIGGERS)
    environ = os.environ if environ is None else environ

    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name not in config:
            continue
        try:
            config[name]["threshold"] = float(raw)
        except ValueError:
            logger.debug(f"Ignoring non-numeric {key}={raw!r}")

    for name, override in (overrides or {}).items():
        if name not in config or not override:
            continue
        for field in ("threshold", "action", "unit"):
            if override.get(field) is not None:
                config[name][field] = override[field]
    return config


def format_trigger_alert(trigger: TriggerHit, severity: str | None = None) -> Text:
    """Styled one-line alert for terminal output."""
    severity = severity or ACTION_SEVERITY.get(trigger.action, "info")
    label = trigger.action.upper().replace("_", " ")
    return Text(f"[TRIGGER] {label}: {trigger.message}", style=SEVERITY_STYLE.get(severity, "cyan"))
