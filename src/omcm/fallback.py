"""Fallback orchestrator: leave Claude when its limits run out, come back later.

Hysteresis: fallback activates at max(5h%, weekly%) >= 90 and recovers only
once usage drops below 85, so usage hovering between the two never flaps.
State lives in the global ``fallback-state.json``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from omcm.config import OmcmConfig, OmcmPaths
from omcm.handoff import write_handoff_context
from omcm.storage import locked_update, read_json_file
from omcm.usage import ClaudeUsage, ClaudeUsageReader

logger = logging.getLogger(__name__)

FALLBACK_THRESHOLD = 90
RECOVERY_THRESHOLD = 85
MAX_HISTORY = 100

FALLBACK_CHAIN: list[dict[str, Any]] = [
    {
        "id": "claude-opus-4-6",
        "name": "Claude Opus 4.6",
        "provider": "anthropic",
        "type": "primary",
        "checkLimit": "claude-oauth",
    },
    {
        "id": "gpt-5.3-codex",
        "name": "GPT-5.3 Codex",
        "provider": "openai",
        "type": "fallback-1",
        "mcpTool": "ask_codex",
        "mcpRole": "executor",
        "opencodeAgent": "Codex",
    },
    {
        "id": "gemini-3-flash",
        "name": "Gemini 3 Flash",
        "provider": "google",
        "type": "fallback-2",
        "mcpTool": "ask_gemini",
        "mcpRole": "explore",
        "opencodeAgent": "Flash",
    },
    {
        "id": "gpt-5.3",
        "name": "GPT-5.3",
        "provider": "openai",
        "type": "fallback-3",
        "mcpTool": "ask_codex",
        "mcpRole": "architect",
        "opencodeAgent": "Oracle",
    },
]

_UNSET: Any = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started_at: Any) -> int | None:
    """Milliseconds since an ISO timestamp; None when it cannot be parsed."""
    if not isinstance(started_at, str):
        return None
    try:
        started = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable fallbackStartedAt: {started_at!r}")
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return int((datetime.now(timezone.utc) - started).total_seconds() * 1000)


def default_fallback_state() -> dict[str, Any]:
    return {
        "currentModel": copy.deepcopy(FALLBACK_CHAIN[0]),
        "fallbackActive": False,
        "fallbackReason": None,
        "fallbackStartedAt": None,
        "history": [],
    }


def _normalize(data: Any) -> dict[str, Any]:
    state = default_fallback_state()
    if not isinstance(data, dict):
        return state
    current = data.get("currentModel")
    if isinstance(current, dict) and current.get("id"):
        state["currentModel"] = current
    state["fallbackReason"] = data.get("fallbackReason")
    state["fallbackStartedAt"] = data.get("fallbackStartedAt")
    if isinstance(data.get("history"), list):
        state["history"] = data["history"][-MAX_HISTORY:]
    state["fallbackActive"] = state["currentModel"].get("type") != "primary"
    if data.get("lastUpdated"):
        state["lastUpdated"] = data["lastUpdated"]
    return state


@dataclass
class ClaudeLimit:
    five_hour: float
    weekly: float

    @property
    def max(self) -> float:
        return max(self.five_hour, self.weekly)

    @property
    def is_limited(self) -> bool:
        return self.max >= 100

    @property
    def can_recover(self) -> bool:
        return self.max < RECOVERY_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": "anthropic",
            "fiveHour": self.five_hour,
            "weekly": self.weekly,
            "max": self.max,
            "isLimited": self.is_limited,
            "canRecover": self.can_recover,
        }


class FallbackOrchestrator:
    """Walks the fixed fallback chain; every transition is persisted and logged."""

    def __init__(
        self,
        paths: OmcmPaths | None = None,
        usage_reader: ClaudeUsageReader | None = None,
        project_dir: str | Path | None = None,
        config: OmcmConfig | None = None,
    ):
        self.paths = paths or OmcmPaths()
        self.usage_reader = usage_reader or ClaudeUsageReader(self.paths)
        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        self.config = config or OmcmConfig.load(self.paths)
        self.limit_trackers: dict[str, dict[str, Any]] = {}

    @property
    def state_path(self) -> Path:
        return self.paths.fallback_state

    @property
    def state(self) -> dict[str, Any]:
        """Current persisted state (defaults when missing or corrupt)."""
        return _normalize(read_json_file(self.state_path))

    def _transition(self, target: dict, action: str, reason: str, active_reason: str | None) -> dict:
        """Move to ``target`` under the state lock; returns the previous model."""
        with locked_update(self.state_path, default_fallback_state) as doc:
            state = _normalize(doc)
            previous = state["currentModel"]
            active = target.get("type") != "primary"
            state["currentModel"] = copy.deepcopy(target)
            state["fallbackActive"] = active
            state["fallbackReason"] = active_reason if active else None
            state["fallbackStartedAt"] = _now_iso() if active else None
            state["history"].append({
                "action": action,
                "from": previous.get("id"),
                "to": target["id"],
                "reason": reason,
                "timestamp": _now_iso(),
            })
            state["history"] = state["history"][-MAX_HISTORY:]
            state["lastUpdated"] = _now_iso()
            doc.clear()
            doc.update(state)
        return previous

    # --- limits ---

    def check_claude_limit(self, usage: ClaudeUsage | None = _UNSET) -> ClaudeLimit | None:
        if usage is _UNSET:
            try:
                usage = self.usage_reader.get_usage()
            except OSError as e:
                logger.debug(f"Claude usage unavailable: {e}")
                usage = None
        if usage is None:
            return None
        return ClaudeLimit(usage.five_hour_percent or 0, usage.weekly_percent or 0)

    def check_and_fallback(
        self,
        usage: ClaudeUsage | None = _UNSET,
        current_task: str | None = None,
        session_summary: str | None = None,
        todo_list: list | None = None,
    ) -> dict[str, Any]:
        """Apply one hysteresis step for the current Claude usage."""
        limit = self.check_claude_limit(usage)
        if limit is None:
            return {"action": "none", "reason": "limit-info-unavailable"}

        state = self.state
        if state["fallbackActive"] and limit.max < RECOVERY_THRESHOLD:
            return self.recover_to_primary(limit)
        if not state["fallbackActive"] and limit.max >= FALLBACK_THRESHOLD:
            return self.activate_fallback(
                limit,
                current_task=current_task,
                session_summary=session_summary,
                todo_list=todo_list,
            )
        return {"action": "none", "currentModel": state["currentModel"], "claudeLimit": limit.to_dict()}

    def activate_fallback(
        self,
        limit: ClaudeLimit,
        current_task: str | None = None,
        session_summary: str | None = None,
        todo_list: list | None = None,
    ) -> dict[str, Any]:
        model = self.get_next_available_model()
        if model is None:
            return {"action": "error", "reason": "no-fallback-available"}

        reason = f"Claude limit reached: 5h={limit.five_hour}%, weekly={limit.weekly}%"
        previous = self._transition(model, "fallback", reason, reason)
        logger.info(f"Fallback activated: {previous.get('id')} -> {model['id']} ({reason})")

        try:
            write_handoff_context(
                self.project_dir,
                from_model=previous,
                to_model=model,
                reason=reason,
                current_task=current_task,
                session_summary=session_summary,
                todo_list=todo_list,
                max_length=self.config.context.max_context_length,
            )
        except OSError as e:
            logger.warning(f"Handoff context creation failed: {e}")

        return {"action": "fallback", "from": previous, "to": model, "reason": reason, "claudeLimit": limit.to_dict()}

    def recover_to_primary(self, limit: ClaudeLimit) -> dict[str, Any]:
        primary = FALLBACK_CHAIN[0]
        history_reason = f"Claude limit recovered: 5h={limit.five_hour}%, weekly={limit.weekly}%"
        previous = self._transition(primary, "recover", history_reason, None)
        logger.info(f"Recovered to primary from {previous.get('id')}")
        return {
            "action": "recover",
            "from": previous,
            "to": copy.deepcopy(primary),
            "reason": f"Claude limit below {RECOVERY_THRESHOLD}%",
            "claudeLimit": limit.to_dict(),
        }

    def get_next_available_model(self) -> dict[str, Any] | None:
        """First non-primary chain entry whose provider is below 100% usage."""
        for model in FALLBACK_CHAIN[1:]:
            tracked = self.limit_trackers.get(model["provider"])
            if not tracked or (tracked.get("max") or 0) < 100:
                return copy.deepcopy(model)
        return None

    def manual_fallback(self, model_id: str) -> dict[str, Any]:
        """Switch to any chain model, bypassing thresholds."""
        target = next((m for m in FALLBACK_CHAIN if m["id"] == model_id), None)
        if target is None:
            return {"success": False, "reason": f"Model not found: {model_id}"}
        previous = self._transition(target, "manual", "Manual switch", "Manual fallback")
        logger.info(f"Manual switch: {previous.get('id')} -> {model_id}")
        return {"success": True, "from": previous, "to": copy.deepcopy(target)}

    # --- queries ---

    def get_current_orchestrator(self) -> dict[str, Any]:
        state = self.state
        duration = _elapsed_ms(state.get("fallbackStartedAt"))
        return {
            "model": state["currentModel"],
            "fallbackActive": state["fallbackActive"],
            "fallbackReason": state["fallbackReason"],
            "fallbackDuration": duration,
        }

    def execute_with_fallback(self, prompt: str) -> dict[str, Any]:
        """Execution descriptor: run on Claude, or which MCP tool to call."""
        current = self.state["currentModel"]
        if current.get("provider") == "anthropic":
            return {"useMcp": False, "model": current}
        return {
            "useMcp": True,
            "model": current,
            "mcpTool": current.get("mcpTool") or "ask_codex",
            "mcpRole": current.get("mcpRole") or "executor",
            "prompt": prompt,
        }

    def update_provider_limit(self, provider: str, limit_data: dict) -> None:
        self.limit_trackers[provider] = {**limit_data, "updatedAt": _now_iso()}

    def get_all_limits(self) -> dict[str, dict]:
        return dict(self.limit_trackers)

    def get_fallback_chain(self) -> list[dict[str, Any]]:
        current_id = self.state["currentModel"].get("id")
        return [
            {
                "id": model["id"],
                "name": model["name"],
                "provider": model["provider"],
                "type": model["type"],
                "checkLimit": model.get("checkLimit"),
                "mcpTool": model.get("mcpTool"),
                "mcpRole": model.get("mcpRole"),
                "order": index,
                "isCurrent": model["id"] == current_id,
            }
            for index, model in enumerate(FALLBACK_CHAIN)
        ]

    def get_history(self) -> list[dict]:
        return self.state["history"]

    def clear_history(self) -> None:
        with locked_update(self.state_path, default_fallback_state) as doc:
            state = _normalize(doc)
            state["history"] = []
            state["lastUpdated"] = _now_iso()
            doc.clear()
            doc.update(state)

    def reset(self) -> dict[str, bool]:
        self.limit_trackers.clear()
        with locked_update(self.state_path, default_fallback_state) as doc:
            doc.clear()
            doc.update(default_fallback_state())
            doc["lastUpdated"] = _now_iso()
        return {"reset": True}
