"""Fusion state: how many Task calls ran on Claude vs. an external CLI.

Each session keeps ``sessions/<id>/fusion-state.json``; the global
``fusion-state.json`` is a running aggregate updated on every event
regardless of session. Both files share one snapshot format.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from omcm.config import OmcmPaths
from omcm.session import SessionContext
from omcm.storage import locked_update, read_json_file

logger = logging.getLogger(__name__)

ESTIMATED_TOKENS_PER_ROUTED_TASK = 1000
TOKEN_PROVIDERS = ("claude", "openai", "gemini", "kimi")


def _zero_tokens() -> dict[str, dict[str, int]]:
    return {name: {"input": 0, "output": 0} for name in TOKEN_PROVIDERS}


def _zero_providers() -> dict[str, int]:
    return {"gemini": 0, "openai": 0, "anthropic": 0, "kimi": 0}


def _rate(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


@dataclass
class FusionState:
    """Routing counters and token tallies for one session (or globally)."""

    enabled: bool = True
    mode: str = "balanced"
    total_tasks: int = 0
    routed_to_opencode: int = 0
    estimated_saved_tokens: int = 0
    actual_tokens: dict[str, dict[str, int]] = field(default_factory=_zero_tokens)
    savings_rate: int = 0
    by_provider: dict[str, int] = field(default_factory=_zero_providers)
    last_updated: str | None = None

    @property
    def routing_rate(self) -> int:
        return _rate(self.routed_to_opencode, self.total_tasks)

    @classmethod
    def from_dict(cls, data: dict | None) -> "FusionState":
        """Tolerant load: missing fields keep defaults, bad counters reset to 0."""
        state = cls()
        if not isinstance(data, dict):
            return state

        def count(key: str) -> int:
            value = data.get(key)
            return int(value) if isinstance(value, (int, float)) and value >= 0 else 0

        if isinstance(data.get("enabled"), bool):
            state.enabled = data["enabled"]
        if isinstance(data.get("mode"), str):
            state.mode = data["mode"]
        state.total_tasks = count("totalTasks")
        state.routed_to_opencode = min(count("routedToOpenCode"), state.total_tasks)
        state.estimated_saved_tokens = count("estimatedSavedTokens")
        state.savings_rate = count("savingsRate")
        state.last_updated = data.get("lastUpdated")

        tokens = data.get("actualTokens")
        if isinstance(tokens, dict):
            for name, pair in tokens.items():
                if isinstance(pair, dict):
                    state.actual_tokens[name] = {
                        "input": int(pair.get("input") or 0),
                        "output": int(pair.get("output") or 0),
                    }
        providers = data.get("byProvider")
        if isinstance(providers, dict):
            for name, value in providers.items():
                if isinstance(value, (int, float)):
                    state.by_provider[name] = int(value)
        return state

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mode": self.mode,
            "totalTasks": self.total_tasks,
            "routedToOpenCode": self.routed_to_opencode,
            "routingRate": self.routing_rate,
            "estimatedSavedTokens": self.estimated_saved_tokens,
            "actualTokens": self.actual_tokens,
            "savingsRate": self.savings_rate,
            "byProvider": self.by_provider,
            "lastUpdated": self.last_updated,
        }

    # --- mutations ---

    def record(self, routed: bool, provider: str | None, saved_tokens: int = 0) -> None:
        self.total_tasks += 1
        if routed:
            self.routed_to_opencode += 1
            self.estimated_saved_tokens += saved_tokens or 0
            if provider in ("gemini", "google"):
                self.by_provider["gemini"] += 1
            elif provider in ("openai", "gpt"):
                self.by_provider["openai"] += 1
            elif provider == "kimi":
                self.by_provider["kimi"] += 1
        else:
            self.by_provider["anthropic"] += 1

    def replace_tokens(self, snapshot: dict[str, dict[str, int] | None]) -> None:
        """Replace token tallies with the caller's current totals and recompute savings."""
        for name, pair in snapshot.items():
            if pair is None:
                continue
            self.actual_tokens[name] = {
                "input": int(pair.get("input") or 0),
                "output": int(pair.get("output") or 0),
            }
        external = sum(
            pair["input"] + pair["output"]
            for name, pair in self.actual_tokens.items()
            if name != "claude"
        )
        claude = self.actual_tokens["claude"]
        total = external + claude["input"] + claude["output"]
        self.estimated_saved_tokens = external
        self.savings_rate = _rate(external, total)


def provider_for_decision(decision: dict) -> str | None:
    """Which provider a routed decision lands on (None when unknown)."""
    if not decision.get("route"):
        return "anthropic"
    target = decision.get("targetModel") or {}
    model = str(target.get("id") or "") if isinstance(target, dict) else ""
    agent = decision.get("opencodeAgent") or ""
    if "gemini" in model or agent == "Flash":
        return "gemini"
    if "gpt" in model or "codex" in model:
        return "openai"
    if "kimi" in model:
        return "kimi"
    return None


class FusionStateStore:
    """Reads and mutates fusion state for a session plus the global aggregate."""

    def __init__(self, context: SessionContext | None = None, paths: OmcmPaths | None = None):
        if context is None:
            context = SessionContext(session_id=None, paths=paths or OmcmPaths())
        self.context = context
        self.paths = context.paths

    @property
    def global_path(self) -> Path:
        return self.paths.fusion_state

    @property
    def session_path(self) -> Path | None:
        session_dir = self.context.session_dir
        return session_dir / "fusion-state.json" if session_dir else None

    def _targets(self) -> list[Path]:
        targets = [self.global_path]
        if self.session_path is not None:
            targets.insert(0, self.session_path)
        return targets

    def read(self) -> FusionState:
        """Session state when a session is active, else the global aggregate."""
        return FusionState.from_dict(read_json_file(self._targets()[0]))

    def read_raw(self) -> dict | None:
        """The stored document, or None when the file is absent or corrupt."""
        data = read_json_file(self._targets()[0])
        return data if isinstance(data, dict) else None

    def read_global(self) -> FusionState:
        return FusionState.from_dict(read_json_file(self.global_path))

    def _mutate(self, fn: Callable[[FusionState], None]) -> FusionState:
        result: FusionState | None = None
        for path in self._targets():
            with locked_update(path, dict) as doc:
                state = FusionState.from_dict(doc)
                fn(state)
                state.last_updated = datetime.now(timezone.utc).isoformat()
                doc.clear()
                doc.update(state.to_dict())
            if result is None:
                result = state
        return result

    def record_routing(self, target: str, provider: str | None = None, saved_tokens: int = 0) -> FusionState:
        """Count one task; ``target == "opencode"`` marks it as routed."""
        return self._mutate(lambda s: s.record(target == "opencode", provider, saved_tokens))

    def record_decision(self, decision: dict) -> FusionState:
        """Count a routing decision, crediting an estimated 1000 saved tokens when routed."""
        routed = bool(decision.get("route"))
        provider = provider_for_decision(decision)
        saved = ESTIMATED_TOKENS_PER_ROUTED_TASK if routed else 0
        return self._mutate(lambda s: s.record(routed, provider, saved))

    def set_mode(self, mode: str) -> FusionState:
        def apply(state: FusionState) -> None:
            state.mode = mode
        return self._mutate(apply)

    def set_enabled(self, enabled: bool) -> FusionState:
        def apply(state: FusionState) -> None:
            state.enabled = bool(enabled)
        return self._mutate(apply)

    def update_savings_from_tokens(
        self,
        claude: dict | None = None,
        openai: dict | None = None,
        gemini: dict | None = None,
        kimi: dict | None = None,
    ) -> FusionState:
        """Replace the token snapshot; None leaves a provider's tallies as they were."""
        snapshot = {"claude": claude, "openai": openai, "gemini": gemini, "kimi": kimi}
        return self._mutate(lambda s: s.replace_tokens(snapshot))

    def reset_fusion_stats(self) -> FusionState:
        """Reset to a fresh default state, including enabled flag and mode."""
        def apply(state: FusionState) -> None:
            for key, value in asdict(FusionState()).items():
                setattr(state, key, value)
        return self._mutate(apply)

    def session_claude_input_tokens(self) -> int:
        """Claude input tokens reported for the current session (global when none)."""
        return self.read().actual_tokens.get("claude", {}).get("input", 0)
