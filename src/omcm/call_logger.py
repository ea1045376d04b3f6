"""Audit trails: per-session external call log and the global routing log."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from omcm.config import OmcmPaths
from omcm.storage import append_jsonl, read_jsonl

logger = logging.getLogger(__name__)

CALLS_FILE = "opencode-calls.jsonl"

OPENAI_ALIASES = ("openai", "gpt")
GEMINI_ALIASES = ("gemini", "google")
ANTHROPIC_ALIASES = ("anthropic", "claude")


def _parse_ms(timestamp: Any) -> float | None:
    try:
        return datetime.fromisoformat(str(timestamp).replace("Z", "+00:00")).timestamp() * 1000
    except ValueError:
        return None


class CallLogger:
    """Append-only JSONL sinks; write failures are logged and ignored."""

    def __init__(self, paths: OmcmPaths | None = None):
        self.paths = paths or OmcmPaths()

    def calls_file(self, session_id: str) -> Path:
        return self.paths.sessions_dir / session_id / CALLS_FILE

    def log_call(self, session_id: str | None, call: dict) -> dict | None:
        """Record one external CLI call for ``session_id`` (no-op without a session)."""
        if not session_id:
            return None
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "provider": call.get("provider") or "unknown",
            "model": call.get("model") or "",
            "agent": call.get("agent") or "",
            "inputTokens": call.get("inputTokens") or call.get("estimatedInputTokens") or 0,
            "outputTokens": call.get("outputTokens") or call.get("estimatedOutputTokens") or 0,
            "reasoningTokens": call.get("reasoningTokens") or 0,
            "cost": call.get("cost") or 0,
            "actualModelID": call.get("actualModelID") or "",
            "actualProviderID": call.get("actualProviderID") or "",
            "estimatedInputTokens": call.get("estimatedInputTokens") or 0,
            "estimatedOutputTokens": call.get("estimatedOutputTokens") or 0,
            "duration": call.get("duration") or 0,
            "success": call.get("success") is not False,
            "source": call.get("source") or "fusion-router",
            "serverPort": call.get("serverPort") or 0,
        }
        append_jsonl(self.calls_file(session_id), entry)
        return entry

    def get_session_calls(self, session_id: str | None, since: float | None = None) -> dict[str, Any]:
        """Calls for a session, optionally only those at or after ``since`` (epoch ms)."""
        result: dict[str, Any] = {"openai": 0, "gemini": 0, "anthropic": 0, "total": 0, "calls": []}
        if not session_id:
            return result
        for entry in read_jsonl(self.calls_file(session_id)):
            if since:
                ts = _parse_ms(entry.get("timestamp"))
                if ts is not None and ts < since:
                    continue
            result["calls"].append(entry)
            result["total"] += 1
            provider = entry.get("provider") or ""
            if provider in OPENAI_ALIASES:
                result["openai"] += 1
            elif provider in GEMINI_ALIASES:
                result["gemini"] += 1
            elif provider in ANTHROPIC_ALIASES:
                result["anthropic"] += 1
        return result

    def aggregate_session_tokens(self, session_id: str | None) -> dict[str, dict] | None:
        """Per-provider token and cost totals; None when the session has no calls."""
        if not session_id:
            return None
        calls = self.get_session_calls(session_id)
        if calls["total"] == 0:
            return None

        totals = {
            name: {"input": 0, "output": 0, "reasoning": 0, "cost": 0, "count": 0}
            for name in ("openai", "gemini")
        }
        for call in calls["calls"]:
            provider = call.get("provider") or ""
            if provider in OPENAI_ALIASES:
                bucket = totals["openai"]
            elif provider in GEMINI_ALIASES:
                bucket = totals["gemini"]
            else:
                continue
            bucket["input"] += call.get("inputTokens") or call.get("estimatedInputTokens") or 0
            bucket["output"] += call.get("outputTokens") or call.get("estimatedOutputTokens") or 0
            bucket["reasoning"] += call.get("reasoningTokens") or 0
            bucket["cost"] += call.get("cost") or 0
            bucket["count"] += 1
        return totals

    def log_routing(self, entry: dict) -> dict:
        """Append one routing decision to ``routing-log.jsonl``."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "toolName": entry.get("toolName"),
            "subagentType": entry.get("subagentType"),
            "decision": entry.get("decision"),
            "reason": entry.get("reason"),
            "target": entry.get("target"),
        }
        append_jsonl(self.paths.routing_log, record)
        return record

    def read_routing_log(self, limit: int | None = None) -> list[dict]:
        entries = read_jsonl(self.paths.routing_log)
        return entries[-limit:] if limit else entries
