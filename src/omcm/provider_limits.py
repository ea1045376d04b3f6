"""Provider rate-limit tracking.

Claude: percentages pushed from the OAuth usage API (polled elsewhere)
OpenAI: parsed from ``x-ratelimit-*`` response headers
Gemini: counted locally (sliding one-minute window plus a daily counter)

All percentages written or derived here are clamped to [0, 100]; a stale
OpenAI header with ``remaining > limit`` would otherwise report a
negative usage.
"""

from __future__ import annotations

import copy
import logging
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from omcm.config import OmcmPaths
from omcm.errors import InvalidTierError
from omcm.storage import locked_update, read_json_file

logger = logging.getLogger(__name__)

GEMINI_TIER_LIMITS: dict[str, dict[str, int]] = {
    "free": {"rpm": 15, "tpm": 32000, "rpd": 1000},
    "tier1": {"rpm": 150, "tpm": 100000, "rpd": 10000},
    "tier2": {"rpm": 1000, "tpm": 500000, "rpd": 50000},
    "tier3": {"rpm": 4000, "tpm": 2000000, "rpd": 200000},
}

GEMINI_WINDOW_MS = 60_000


def clamp_percent(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_limits() -> dict[str, Any]:
    free = GEMINI_TIER_LIMITS["free"]
    return {
        "claude": {
            "fiveHour": {"used": 0, "limit": 100, "percent": 0},
            "weekly": {"used": 0, "limit": 100, "percent": 0},
            "monthly": {"used": 0, "limit": 100, "percent": 0},
            "lastUpdated": None,
        },
        "openai": {
            "requests": {"remaining": None, "limit": None, "reset": None, "percent": 0},
            "tokens": {"remaining": None, "limit": None, "reset": None, "percent": 0},
            "lastUpdated": None,
        },
        "gemini": {
            "tier": "free",
            "rpm": {"used": 0, "limit": free["rpm"]},
            "tpm": {"used": 0, "limit": free["tpm"]},
            "rpd": {"used": 0, "limit": free["rpd"]},
            "requestLog": [],
            "dailyRequests": 0,
            "dailyResetTime": None,
            "lastUpdated": None,
            "is429": False,
        },
        "lastUpdated": _now_iso(),
    }


def _normalize(data: Any) -> dict[str, Any]:
    """Fill in any section a partial or older document is missing."""
    base = default_limits()
    if not isinstance(data, dict):
        return base
    for provider in ("claude", "openai", "gemini"):
        section = data.get(provider)
        if not isinstance(section, dict):
            continue
        for key, value in section.items():
            if isinstance(base[provider].get(key), dict) and isinstance(value, dict):
                base[provider][key].update(value)
            else:
                base[provider][key] = value
    if data.get("lastUpdated"):
        base["lastUpdated"] = data["lastUpdated"]
    if not isinstance(base["gemini"].get("requestLog"), list):
        base["gemini"]["requestLog"] = []
    return base


def _header(headers: Any, key: str) -> str | None:
    if headers is None:
        return None
    getter = getattr(headers, "get", None)
    if getter is None:
        return None
    value = getter(key)
    return value if value not in ("", None) else None


def _to_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _window(log: list, now_ms: int) -> list:
    return [
        req for req in log
        if isinstance(req, dict) and now_ms - req.get("timestamp", 0) < GEMINI_WINDOW_MS
    ]


class ProviderLimitsStore:
    """Global ``provider-limits.json`` record with mtime-cached reads."""

    def __init__(self, paths: OmcmPaths | None = None, path: Path | None = None):
        self.path = path or (paths or OmcmPaths()).provider_limits
        self._cache: dict[str, Any] | None = None
        self._cache_mtime: float = 0.0

    # --- persistence ---

    def load(self) -> dict[str, Any]:
        """Current document; corrupt or missing files read as defaults."""
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return default_limits()
        if self._cache is not None and mtime <= self._cache_mtime:
            return copy.deepcopy(self._cache)
        data = read_json_file(self.path)
        if not isinstance(data, dict):
            return default_limits()
        limits = _normalize(data)
        self._cache = limits
        self._cache_mtime = mtime
        return copy.deepcopy(limits)

    def _update(self):
        return locked_update(self.path, default_limits)

    def _finish(self, doc: dict) -> dict[str, Any]:
        doc.update(_normalize(doc))
        doc["lastUpdated"] = _now_iso()
        self._cache = None
        return doc

    def limits_file_exists(self) -> bool:
        return self.path.exists()

    def reset_all_limits(self) -> dict[str, Any]:
        with self._update() as doc:
            doc.clear()
            doc.update(default_limits())
            self._finish(doc)
        return self.load()

    # --- Claude ---

    def update_claude_limits(
        self,
        five_hour_percent: float | None = None,
        weekly_percent: float | None = None,
        monthly_percent: float | None = None,
    ) -> dict[str, Any]:
        """Record Claude usage percentages; None leaves a window unchanged."""
        with self._update() as doc:
            self._finish(doc)
            claude = doc["claude"]
            if five_hour_percent is not None:
                claude["fiveHour"]["percent"] = clamp_percent(five_hour_percent)
            if weekly_percent is not None:
                claude["weekly"]["percent"] = clamp_percent(weekly_percent)
            if monthly_percent is not None:
                claude["monthly"]["percent"] = clamp_percent(monthly_percent)
            claude["lastUpdated"] = _now_iso()
            result = copy.deepcopy(claude)
        return result

    def get_claude_limits(self) -> dict[str, Any]:
        return self.load()["claude"]

    # --- OpenAI ---

    def update_openai_limits_from_headers(self, headers: Mapping[str, str] | Any) -> dict[str, Any]:
        """Parse ``x-ratelimit-*`` headers into request/token usage."""
        with self._update() as doc:
            self._finish(doc)
            openai = doc["openai"]
            for kind in ("requests", "tokens"):
                limit = _to_int(_header(headers, f"x-ratelimit-limit-{kind}"))
                if limit is None:
                    continue
                remaining = _to_int(_header(headers, f"x-ratelimit-remaining-{kind}"))
                if remaining is None:
                    remaining = limit
                percent = clamp_percent((limit - remaining) / limit * 100) if limit > 0 else 0
                openai[kind] = {
                    "limit": limit,
                    "remaining": remaining,
                    "reset": _header(headers, f"x-ratelimit-reset-{kind}"),
                    "percent": percent,
                }
            openai["lastUpdated"] = _now_iso()
            result = copy.deepcopy(openai)
        return result

    def set_openai_limits(
        self,
        request_percent: float | None = None,
        token_percent: float | None = None,
    ) -> dict[str, Any]:
        """Set OpenAI percentages directly (testing / debugging)."""
        with self._update() as doc:
            self._finish(doc)
            openai = doc["openai"]
            if isinstance(request_percent, (int, float)):
                openai["requests"]["percent"] = clamp_percent(request_percent)
            if isinstance(token_percent, (int, float)):
                openai["tokens"]["percent"] = clamp_percent(token_percent)
            openai["lastUpdated"] = _now_iso()
            result = copy.deepcopy(openai)
        return result

    def get_openai_limits(self) -> dict[str, Any]:
        return self.load()["openai"]

    # --- Gemini ---

    def set_gemini_tier(self, tier: str) -> dict[str, Any]:
        """Switch the Gemini quota tier.

        Raises:
            InvalidTierError: for anything other than free/tier1/tier2/tier3.
        """
        if tier not in GEMINI_TIER_LIMITS:
            raise InvalidTierError(
                f"Invalid tier: {tier}. Valid: {', '.join(GEMINI_TIER_LIMITS)}"
            )
        quotas = GEMINI_TIER_LIMITS[tier]
        with self._update() as doc:
            self._finish(doc)
            gemini = doc["gemini"]
            gemini["tier"] = tier
            gemini["rpm"]["limit"] = quotas["rpm"]
            gemini["tpm"]["limit"] = quotas["tpm"]
            gemini["rpd"]["limit"] = quotas["rpd"]
            result = copy.deepcopy(gemini)
        return result

    def record_gemini_request(self, token_count: int = 0, now_ms: int | None = None) -> dict[str, Any]:
        """Count one Gemini request against the RPM/TPM window and the daily quota."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        with self._update() as doc:
            self._finish(doc)
            gemini = doc["gemini"]
            log = _window(gemini["requestLog"], now_ms)
            log.append({"timestamp": now_ms, "tokens": token_count or 0})
            gemini["requestLog"] = log
            gemini["rpm"]["used"] = len(log)
            gemini["tpm"]["used"] = sum(req.get("tokens", 0) or 0 for req in log)

            today = date.fromtimestamp(now_ms / 1000).isoformat()
            if gemini.get("dailyResetTime") != today:
                gemini["dailyRequests"] = 0
                gemini["dailyResetTime"] = today
            gemini["dailyRequests"] = (gemini.get("dailyRequests") or 0) + 1
            gemini["rpd"]["used"] = gemini["dailyRequests"]
            gemini["is429"] = False
            gemini["lastUpdated"] = _now_iso()
            snapshot = copy.deepcopy(gemini)

        return {
            name: {
                "used": snapshot[name]["used"],
                "limit": snapshot[name]["limit"],
                "percent": clamp_percent(snapshot[name]["used"] / (snapshot[name]["limit"] or 1) * 100),
            }
            for name in ("rpm", "tpm", "rpd")
        }

    def record_gemini_429(self) -> dict[str, Any]:
        """Mark Gemini as rate limited (treats the RPM window as exhausted)."""
        with self._update() as doc:
            self._finish(doc)
            gemini = doc["gemini"]
            gemini["is429"] = True
            gemini["rpm"]["used"] = gemini["rpm"]["limit"]
            gemini["lastUpdated"] = _now_iso()
            result = copy.deepcopy(gemini)
        logger.warning("Gemini returned 429; marked as rate limited")
        return result

    def clear_gemini_429(self) -> dict[str, Any]:
        with self._update() as doc:
            self._finish(doc)
            gemini = doc["gemini"]
            gemini["is429"] = False
            gemini["lastUpdated"] = _now_iso()
            result = copy.deepcopy(gemini)
        return result

    def get_gemini_limits(self, now_ms: int | None = None) -> dict[str, Any]:
        """Gemini usage with the RPM/TPM window recomputed at read time."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        gemini = self.load()["gemini"]
        log = _window(gemini["requestLog"], now_ms)
        rpm_used = len(log)
        tpm_used = sum(req.get("tokens", 0) or 0 for req in log)
        rpd_used = gemini["rpd"].get("used", 0) or 0

        def window(used: int, limit: int) -> dict[str, Any]:
            return {
                "used": used,
                "limit": limit,
                "remaining": max(0, limit - used),
                "percent": clamp_percent(used / (limit or 1) * 100),
            }

        return {
            "tier": gemini["tier"],
            "rpm": window(rpm_used, gemini["rpm"]["limit"]),
            "tpm": window(tpm_used, gemini["tpm"]["limit"]),
            "rpd": window(rpd_used, gemini["rpd"]["limit"]),
            "is429": bool(gemini.get("is429")),
            "lastUpdated": gemini.get("lastUpdated"),
        }

    def is_gemini_rate_limited(self) -> bool:
        gemini = self.get_gemini_limits()
        return gemini["is429"] or gemini["rpm"]["remaining"] <= 0 or gemini["rpd"]["remaining"] <= 0

    # --- combined ---

    def get_all_provider_limits(self) -> dict[str, Any]:
        return {
            "claude": self.get_claude_limits(),
            "openai": self.get_openai_limits(),
            "gemini": self.get_gemini_limits(),
        }

    def get_limits_for_hud(self) -> dict[str, Any]:
        """Compact per-provider summary for status displays."""
        limits = self.get_all_provider_limits()
        claude = limits["claude"]
        five_hour = claude["fiveHour"].get("percent") or 0
        weekly = claude["weekly"].get("percent") or 0
        monthly = claude["monthly"].get("percent") or 0
        claude_max = max(five_hour, weekly, monthly)

        requests = limits["openai"]["requests"]
        gemini = limits["gemini"]
        return {
            "claude": {
                "percent": claude_max,
                "fiveHour": five_hour,
                "weekly": weekly,
                "monthly": monthly,
                "isLimited": claude_max >= 100,
            },
            "openai": {
                "percent": requests.get("percent") or 0,
                "remaining": requests.get("remaining"),
                "isLimited": requests.get("remaining") == 0,
            },
            "gemini": {
                "percent": gemini["rpm"]["percent"],
                "remaining": gemini["rpm"]["remaining"],
                "isLimited": gemini["is429"] or gemini["rpm"]["remaining"] <= 0,
                "isEstimated": True,
            },
        }
