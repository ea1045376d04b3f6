"""Claude usage percentages from local caches (no network)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from omcm.config import OmcmPaths
from omcm.storage import read_json_file

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 90
WARNING_THRESHOLD = 70


@dataclass
class ClaudeUsage:
    five_hour_percent: float = 0
    weekly_percent: float = 0
    source: str = "unknown"

    @property
    def max_percent(self) -> float:
        return max(self.five_hour_percent, self.weekly_percent)


def _num(value: Any) -> float:
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def parse_usage_response(data: Any) -> ClaudeUsage | None:
    """Parse ``usage_response.json``: ``rateLimits`` used/total pairs or direct percents."""
    if not isinstance(data, dict):
        return None

    limits = data.get("rateLimits")
    if isinstance(limits, dict):
        percents = []
        for window in ("fiveHour", "weekly"):
            entry = limits.get(window)
            if isinstance(entry, dict):
                used = _num(entry.get("used"))
                total = _num(entry.get("total")) or 1
                percents.append(round(used / total * 100))
            else:
                percents.append(0)
        return ClaudeUsage(percents[0], percents[1], source="usage-response")

    if isinstance(data.get("fiveHourPercent"), (int, float)) or isinstance(data.get("weeklyPercent"), (int, float)):
        return ClaudeUsage(
            _num(data.get("fiveHourPercent")),
            _num(data.get("weeklyPercent")),
            source="usage-response",
        )
    return None


class ClaudeUsageReader:
    """Layered lookup: statsig usage response, then the HUD cache, else None."""

    def __init__(self, paths: OmcmPaths | None = None):
        self.paths = paths or OmcmPaths()

    def get_usage(self) -> ClaudeUsage | None:
        if self.paths.usage_response.exists():
            return parse_usage_response(read_json_file(self.paths.usage_response))
        return self.get_usage_from_hud_cache()

    def get_usage_from_hud_cache(self) -> ClaudeUsage | None:
        cache = read_json_file(self.paths.hud_usage_cache)
        if not isinstance(cache, dict) or not isinstance(cache.get("data"), dict):
            return None
        data = cache["data"]
        return ClaudeUsage(
            _num(data.get("fiveHourPercent")),
            _num(data.get("weeklyPercent")),
            source="hud-cache",
        )

    def check_threshold(self, threshold: float = DEFAULT_THRESHOLD) -> dict[str, Any]:
        """Which window (if any) is at or above ``threshold``."""
        usage = self.get_usage()
        if usage is None:
            return {"exceeded": False, "type": None, "percent": 0}
        if usage.five_hour_percent >= threshold:
            return {"exceeded": True, "type": "fiveHour", "percent": usage.five_hour_percent}
        if usage.weekly_percent >= threshold:
            return {"exceeded": True, "type": "weekly", "percent": usage.weekly_percent}
        return {"exceeded": False, "type": None, "percent": usage.max_percent}

    def get_usage_level(self) -> str:
        """critical / warning / normal, or unknown without data."""
        usage = self.get_usage()
        if usage is None:
            return "unknown"
        if usage.max_percent >= DEFAULT_THRESHOLD:
            return "critical"
        if usage.max_percent >= WARNING_THRESHOLD:
            return "warning"
        return "normal"
