"""Tests for omcm.usage."""

import json

from omcm.usage import ClaudeUsageReader, parse_usage_response


class TestUsage:
    def test_parse_rate_limits(self):
        usage = parse_usage_response({"rateLimits": {"fiveHour": {"used": 45, "total": 50}}})
        assert usage.five_hour_percent == 90
        assert usage.weekly_percent == 0

    def test_parse_direct_percents(self):
        usage = parse_usage_response({"fiveHourPercent": 12, "weeklyPercent": 70})
        assert usage.max_percent == 70

    def test_parse_garbage(self):
        assert parse_usage_response({"hello": 1}) is None

    def test_reader_falls_back_to_hud_cache(self, paths):
        reader = ClaudeUsageReader(paths)
        assert reader.get_usage() is None
        assert reader.get_usage_level() == "unknown"
        paths.hud_usage_cache.parent.mkdir(parents=True)
        paths.hud_usage_cache.write_text(json.dumps({"data": {"fiveHourPercent": 75, "weeklyPercent": 20}}))
        assert reader.get_usage().source == "hud-cache"
        assert reader.get_usage_level() == "warning"
        assert reader.check_threshold(70) == {"exceeded": True, "type": "fiveHour", "percent": 75}

