"""Tests for omcm.task_router."""

import pytest

from omcm.config import OmcmConfig
from omcm.task_router import TaskRouter, get_routing_summary, mcp_ratio_for_usage
from omcm.usage import ClaudeUsage


class TestTaskRouter:
    @pytest.fixture
    def router(self, paths):
        return TaskRouter(paths, config=OmcmConfig())

    def test_fixed_preferences(self, router):
        assert router.route_task("architect", usage=None)["target"] == "claude"
        assert router.route_task("explore", usage=None)["target"] == "mcp"

    def test_any_follows_usage(self, router):
        assert router.route_task("executor", usage=ClaudeUsage(20, 10))["target"] == "claude"
        high = router.route_task("executor", usage=ClaudeUsage(75, 10))
        assert high["target"] == "mcp"
        assert "75" in high["reason"]

    def test_mcp_unavailable(self, paths):
        router = TaskRouter(paths, config=OmcmConfig(), mcp_available=False)
        assert router.route_task("explore", usage=None)["target"] == "claude"
        plan = router.plan_parallel_distribution([{"type": "explore"}], usage=None)
        assert plan["mcpTasks"] == []

    def test_config_preferences_override(self, paths):
        config = OmcmConfig.from_dict({"routing": {"preferMcp": ["architect"], "preferClaude": []}})
        router = TaskRouter(paths, config=config)
        assert router.route_task("architect", usage=None)["target"] == "mcp"

    @pytest.mark.parametrize("percent,ratio", [(95, 0.8), (70, 0.5), (55, 0.3), (10, 0.1)])
    def test_ratio(self, percent, ratio):
        assert mcp_ratio_for_usage(percent) == ratio

    def test_parallel_distribution(self, router):
        tasks = [
            {"type": "architect", "priority": 5},
            {"type": "explore", "priority": 4},
            {"type": "executor", "priority": 3},
            {"type": "executor", "priority": 2},
            {"type": "executor", "priority": 1},
        ]
        plan = router.plan_parallel_distribution(tasks, usage=ClaudeUsage(95, 0))
        summary = get_routing_summary(plan)
        assert summary["total"] == 5
        assert [t["type"] for t in plan["claudeTasks"]][0] == "architect"
        assert summary["mcp"] >= 2
