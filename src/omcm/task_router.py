"""Claude vs. MCP work distribution for batches of tasks."""

from __future__ import annotations

import logging
from typing import Any

from omcm.config import OmcmConfig, OmcmPaths
from omcm.usage import ClaudeUsage, ClaudeUsageReader

logger = logging.getLogger(__name__)

# 'claude': needs Claude's accuracy; 'mcp': cheap to delegate; 'any': decided by usage
TASK_ROUTING_PREFERENCES: dict[str, str] = {
    "architect": "claude",
    "debugger": "claude",
    "critic": "claude",
    "planner": "claude",
    "deep-executor": "claude",
    "quality-reviewer": "claude",
    "product-manager": "claude",
    "explore": "mcp",
    "dependency-expert": "mcp",
    "researcher": "mcp",
    "writer": "mcp",
    "document-specialist": "mcp",
    "style-reviewer": "mcp",
    "ux-researcher": "mcp",
    "executor": "any",
    "designer": "any",
    "build-fixer": "any",
    "test-engineer": "any",
    "scientist": "any",
    "verifier": "any",
    "code-reviewer": "any",
    "security-reviewer": "any",
}

_UNSET: Any = object()


def mcp_ratio_for_usage(percent: float) -> float:
    """Target share of 'any' tasks sent to MCP at a given Claude usage."""
    if percent >= 90:
        return 0.8
    if percent >= 70:
        return 0.5
    if percent >= 50:
        return 0.3
    return 0.1


class TaskRouter:
    """Routes tasks by type preference, falling back to current usage."""

    def __init__(
        self,
        paths: OmcmPaths | None = None,
        config: OmcmConfig | None = None,
        usage_reader: ClaudeUsageReader | None = None,
        mcp_available: bool = True,
    ):
        self.paths = paths or OmcmPaths()
        self.config = config or OmcmConfig.load(self.paths)
        self.usage_reader = usage_reader or ClaudeUsageReader(self.paths)
        self.mcp_available = mcp_available

    def preference(self, task_type: str) -> str:
        routing = self.config.routing
        if task_type in routing.prefer_claude:
            return "claude"
        if task_type in routing.prefer_mcp:
            return "mcp"
        return TASK_ROUTING_PREFERENCES.get(task_type, "any")

    def route_task(self, task_type: str, usage: ClaudeUsage | None = _UNSET) -> dict[str, str]:
        """``{target: 'claude'|'mcp', reason, agentRole}`` for one task type."""
        if usage is _UNSET:
            usage = self.usage_reader.get_usage()
        preference = self.preference(task_type)

        if preference == "claude":
            return {"target": "claude", "reason": f"{task_type} needs high accuracy", "agentRole": task_type}

        if preference == "mcp":
            if not self.mcp_available:
                return {"target": "claude", "reason": "MCP unavailable, using Claude", "agentRole": task_type}
            return {"target": "mcp", "reason": f"{task_type} delegated to MCP for cost", "agentRole": task_type}

        threshold = self.config.routing.usage_threshold
        if usage is not None and usage.max_percent >= threshold:
            if not self.mcp_available:
                return {
                    "target": "claude",
                    "reason": f"High usage ({usage.max_percent}%) but MCP unavailable",
                    "agentRole": task_type,
                }
            return {
                "target": "mcp",
                "reason": f"Usage {usage.max_percent}% - offloading to MCP",
                "agentRole": task_type,
            }

        current = usage.five_hour_percent if usage else 0
        return {"target": "claude", "reason": f"Usage normal ({current}%) - using Claude", "agentRole": task_type}

    def plan_parallel_distribution(
        self,
        tasks: list[dict[str, Any]],
        usage: ClaudeUsage | None = _UNSET,
    ) -> dict[str, list[dict[str, Any]]]:
        """Split ``[{type, prompt, priority}]`` into Claude and MCP batches.

        Fixed preferences are honored; 'any' tasks fill MCP up to a
        usage-dependent ratio, highest priority first.
        """
        if usage is _UNSET:
            usage = self.usage_reader.get_usage()
        if not self.mcp_available:
            return {"claudeTasks": list(tasks), "mcpTasks": []}

        ratio = mcp_ratio_for_usage(usage.max_percent if usage else 0)
        claude_tasks: list[dict] = []
        mcp_tasks: list[dict] = []

        for task in sorted(tasks, key=lambda t: -(t.get("priority") or 0)):
            task_type = task.get("type") or ""
            preference = self.preference(task_type)
            if preference != "any":
                routing = self.route_task(task_type, usage=usage)
                bucket = mcp_tasks if routing["target"] == "mcp" else claude_tasks
                bucket.append({**task, "agentRole": routing["agentRole"], "reason": routing["reason"]})
                continue

            current_ratio = len(mcp_tasks) / (len(mcp_tasks) + len(claude_tasks) + 1)
            if current_ratio < ratio:
                mcp_tasks.append({
                    **task,
                    "agentRole": task_type,
                    "reason": f"Load balancing (target ratio: {round(ratio * 100)}%)",
                })
            else:
                claude_tasks.append({**task, "reason": "Default Claude handling"})

        return {"claudeTasks": claude_tasks, "mcpTasks": mcp_tasks}


def get_routing_summary(distribution: dict[str, list]) -> dict[str, int]:
    claude = len(distribution.get("claudeTasks") or [])
    mcp = len(distribution.get("mcpTasks") or [])
    total = claude + mcp
    return {
        "total": total,
        "claude": claude,
        "mcp": mcp,
        "claudePercent": round(claude / total * 100) if total else 0,
        "mcpPercent": round(mcp / total * 100) if total else 0,
    }
