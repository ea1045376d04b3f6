"""Tests for omcm.fusion_router: the routing decision engine."""

import pytest

from omcm.fusion_router import (
    RoutingDecision,
    RoutingDecisionEngine,
    apply_gemini_fallback,
    get_routing_level,
)
from omcm.routing_rules import RoutingRule, RoutingRulesEngine


def _limits(five_hour=0, weekly=0):
    return {"claude": {"fiveHour": {"percent": five_hour}, "weekly": {"percent": weekly}}}


FALLBACK_ACTIVE = {
    "fallbackActive": True,
    "currentModel": {"id": "gemini-3-flash", "name": "Gemini 3 Flash", "opencodeAgent": "Flash"},
}


@pytest.fixture
def engine(global_session):
    return RoutingDecisionEngine(session=global_session)


def task(role, prompt=""):
    return {"subagent_type": f"oh-my-claudecode:{role}", "prompt": prompt}


class TestEndToEnd:
    def test_fusion_default_routes_architect(self, engine):
        decision = engine.should_route(
            task("architect"), config={"fusionDefault": True}, fusion=None, fallback=None, limits=None
        )
        assert decision.route is True
        assert decision.reason == "fusion-default-architect"
        assert decision.opencode_agent == "Oracle"

    def test_planner_never_routed_by_fusion_default(self, engine):
        decision = engine.should_route(
            task("planner"), config={"fusionDefault": True}, fusion=None, fallback=None, limits=None
        )
        assert decision.route is False

    def test_claude_limit_with_default_state(self, engine):
        decision = engine.should_route(task("executor"), limits=_limits(five_hour=95))
        assert decision.route is True
        assert decision.reason == "claude-limit-95%"

    def test_save_tokens_keeps_execution_roles(self, engine):
        decision = engine.should_route(task("executor"), fusion={"enabled": True, "mode": "save-tokens"})
        assert decision.route is False
        assert decision.reason == "no-routing-needed"

    def test_save_tokens_routes_analysis_roles(self, engine):
        decision = engine.should_route(task("explore"), fusion={"enabled": True, "mode": "save-tokens"})
        assert decision.reason == "token-saving-agent-explore"
        assert decision.target_model["id"] == "gemini-3-flash"


class TestBranchOrder:
    def test_delegation_defers(self, engine):
        decision = engine.should_route(task("explore"), delegation_active=True, limits=_limits(99))
        assert decision.to_dict() == {"route": False, "reason": "delegation-routing-deferred"}

    def test_fusion_mode_always_ignores_delegation(self, engine):
        decision = engine.should_route(
            task("explore"), delegation_active=True, config={"fusionMode": "always"}, limits=_limits(99)
        )
        assert decision.route is True

    def test_fusion_disabled(self, engine):
        decision = engine.should_route(task("explore"), fusion={"enabled": False}, limits=_limits(99))
        assert decision.reason == "fusion-disabled"

    def test_fusion_default_overrides_disabled(self, engine):
        decision = engine.should_route(
            task("explore"), fusion={"enabled": False}, config={"fusionDefault": True}
        )
        assert decision.reason == "fusion-default-explore"

    def test_fallback_beats_claude_limit(self, engine):
        decision = engine.should_route(task("architect"), fallback=FALLBACK_ACTIVE, limits=_limits(99))
        assert decision.reason == "fallback-active"
        assert decision.opencode_agent == "Flash"
        assert decision.target_model == {"id": "gemini-3-flash", "name": "Gemini 3 Flash"}

    def test_weekly_limit_counts(self, engine):
        decision = engine.should_route(task("executor"), limits=_limits(10, 92.5))
        assert decision.reason == "claude-limit-92.5%"

    def test_large_task_by_length(self, engine):
        decision = engine.should_route(task("executor", "x" * 501))
        assert decision.reason == "large-task-executor"

    def test_large_task_by_keyword(self, engine):
        decision = engine.should_route(task("executor", "Refactor the auth module"))
        assert decision.reason == "large-task-executor"

    def test_large_task_skips_planner(self, engine):
        assert engine.should_route(task("planner", "x" * 600)).route is False

    def test_large_task_ignores_auto_delegate(self, engine):
        decision = engine.should_route(
            task("executor", "x" * 600), config={"routing": {"autoDelegate": False}}
        )
        assert decision.reason == "large-task-executor"

    def test_session_level_ignores_routing_enabled(self, engine):
        decision = engine.should_route(
            task("explore"), session_tokens=6_000_000, config={"routing": {"enabled": False}}
        )
        assert decision.reason == "session-token-L2-explore"

    def test_missing_subagent_type(self, engine):
        decision = engine.should_route({}, limits=_limits(95))
        assert decision.route is True
        assert decision.opencode_agent == "Codex"
        assert engine.should_route({}).reason == "no-routing-needed"


class TestSessionLevels:
    @pytest.mark.parametrize("tokens,level", [
        (0, 1), (4_999_999, 1), (5_000_000, 2), (20_000_000, 3), (40_000_000, 4),
    ])
    def test_level_boundaries(self, tokens, level):
        assert get_routing_level(tokens).level == level

    def test_level2_routes_analysis(self, engine):
        decision = engine.should_route(task("explore"), session_tokens=6_000_000)
        assert decision.reason == "session-token-L2-explore"
        assert decision.routing_level == "L2"

    def test_level2_keeps_execution(self, engine):
        assert engine.should_route(task("executor"), session_tokens=6_000_000).route is False

    def test_level3_routes_execution(self, engine):
        decision = engine.should_route(task("executor"), session_tokens=25_000_000)
        assert decision.reason == "session-token-L3-executor"

    def test_level4_never_routes_planner(self, engine):
        assert engine.should_route(task("planner"), session_tokens=50_000_000).route is False

    def test_tokens_read_from_fusion_state(self, engine):
        fusion = {"enabled": True, "actualTokens": {"claude": {"input": 6_000_000, "output": 0}}}
        assert engine.should_route(task("explore"), fusion=fusion).reason == "session-token-L2-explore"


class TestIdempotence:
    def test_same_inputs_same_decision(self, engine):
        kwargs = {"limits": _limits(91), "fusion": {"enabled": True}}
        first = engine.should_route(task("architect"), **kwargs)
        second = engine.should_route(task("architect"), **kwargs)
        assert first.key() == second.key()


class TestV2:
    def test_no_agent_type(self, engine):
        assert engine.should_route_v2({"prompt": "hi"}).reason == "no-agent-type"

    def test_cache_hit_matches_fresh_decision(self, engine):
        first = engine.should_route_v2(task("explore"), limits=_limits(95))
        second = engine.should_route_v2(task("explore"), limits=_limits(95))
        assert first.from_cache is False
        assert second.from_cache is True
        assert first.key() == second.key()
        uncached = engine.should_route_v2(task("explore"), use_cache=False, limits=_limits(95))
        assert uncached.key() == first.key()

    def test_cache_separates_weekly_threshold(self, engine):
        below = engine.should_route_v2(task("executor"), limits=_limits(0, 85))
        above = engine.should_route_v2(task("executor"), limits=_limits(0, 87))
        assert below.reason == "no-routing-needed"
        assert above.from_cache is False
        assert above.reason == "rule-weekly-limit-opencode"

    def test_cache_separates_claude_limit_percent(self, engine):
        engine.should_route_v2(task("explore"), limits=_limits(90))
        cached = engine.should_route_v2(task("explore"), limits=_limits(95))
        fresh = engine.should_route_v2(task("explore"), use_cache=False, limits=_limits(95))
        assert cached.key() == fresh.key()
        assert cached.reason == "rule-high-usage-opencode"

    def test_cache_separates_session_threshold(self, engine):
        engine.should_route_v2(task("explore"), session_tokens=4_999_999, context={"usage": {"sessionLevel": 2}})
        decision = engine.should_route_v2(task("explore"), session_tokens=5_000_000)
        assert decision.reason == "session-token-L2-explore"

    def test_high_usage_rule(self, engine):
        decision = engine.should_route_v2(task("executor"), use_cache=False, limits=_limits(95))
        assert decision.route is True
        assert decision.reason == "rule-high-usage-opencode"

    def test_security_reviewer_stays_on_claude(self, engine):
        decision = engine.should_route_v2(task("security-reviewer"), use_cache=False)
        assert decision.route is False
        assert decision.reason == "rule-security-claude"

    def test_prefer_claude_yields_to_fallback(self, engine):
        decision = engine.should_route_v2(
            task("security-reviewer"), use_cache=False, fallback=FALLBACK_ACTIVE
        )
        assert decision.reason == "fallback-active"

    def test_prefer_opencode_respects_disabled_fusion(self, engine):
        decision = engine.should_route_v2(
            task("executor"), use_cache=False, limits=_limits(95), fusion={"enabled": False}
        )
        assert decision.reason == "fusion-disabled"

    def test_delegation_beats_rules(self, engine):
        decision = engine.should_route_v2(
            task("executor"), use_cache=False, limits=_limits(95), delegation_active=True
        )
        assert decision.reason == "delegation-routing-deferred"

    def test_block_and_force_rules(self, global_session):
        rules = RoutingRulesEngine(global_session.paths, rules=[
            RoutingRule("no-vision", 'agent.type == "vision"', "block", 500),
            RoutingRule("writer-ext", 'agent.type == "writer"', "force_opencode", 500),
            RoutingRule("exec-claude", 'agent.type == "executor"', "force_claude", 500),
        ])
        engine = RoutingDecisionEngine(session=global_session, rules=rules)
        blocked = engine.should_route_v2(task("vision"), use_cache=False)
        assert blocked.blocked is True and blocked.route is False
        forced = engine.should_route_v2(task("writer"), use_cache=False, fusion={"enabled": False})
        assert forced.route is True and forced.opencode_agent == "document-writer"
        kept = engine.should_route_v2(task("executor"), use_cache=False, limits=_limits(99))
        assert kept.reason == "rule-exec-claude"

    def test_caller_context_overrides(self, engine):
        decision = engine.should_route_v2(
            task("executor"), context={"mode": {"ecomode": True}}, use_cache=False
        )
        assert decision.reason == "rule-ecomode-opencode"


class TestGeminiFallback:
    def test_swaps_gemini_agent_to_codex(self):
        decision = RoutingDecision(
            route=True, reason="token-saving-agent-explore",
            target_model={"id": "gemini-3-flash", "name": "Gemini 3 Flash"}, opencode_agent="explore",
        )
        swapped = apply_gemini_fallback(decision, {"is429": True})
        assert swapped.opencode_agent == "Codex"
        assert swapped.original_agent == "explore"
        assert swapped.gemini_rate_limit is True
        assert swapped.target_model["id"] == "gpt-5.3-codex"
        assert decision.opencode_agent == "explore"

    def test_leaves_openai_decisions(self):
        decision = RoutingDecision(route=True, reason="r", target_model={"id": "gpt-5.3"}, opencode_agent="Oracle")
        assert apply_gemini_fallback(decision, {"is429": True}) is decision

    def test_not_limited(self):
        decision = RoutingDecision(route=True, reason="r", target_model={"id": "gemini-3-flash"}, opencode_agent="explore")
        limits = {"is429": False, "rpm": {"remaining": 3}, "rpd": {"remaining": 10}}
        assert apply_gemini_fallback(decision, limits) is decision
