"""Routing decision engine: run a Task call on Claude or an external agent?

Decision branches, first applicable wins (the order is load-bearing):
1. External delegation active and fusionMode != 'always' -> defer
2. Fusion disabled (unless fusionDefault) -> Claude
3. Fallback active -> route to the fallback's current model
4. Claude 5-hour / weekly usage >= 90% -> route by role
5. Large task (long prompt or keyword), not planner -> route
6. Session Claude input tokens >= threshold -> route if the level allows the role
7. fusionDefault -> route all but planner; save-tokens -> route analysis roles
8. Otherwise Claude

The V2 entry point adds the routing cache in front and the rules engine
between branch 1 and branch 2; when neither decides, the same branches
2-8 run.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from omcm.agent_mapping import (
    GEMINI_AGENTS,
    GPT_CODEX,
    AgentMappingResolver,
    strip_agent_prefix,
)
from omcm.config import OmcmConfig, OmcmPaths, is_delegation_routing_active
from omcm.fusion_tracker import FusionState, FusionStateStore
from omcm.provider_limits import ProviderLimitsStore
from omcm.routing_cache import RoutingCache
from omcm.routing_rules import RoutingRulesEngine
from omcm.session import SessionContext
from omcm.storage import read_json_file

logger = logging.getLogger(__name__)

CLAUDE_LIMIT_THRESHOLD = 90

CLAUDE_ONLY_AGENTS = ["planner"]

# Roles routed in save-tokens mode: analysis, research, exploration,
# design, docs and review. Execution and planning roles stay on Claude.
TOKEN_SAVING_AGENTS = [
    "architect", "architect-low", "architect-medium",
    "analyst", "critic", "orchestrator",
    "researcher", "researcher-low",
    "explore", "explore-medium", "explore-high",
    "scientist", "scientist-low", "scientist-high",
    "designer", "designer-low", "designer-high",
    "writer", "vision",
    "code-reviewer", "code-reviewer-low",
    "security-reviewer", "security-reviewer-low",
]

_ANALYSIS_ROLES = [
    "architect", "architect-low", "architect-medium",
    "researcher", "researcher-low",
    "explore", "explore-medium", "explore-high",
    "scientist", "scientist-low", "scientist-high",
    "designer", "designer-low", "designer-high",
    "writer", "vision",
    "code-reviewer", "code-reviewer-low",
    "security-reviewer", "security-reviewer-low",
]

_EXECUTION_ROLES = [
    "executor", "executor-low", "executor-high",
    "qa-tester", "qa-tester-high",
    "tdd-guide", "tdd-guide-low",
    "build-fixer", "build-fixer-low",
]

_SENIOR_ROLES = [
    "analyst", "critic", "orchestrator", "product-manager",
    "deep-executor", "debugger", "verifier", "git-master",
]

_UNSET: Any = object()


@dataclass(frozen=True)
class RoutingLevel:
    """Tiered allow-list chosen by how many Claude input tokens a session used."""

    level: int
    name: str
    min_tokens: int
    agents: tuple[str, ...]
    all_roles: bool = False

    def allows(self, role: str) -> bool:
        if role in CLAUDE_ONLY_AGENTS:
            return False
        return self.all_roles or role in self.agents


ROUTING_LEVELS = [
    RoutingLevel(4, "L4", 40_000_000,
                 tuple(_ANALYSIS_ROLES + _EXECUTION_ROLES + _SENIOR_ROLES), all_roles=True),
    RoutingLevel(3, "L3", 20_000_000, tuple(_ANALYSIS_ROLES + _EXECUTION_ROLES)),
    RoutingLevel(2, "L2", 5_000_000, tuple(_ANALYSIS_ROLES)),
    RoutingLevel(1, "L1", 0, ()),
]


def get_routing_level(session_input_tokens: int) -> RoutingLevel:
    """L1 below 5M tokens, L2 up to 20M, L3 up to 40M, L4 beyond."""
    for level in ROUTING_LEVELS:
        if session_input_tokens >= level.min_tokens:
            return level
    return ROUTING_LEVELS[-1]


@dataclass
class RoutingDecision:
    """Outcome of one routing evaluation."""

    route: bool
    reason: str
    target_model: dict | None = None
    opencode_agent: str | None = None
    routing_level: str | None = None
    from_cache: bool = False
    blocked: bool = False
    original_agent: str | None = None
    gemini_rate_limit: bool = False
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"route": self.route, "reason": self.reason}
        if self.target_model is not None:
            data["targetModel"] = dict(self.target_model)
        if self.opencode_agent is not None:
            data["opencodeAgent"] = self.opencode_agent
        if self.routing_level is not None:
            data["routingLevel"] = self.routing_level
        if self.from_cache:
            data["fromCache"] = True
        if self.blocked:
            data["blocked"] = True
        if self.original_agent is not None:
            data["originalAgent"] = self.original_agent
        if self.gemini_rate_limit:
            data["geminiRateLimit"] = True
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RoutingDecision":
        known = {
            "route", "reason", "targetModel", "opencodeAgent", "routingLevel",
            "fromCache", "blocked", "originalAgent", "geminiRateLimit",
        }
        return cls(
            route=bool(data.get("route")),
            reason=str(data.get("reason") or ""),
            target_model=data.get("targetModel"),
            opencode_agent=data.get("opencodeAgent"),
            routing_level=data.get("routingLevel"),
            from_cache=bool(data.get("fromCache")),
            blocked=bool(data.get("blocked")),
            original_agent=data.get("originalAgent"),
            gemini_rate_limit=bool(data.get("geminiRateLimit")),
            extra={k: v for k, v in data.items() if k not in known and k != "cachedAt"},
        )

    def key(self) -> tuple:
        """Fields that define the decision, for equality checks."""
        model_id = self.target_model.get("id") if self.target_model else None
        return (self.route, self.reason, model_id, self.opencode_agent)


def _format_percent(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _percent(section: Any, window: str) -> float:
    if not isinstance(section, dict):
        return 0
    entry = section.get(window)
    if isinstance(entry, dict):
        value = entry.get("percent")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return 0


def claude_usage_percents(limits: dict | None) -> tuple[float, float]:
    """``(fiveHour%, weekly%)`` from a provider-limits document (0 when unknown)."""
    claude = limits.get("claude") if isinstance(limits, dict) else None
    return _percent(claude, "fiveHour"), _percent(claude, "weekly")


def is_gemini_limited(gemini_limits: dict | None) -> bool:
    if not isinstance(gemini_limits, dict):
        return False
    if gemini_limits.get("is429"):
        return True
    for window in ("rpm", "rpd"):
        entry = gemini_limits.get(window)
        if isinstance(entry, dict) and isinstance(entry.get("remaining"), (int, float)):
            if entry["remaining"] <= 0:
                return True
    return False


def apply_gemini_fallback(decision: RoutingDecision, gemini_limits: dict | None) -> RoutingDecision:
    """Swap a Gemini-bound decision to Codex while Gemini is rate limited."""
    if not decision.route or not is_gemini_limited(gemini_limits):
        return decision
    model_id = (decision.target_model or {}).get("id") or ""
    if "gemini" not in str(model_id) and decision.opencode_agent not in GEMINI_AGENTS:
        return decision
    swapped = copy.deepcopy(decision)
    swapped.original_agent = decision.opencode_agent
    swapped.opencode_agent = "Codex"
    swapped.target_model = dict(GPT_CODEX)
    swapped.gemini_rate_limit = True
    logger.info(f"Gemini rate limited; {decision.opencode_agent} rerouted to Codex")
    return swapped


def is_large_task(prompt: str, config: OmcmConfig) -> bool:
    if not prompt:
        return False
    if len(prompt) > config.routing.large_task_length:
        return True
    lowered = prompt.lower()
    return any(keyword.lower() in lowered for keyword in config.routing.large_task_keywords)


@dataclass
class RoutingInputs:
    """Everything a decision reads, resolved once per evaluation."""

    fusion: dict | None
    fallback: dict | None
    limits: dict | None
    config: OmcmConfig
    delegation_active: bool
    session_tokens: int


class RoutingDecisionEngine:
    """Decides per Task call; state is loaded from disk unless injected."""

    def __init__(
        self,
        session: SessionContext | None = None,
        paths: OmcmPaths | None = None,
        resolver: AgentMappingResolver | None = None,
        rules: RoutingRulesEngine | None = None,
        cache: RoutingCache | None = None,
        cwd: Path | None = None,
    ):
        self.paths = paths or (session.paths if session else OmcmPaths())
        self.session = session or SessionContext(session_id=None, paths=self.paths)
        self.resolver = resolver or AgentMappingResolver(self.paths, cwd)
        self.rules = rules or RoutingRulesEngine(self.paths, cwd)
        self.cache = cache or RoutingCache()
        self.fusion_store = FusionStateStore(self.session)
        self.limits_store = ProviderLimitsStore(self.paths)

    # --- inputs ---

    def load_inputs(
        self,
        fusion: Any = _UNSET,
        fallback: Any = _UNSET,
        limits: Any = _UNSET,
        config: Any = _UNSET,
        delegation_active: Any = _UNSET,
        session_tokens: Any = _UNSET,
    ) -> RoutingInputs:
        """Resolve decision inputs; an injected None means "absent"."""
        if fusion is _UNSET:
            # A never-written state file reads as the default (enabled) state.
            fusion = self.fusion_store.read_raw() or FusionState().to_dict()
        if fallback is _UNSET:
            fallback = read_json_file(self.paths.fallback_state)
        if limits is _UNSET:
            limits = self.limits_store.load()
        if config is _UNSET:
            config = OmcmConfig.load(self.paths)
        elif not isinstance(config, OmcmConfig):
            config = OmcmConfig.from_dict(config)
        if delegation_active is _UNSET:
            delegation_active = is_delegation_routing_active(self.paths)
        if session_tokens is _UNSET:
            session_tokens = FusionState.from_dict(fusion).actual_tokens["claude"]["input"]
        return RoutingInputs(
            fusion=fusion if isinstance(fusion, dict) else None,
            fallback=fallback if isinstance(fallback, dict) else None,
            limits=limits if isinstance(limits, dict) else None,
            config=config,
            delegation_active=bool(delegation_active),
            session_tokens=int(session_tokens or 0),
        )

    def _routed(self, role: str, reason: str, **kwargs) -> RoutingDecision:
        agent, model = self.resolver.resolve(role) if role else ("Codex", dict(GPT_CODEX))
        return RoutingDecision(route=True, reason=reason, target_model=model, opencode_agent=agent, **kwargs)

    # --- V1 ---

    def should_route(self, tool_input: dict | None, **options) -> RoutingDecision:
        """Branches 1-8 for one Task tool input."""
        inputs = self.load_inputs(**options)
        role = self._role(tool_input)
        deferred = self._check_delegation(inputs)
        if deferred is not None:
            return deferred
        return self._decide_core(tool_input, role, inputs)

    @staticmethod
    def _role(tool_input: dict | None) -> str:
        if not isinstance(tool_input, dict):
            return ""
        subagent = tool_input.get("subagent_type")
        return strip_agent_prefix(subagent) if isinstance(subagent, str) else ""

    @staticmethod
    def _check_delegation(inputs: RoutingInputs) -> RoutingDecision | None:
        if inputs.delegation_active and inputs.config.fusion_mode != "always":
            return RoutingDecision(route=False, reason="delegation-routing-deferred")
        return None

    def _decide_core(self, tool_input: dict | None, role: str, inputs: RoutingInputs) -> RoutingDecision:
        config = inputs.config
        fusion = inputs.fusion
        fusion_default = config.fusion_default is True

        if not fusion_default and (fusion is None or fusion.get("enabled") is False):
            return RoutingDecision(route=False, reason="fusion-disabled")

        fallback = inputs.fallback
        if fallback and fallback.get("fallbackActive"):
            current = fallback.get("currentModel")
            agent = "Codex"
            target = None
            if isinstance(current, dict):
                agent = current.get("opencodeAgent") or agent
                target = {"id": current.get("id"), "name": current.get("name")}
            return RoutingDecision(route=True, reason="fallback-active", target_model=target, opencode_agent=agent)

        max_percent = max(claude_usage_percents(inputs.limits))
        if max_percent >= CLAUDE_LIMIT_THRESHOLD:
            return self._routed(role, f"claude-limit-{_format_percent(max_percent)}%")

        if role:
            prompt = tool_input.get("prompt") if isinstance(tool_input, dict) else None
            if role not in CLAUDE_ONLY_AGENTS and is_large_task(prompt if isinstance(prompt, str) else "", config):
                return self._routed(role, f"large-task-{role}")

            if inputs.session_tokens >= config.routing.session_token_threshold:
                level = get_routing_level(inputs.session_tokens)
                if level.allows(role):
                    return self._routed(
                        role, f"session-token-{level.name}-{role}", routing_level=level.name
                    )

        if role:
            if fusion_default and role not in CLAUDE_ONLY_AGENTS:
                return self._routed(role, f"fusion-default-{role}")
            if not fusion_default and fusion and fusion.get("mode") == "save-tokens":
                if role in TOKEN_SAVING_AGENTS:
                    return self._routed(role, f"token-saving-agent-{role}")

        return RoutingDecision(route=False, reason="no-routing-needed")

    # --- V2 ---

    def build_context(
        self,
        role: str,
        tool_input: dict | None,
        inputs: RoutingInputs,
        context: dict | None = None,
    ) -> dict[str, Any]:
        """Routing context for rules and the cache; caller-supplied keys win."""
        five_hour, weekly = claude_usage_percents(inputs.limits)
        fusion = inputs.fusion or {}
        prompt = tool_input.get("prompt") if isinstance(tool_input, dict) else ""
        base = {
            "usage": {
                "fiveHour": five_hour,
                "weekly": weekly,
                "sessionLevel": get_routing_level(inputs.session_tokens).level,
                "sessionThresholdReached": inputs.session_tokens >= inputs.config.routing.session_token_threshold,
            },
            "mode": {
                "ecomode": False,
                "ralph": False,
                "fusion": fusion.get("mode"),
                "fusionEnabled": fusion.get("enabled") if fusion else None,
                "fallbackActive": bool((inputs.fallback or {}).get("fallbackActive")),
                "fusionDefault": inputs.config.fusion_default is True,
                "delegationDeferred": self._check_delegation(inputs) is not None,
            },
            "task": {
                "complexity": "medium",
                "large": is_large_task(prompt if isinstance(prompt, str) else "", inputs.config),
            },
            "agent": {"type": role, "tier": role.rsplit("-", 1)[-1] if "-" in role else "medium"},
        }
        for section, values in (context or {}).items():
            if isinstance(values, dict) and isinstance(base.get(section), dict):
                base[section].update(values)
            else:
                base[section] = values
        return base

    def should_route_v2(
        self,
        tool_input: dict | None,
        context: dict | None = None,
        use_cache: bool = True,
        **options,
    ) -> RoutingDecision:
        """Cache, then delegation, then rules, then branches 2-8."""
        role = self._role(tool_input)
        if not role:
            return RoutingDecision(route=False, reason="no-agent-type")

        inputs = self.load_inputs(**options)
        ctx = self.build_context(role, tool_input, inputs, context)

        if use_cache:
            cached = self.cache.get(role, ctx)
            if cached is not None:
                decision = RoutingDecision.from_dict(cached)
                decision.from_cache = True
                return decision

        decision = self._decide_v2(tool_input, role, inputs, ctx)
        if use_cache:
            self.cache.set(role, ctx, decision.to_dict())
        return decision

    def _decide_v2(self, tool_input: dict | None, role: str, inputs: RoutingInputs, ctx: dict) -> RoutingDecision:
        deferred = self._check_delegation(inputs)
        if deferred is not None:
            return deferred

        result = self.rules.evaluate_routing(ctx)
        if result["matched"]:
            rule = result["rule"]
            action = result["action"]
            reason = f"rule-{rule.id}"
            fusion = inputs.fusion
            fallback_active = bool((inputs.fallback or {}).get("fallbackActive"))

            if action == "force_opencode":
                return self._routed(role, reason)
            if action == "force_claude":
                return RoutingDecision(route=False, reason=reason)
            if action == "block":
                return RoutingDecision(route=False, reason=reason, blocked=True)
            if action == "prefer_opencode":
                explicitly_disabled = fusion is not None and fusion.get("enabled") is False
                if not explicitly_disabled or inputs.config.fusion_default:
                    return self._routed(role, reason)
            elif action == "prefer_claude" and not fallback_active:
                return RoutingDecision(route=False, reason=reason)

        return self._decide_core(tool_input, role, inputs)
