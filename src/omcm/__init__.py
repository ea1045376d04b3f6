"""OMCM: routes Claude Code agent tasks to external CLIs when it saves tokens."""

__version__ = "1.0.0"

from omcm.config import OmcmConfig, OmcmPaths
from omcm.session import SessionContext, SessionRegistry
from omcm.provider_limits import ProviderLimitsStore
from omcm.fusion_tracker import FusionState, FusionStateStore
from omcm.call_logger import CallLogger
from omcm.routing_cache import LRUCache, RoutingCache
from omcm.routing_rules import RoutingRule, RoutingRulesEngine
from omcm.agent_mapping import AgentMappingResolver, map_agent_to_opencode
from omcm.fusion_router import RoutingDecision, RoutingDecisionEngine, get_routing_level
from omcm.fallback import FallbackOrchestrator
from omcm.switch_triggers import evaluate_triggers, get_recommended_action
from omcm.task_router import TaskRouter
from omcm.hook import PreToolUseHandler, handle_pre_tool_use

__all__ = [
    "OmcmConfig",
    "OmcmPaths",
    "SessionContext",
    "SessionRegistry",
    "ProviderLimitsStore",
    "FusionState",
    "FusionStateStore",
    "CallLogger",
    "LRUCache",
    "RoutingCache",
    "RoutingRule",
    "RoutingRulesEngine",
    "AgentMappingResolver",
    "map_agent_to_opencode",
    "RoutingDecision",
    "RoutingDecisionEngine",
    "get_routing_level",
    "FallbackOrchestrator",
    "evaluate_triggers",
    "get_recommended_action",
    "TaskRouter",
    "PreToolUseHandler",
    "handle_pre_tool_use",
]
