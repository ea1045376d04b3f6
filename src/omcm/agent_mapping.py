"""Agent role -> external agent identity and model.

A static table covers every known role; an optional ``agent-mapping.json``
overlay extends or overrides it at runtime.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from omcm.config import OmcmPaths

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "Codex"
AGENT_PREFIX = "oh-my-claudecode:"

AGENT_MAP: dict[str, str] = {
    # analysis / architecture
    "architect": "Oracle",
    "architect-low": "explore",
    "architect-medium": "Oracle",
    "analyst": "Oracle",
    "critic": "Oracle",
    # research
    "researcher": "Oracle",
    "researcher-low": "librarian",
    # exploration
    "explore": "explore",
    "explore-medium": "explore",
    "explore-high": "Oracle",
    # data science
    "scientist": "Oracle",
    "scientist-low": "explore",
    "scientist-high": "Oracle",
    # design, docs, vision
    "designer": "frontend-ui-ux-engineer",
    "designer-low": "frontend-ui-ux-engineer",
    "designer-high": "frontend-ui-ux-engineer",
    "writer": "document-writer",
    "vision": "multimodal-looker",
    # execution
    "executor": "Codex",
    "executor-low": "Codex",
    "executor-high": "Codex",
    "qa-tester": "Codex",
    "qa-tester-high": "Codex",
    "tdd-guide": "Codex",
    "tdd-guide-low": "Codex",
    "build-fixer": "Codex",
    "build-fixer-low": "Codex",
    # review
    "code-reviewer": "Oracle",
    "code-reviewer-low": "explore",
    "security-reviewer": "Oracle",
    "security-reviewer-low": "explore",
    # coordination (planner normally stays on Claude)
    "orchestrator": "Oracle",
    "planner": "Oracle",
}

GEMINI_AGENTS = ("explore", "frontend-ui-ux-engineer", "document-writer", "multimodal-looker", "Flash")
ORACLE_AGENTS = ("Oracle", "librarian")

GEMINI_FLASH = {"id": "gemini-3-flash", "name": "Gemini 3 Flash"}
GEMINI_PRO = {"id": "gemini-3-pro", "name": "Gemini 3 Pro"}
GPT_ORACLE = {"id": "gpt-5.3", "name": "GPT 5.3 Oracle"}
GPT_CODEX = {"id": "gpt-5.3-codex", "name": "GPT 5.3 Codex"}

DEFAULT_FALLBACK = {"provider": "claude", "model": "sonnet"}


def strip_agent_prefix(subagent_type: str) -> str:
    """``oh-my-claudecode:architect`` -> ``architect``."""
    return subagent_type.replace(AGENT_PREFIX, "")


def map_agent_to_opencode(role: str) -> str:
    """External agent identity for ``role``; unknown roles map to Codex.

    Raises:
        TypeError: when ``role`` is None (callers must guard).
    """
    if role is None:
        raise TypeError("agent role must be a string, not None")
    return AGENT_MAP.get(role, DEFAULT_AGENT)


def get_model_info_for_agent(agent: str) -> dict[str, str]:
    """``{id, name}`` of the model backing an external agent (Codex default)."""
    if agent in GEMINI_AGENTS:
        return dict(GEMINI_PRO if agent == "frontend-ui-ux-engineer" else GEMINI_FLASH)
    if agent in ORACLE_AGENTS:
        return dict(GPT_ORACLE)
    return dict(GPT_CODEX)


def provider_for_agent(agent: str) -> str:
    return "gemini" if agent in GEMINI_AGENTS else "openai"


@dataclass
class AgentMappingOverlay:
    """Runtime overlay loaded from the first ``agent-mapping.json`` found."""

    paths: OmcmPaths
    cwd: Path | None = None

    def __post_init__(self):
        self._cached: dict | None = None
        self._source: Path | None = None
        self._mtime: float = 0.0

    def _find_file(self) -> Path | None:
        for path in self.paths.mapping_files(self.cwd):
            if path.exists():
                return path
        return None

    def _load_file(self, path: Path) -> dict | None:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load mapping file {path}: {e}")
            return None
        if not isinstance(parsed, dict) or not isinstance(parsed.get("mappings"), list):
            logger.warning(f"Invalid mapping file {path}: missing mappings array")
            return None
        return parsed

    def get_dynamic_mapping(self) -> dict:
        """Cached overlay, reloaded when the file changes or appears."""
        path = self._find_file()
        if self._cached is not None and path == self._source:
            if path is None:
                return self._cached
            try:
                if path.stat().st_mtime <= self._mtime:
                    return self._cached
            except OSError:
                pass

        mapping = self._load_file(path) if path else None
        if mapping is None:
            self._cached = {"mappings": [], "fallback": dict(DEFAULT_FALLBACK)}
            self._source = path
            self._mtime = path.stat().st_mtime if path else 0.0
            return self._cached

        self._cached = mapping
        self._source = path
        self._mtime = path.stat().st_mtime
        return mapping

    def find_rule(self, role: str) -> dict | None:
        for rule in self.get_dynamic_mapping().get("mappings", []):
            if not isinstance(rule, dict) or not isinstance(rule.get("source"), list):
                continue
            if role in rule["source"]:
                return rule
        return None

    def get_agent_mapping(self, role: str) -> dict[str, Any] | None:
        """Overlay entry naming ``role``, or None to use the static table."""
        rule = self.find_rule(role)
        if rule is None:
            return None
        return {
            "target": rule.get("target"),
            "provider": rule.get("provider") or "opencode",
            "model": rule.get("model") or "gpt-4",
            "tier": rule.get("tier") or "MEDIUM",
            "reason": rule.get("reason") or "Dynamic mapping",
        }

    def get_fallback_config(self) -> dict:
        return self.get_dynamic_mapping().get("fallback") or dict(DEFAULT_FALLBACK)

    def get_mapping_stats(self) -> dict[str, Any]:
        mapping = self.get_dynamic_mapping()
        by_provider: dict[str, int] = {}
        by_tier: dict[str, int] = {}
        total_agents = 0
        for rule in mapping.get("mappings", []):
            if not isinstance(rule, dict) or not isinstance(rule.get("source"), list):
                continue
            count = len(rule["source"])
            total_agents += count
            provider = rule.get("provider") or "opencode"
            by_provider[provider] = by_provider.get(provider, 0) + count
            tier = rule.get("tier") or "MEDIUM"
            by_tier[tier] = by_tier.get(tier, 0) + count
        return {
            "totalRules": len(mapping.get("mappings", [])),
            "totalAgents": total_agents,
            "byProvider": by_provider,
            "byTier": by_tier,
            "source": str(self._source) if self._source else "default",
        }

    def invalidate(self) -> None:
        self._cached = None
        self._source = None
        self._mtime = 0.0


def validate_mapping_file(path: Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        return {"valid": False, "error": "File not found"}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        return {"valid": False, "error": f"JSON parse error: {e}"}
    if not isinstance(parsed, dict):
        return {"valid": False, "errors": ["Top level must be an object"]}

    errors = []
    mappings = parsed.get("mappings")
    if mappings is None:
        errors.append('Missing "mappings" array')
    elif not isinstance(mappings, list):
        errors.append('"mappings" must be an array')
    else:
        for index, rule in enumerate(mappings):
            if not isinstance(rule, dict) or not isinstance(rule.get("source"), list):
                errors.append(f'Rule {index}: missing or invalid "source" array')
                continue
            if not rule.get("target"):
                errors.append(f'Rule {index}: missing "target"')
    if "fallback" in parsed and not isinstance(parsed["fallback"], dict):
        errors.append('"fallback" must be an object')

    if errors:
        return {"valid": False, "errors": errors}
    return {"valid": True, "mappings": len(mappings)}


class AgentMappingResolver:
    """Static table plus overlay; the overlay wins when it names the role."""

    def __init__(self, paths: OmcmPaths | None = None, cwd: Path | None = None):
        self.overlay = AgentMappingOverlay(paths or OmcmPaths(), cwd)

    def resolve(self, role: str) -> tuple[str, dict[str, str]]:
        """``(external_agent, {id, name})`` for ``role``."""
        agent = map_agent_to_opencode(role)
        try:
            rule = self.overlay.find_rule(role)
        except OSError as e:
            logger.debug(f"Mapping overlay unavailable: {e}")
            rule = None
        if rule and rule.get("target"):
            agent = rule["target"]
            if rule.get("model"):
                return agent, {"id": rule["model"], "name": rule["model"]}
        return agent, get_model_info_for_agent(agent)
