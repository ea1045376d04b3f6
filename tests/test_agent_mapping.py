"""Tests for omcm.agent_mapping."""

import json

import pytest

from omcm.agent_mapping import (
    AgentMappingOverlay,
    AgentMappingResolver,
    get_model_info_for_agent,
    map_agent_to_opencode,
    strip_agent_prefix,
    validate_mapping_file,
)


class TestAgentMapping:
    def test_static_table(self):
        assert map_agent_to_opencode("architect") == "Oracle"
        assert map_agent_to_opencode("explore") == "explore"
        assert map_agent_to_opencode("unknown-role") == "Codex"

    def test_none_role_raises(self):
        with pytest.raises(TypeError):
            map_agent_to_opencode(None)

    def test_prefix_stripped(self):
        assert strip_agent_prefix("oh-my-claudecode:architect") == "architect"

    def test_model_info(self):
        assert get_model_info_for_agent("explore")["id"] == "gemini-3-flash"
        assert get_model_info_for_agent("frontend-ui-ux-engineer")["id"] == "gemini-3-pro"
        assert get_model_info_for_agent("Oracle")["id"] == "gpt-5.3"
        assert get_model_info_for_agent("Codex")["id"] == "gpt-5.3-codex"

    def test_overlay_overrides_static(self, paths, project_dir):
        mapping = project_dir / ".omcm" / "agent-mapping.json"
        mapping.parent.mkdir()
        mapping.write_text(json.dumps({"mappings": [
            {"source": ["executor"], "target": "Oracle"},
            {"source": ["writer"], "target": "custom", "model": "kimi-k2"},
        ]}))
        resolver = AgentMappingResolver(paths, cwd=project_dir)
        assert resolver.resolve("executor") == ("Oracle", {"id": "gpt-5.3", "name": "GPT 5.3 Oracle"})
        assert resolver.resolve("writer") == ("custom", {"id": "kimi-k2", "name": "kimi-k2"})
        assert resolver.resolve("explore")[0] == "explore"

    def test_overlay_stats_and_fallback(self, paths, project_dir):
        mapping = project_dir / ".omcm" / "agent-mapping.json"
        mapping.parent.mkdir()
        mapping.write_text(json.dumps({"mappings": [
            {"source": ["a", "b"], "target": "X", "tier": "HIGH"},
        ]}))
        overlay = AgentMappingOverlay(paths, project_dir)
        stats = overlay.get_mapping_stats()
        assert stats["totalAgents"] == 2
        assert stats["byTier"] == {"HIGH": 2}
        assert overlay.get_fallback_config() == {"provider": "claude", "model": "sonnet"}
        assert overlay.get_agent_mapping("a")["model"] == "gpt-4"

    def test_validate_mapping_file(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text(json.dumps({"mappings": [{"source": ["a"]}]}))
        result = validate_mapping_file(path)
        assert not result["valid"]
        assert 'missing "target"' in result["errors"][0]
        assert validate_mapping_file(tmp_path / "none.json")["error"] == "File not found"
