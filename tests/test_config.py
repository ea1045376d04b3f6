"""Tests for omcm.config."""

import json

from omcm.config import (
    OmcmConfig,
    get_config_value,
    is_delegation_routing_active,
    set_config_value,
)
from omcm.fusion_router import RoutingDecisionEngine


class TestConfig:
    def test_defaults_without_file(self, paths):
        config = OmcmConfig.load(paths)
        assert config.fusion_default is False
        assert config.routing.large_task_length == 500
        assert config.routing.session_token_threshold == 5_000_000

    def test_corrupt_config_uses_defaults(self, paths):
        paths.config_file.parent.mkdir(parents=True)
        paths.config_file.write_text("{{{")
        assert OmcmConfig.load(paths).threshold == 90

    def test_from_dict_reads_camel_case(self):
        config = OmcmConfig.from_dict({
            "fusionDefault": True,
            "fusionMode": "always",
            "routing": {"largeTaskLength": 100, "autoDelegate": False},
            "unknownKey": 1,
        })
        assert config.fusion_default is True
        assert config.fusion_mode == "always"
        assert config.routing.large_task_length == 100
        assert config.routing.auto_delegate is False

    def test_set_and_get_dotted_key(self, paths):
        set_config_value("routing.usageThreshold", 80, paths=paths)
        assert get_config_value("routing.usageThreshold", paths=paths) == 80
        assert OmcmConfig.load(paths).routing.usage_threshold == 80
        assert get_config_value("missing.key", "dflt", paths=paths) == "dflt"


class TestDelegationFlag:
    def test_absent_file_is_inactive(self, paths):
        assert is_delegation_routing_active(paths) is False

    def test_object_form(self, paths):
        paths.omc_config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.omc_config_file.write_text(json.dumps({"delegationRouting": {"enabled": True}}))
        assert is_delegation_routing_active(paths) is True

    def test_boolean_form(self, paths):
        paths.omc_config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.omc_config_file.write_text(json.dumps({"delegationRouting": True}))
        assert is_delegation_routing_active(paths) is True

    def test_parse_failure_is_inactive(self, paths):
        paths.omc_config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.omc_config_file.write_text("nope")
        assert is_delegation_routing_active(paths) is False


class TestConfigValueTypes:
    def test_null_keywords_keep_defaults(self):
        config = OmcmConfig.from_dict({"routing": {"largeTaskKeywords": None}})
        assert config.routing.large_task_keywords == OmcmConfig().routing.large_task_keywords

    def test_wrong_scalar_types_ignored(self):
        config = OmcmConfig.from_dict({
            "fusionDefault": "yes",
            "threshold": True,
            "routing": {"largeTaskLength": "long", "enabled": 0, "preferMcp": "explore"},
        })
        assert config.fusion_default is False
        assert config.threshold == 90
        assert config.routing.large_task_length == 500
        assert config.routing.enabled is True
        assert "explore" in config.routing.prefer_mcp

    def test_fusion_mode_accepts_string_or_null(self):
        assert OmcmConfig.from_dict({"fusionMode": "always"}).fusion_mode == "always"
        assert OmcmConfig.from_dict({"fusionMode": 3}).fusion_mode is None

    def test_bad_config_file_still_routes(self, paths, global_session):
        paths.config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.config_file.write_text(json.dumps({
            "routing": {"largeTaskKeywords": None, "largeTaskLength": "x"},
        }))
        engine = RoutingDecisionEngine(session=global_session)
        task = {"subagent_type": "executor", "prompt": "x" * 600}
        assert engine.should_route(task).reason == "large-task-executor"
