"""Tests for the omcm CLI."""

import json

import pytest
from click.testing import CliRunner

from omcm.cli import cli
from omcm.config import OmcmConfig
from omcm.fallback import FallbackOrchestrator


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()

    def invoke(*args, input=None):
        return runner.invoke(
            cli,
            ["--root", str(tmp_path), *args],
            input=input,
            env={"OMCM_SESSION_ID": "cli-session"},
        )

    return invoke


class TestCli:
    def test_status(self, run):
        result = run("status")
        assert result.exit_code == 0
        assert "Fusion" in result.output
        assert "Provider Limits" in result.output

    def test_route_dry_run(self, run):
        result = run("route", "oh-my-claudecode:explore")
        assert result.exit_code == 0
        assert "no-routing-needed" in result.output

        assert run("fusion", "mode", "save-tokens").exit_code == 0
        result = run("route", "explore")
        assert "token-saving-agent-explore" in result.output

    def test_hook_non_task(self, run):
        result = run("hook", input=json.dumps({"tool_name": "Bash"}))
        assert result.exit_code == 0
        assert json.loads(result.output) == {"allow": True}

    def test_hook_bad_input(self, run):
        result = run("hook", input="not json")
        assert json.loads(result.output) == {"allow": True}

    def test_fallback_set_and_reset(self, run, paths):
        assert run("fallback", "set", "gpt-5.3").exit_code == 0
        assert FallbackOrchestrator(paths).state["fallbackActive"] is True
        assert "gpt-5.3" in run("fallback", "history").output
        assert run("fallback", "reset").exit_code == 0
        assert FallbackOrchestrator(paths).state["fallbackActive"] is False

    def test_fallback_unknown_model(self, run):
        result = run("fallback", "set", "nope")
        assert result.exit_code == 1
        assert "Model not found" in result.output

    def test_limits_tier(self, run):
        assert run("limits", "--tier", "tier2").exit_code == 0
        assert run("limits", "--tier", "gold").exit_code == 1

    def test_triggers(self, run):
        result = run("triggers", "--cost", "9")
        assert result.exit_code == 0
        assert "force_opencode" in result.output

    def test_rules(self, run):
        result = run("rules")
        assert result.exit_code == 0
        assert "high-usage" in result.output

    def test_config_set(self, run, paths):
        assert run("config", "routing.usageThreshold=80").exit_code == 0
        assert OmcmConfig.load(paths).routing.usage_threshold == 80
        assert run("config", "routing.usageThreshold").output.strip() == "80"

    def test_sessions_cleanup(self, run):
        result = run("sessions", "cleanup", "--days", "1")
        assert result.exit_code == 0
        assert "Removed 0 session dirs" in result.output

    def test_fusion_reset_restores_defaults(self, run):
        assert run("fusion", "mode", "save-tokens").exit_code == 0
        assert run("fusion", "reset").exit_code == 0
        assert "token-saving-agent-explore" not in run("route", "explore").output
