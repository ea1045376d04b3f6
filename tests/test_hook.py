"""Tests for omcm.hook: the PreToolUse flow with a fake executor."""

import pytest

from omcm.call_logger import CallLogger
from omcm.fusion_tracker import FusionStateStore
from omcm.hook import PreToolUseHandler, handle_pre_tool_use, resolve_provider
from omcm.provider_limits import ProviderLimitsStore


class FakeExecutor:
    def __init__(self, success=True, output="done", tokens=None):
        self.success = success
        self.output = output
        self.tokens = tokens or {"input": 120, "output": 30}
        self.requests = []

    async def __call__(self, request):
        self.requests.append(request)
        if not self.success:
            return {"success": False, "error": "cli crashed"}
        return {"success": True, "output": self.output, "tokens": self.tokens}


def task_payload(role, prompt="look around"):
    return {"tool_name": "Task", "tool_input": {"subagent_type": role, "prompt": prompt}}


@pytest.fixture
def save_tokens(session):
    FusionStateStore(session).set_mode("save-tokens")


class TestHook:
    @pytest.mark.asyncio
    async def test_non_task_tool_allowed(self, session):
        answer = await handle_pre_tool_use({"tool_name": "Read"}, session=session)
        assert answer == {"allow": True}

    @pytest.mark.asyncio
    async def test_unrouted_task_counted(self, session, paths):
        answer = await handle_pre_tool_use(task_payload("executor"), session=session)
        assert answer == {"allow": True}
        state = FusionStateStore(session).read()
        assert state.total_tasks == 1
        assert state.routed_to_opencode == 0
        log = CallLogger(paths).read_routing_log()
        assert log[-1]["decision"] == "claude"
        assert log[-1]["target"] == "claude"

    @pytest.mark.asyncio
    async def test_routed_task_executes(self, session, paths, save_tokens):
        executor = FakeExecutor(output="x" * 800)
        answer = await handle_pre_tool_use(task_payload("explore"), executor=executor, session=session)

        assert answer["allow"] is False
        assert answer["reason"] == "Task executed via CLI (explore). Result: Success"
        assert len(answer["message"]) == 500
        request = executor.requests[0]
        assert request.provider == "google"
        assert request.model == "gemini-3-flash"
        assert request.prompt == "look around"

        state = FusionStateStore(session).read()
        assert state.total_tasks == 1
        assert state.routed_to_opencode == 1
        assert state.by_provider["gemini"] == 1
        assert state.actual_tokens["gemini"] == {"input": 120, "output": 30}

        calls = CallLogger(paths).get_session_calls(session.session_id)
        assert calls["gemini"] == 1
        assert ProviderLimitsStore(paths).get_gemini_limits()["rpm"]["used"] == 1

    @pytest.mark.asyncio
    async def test_failed_execution_falls_through(self, session, paths, save_tokens):
        executor = FakeExecutor(success=False)
        answer = await handle_pre_tool_use(task_payload("explore"), executor=executor, session=session)
        assert answer == {"allow": True}
        state = FusionStateStore(session).read()
        assert state.total_tasks == 1
        assert state.routed_to_opencode == 0
        calls = CallLogger(paths).get_session_calls(session.session_id)
        assert calls["calls"][0]["success"] is False

    @pytest.mark.asyncio
    async def test_gemini_rate_limit_reroutes_to_codex(self, session, paths, save_tokens):
        ProviderLimitsStore(paths).record_gemini_429()
        executor = FakeExecutor()
        answer = await handle_pre_tool_use(task_payload("explore"), executor=executor, session=session)
        assert answer["reason"] == "Task executed via CLI (Codex). Result: Success"
        assert executor.requests[0].provider == "openai"
        assert executor.requests[0].model == "gpt-5.3-codex"

    @pytest.mark.asyncio
    async def test_no_executor_allows(self, session, save_tokens):
        handler = PreToolUseHandler(session)
        assert await handler.handle(task_payload("explore")) == {"allow": True}

    @pytest.mark.asyncio
    async def test_errors_never_escape(self, session):
        class BrokenEngine:
            def should_route(self, tool_input):
                raise RuntimeError("boom")

        answer = await handle_pre_tool_use(task_payload("explore"), session=session, engine=BrokenEngine())
        assert answer == {"allow": True}

    def test_resolve_provider(self):
        assert resolve_provider("gemini-3-pro") == "google"
        assert resolve_provider("gpt-5.3") == "openai"
        assert resolve_provider(None) == "openai"
