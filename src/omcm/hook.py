"""PreToolUse hook handler for Task calls.

Flow: decide -> Gemini rate-limit swap -> routing log -> execute through the
injected executor -> call log, fusion and provider-limit updates -> answer.
Any failure degrades to ``{"allow": True}`` so Claude proceeds normally.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from omcm.call_logger import CallLogger
from omcm.fusion_router import RoutingDecision, RoutingDecisionEngine, apply_gemini_fallback
from omcm.fusion_tracker import FusionStateStore
from omcm.provider_limits import ProviderLimitsStore
from omcm.session import SessionContext, SessionRegistry

logger = logging.getLogger(__name__)

EXECUTION_TIMEOUT_SECONDS = 5 * 60
OUTPUT_PREVIEW_CHARS = 500


@dataclass
class ExecutionRequest:
    """What the executor is asked to run."""

    prompt: str
    provider: str
    agent: str
    model: str
    timeout: float = EXECUTION_TIMEOUT_SECONDS
    cwd: str | None = None


# Returns {success, output, tokens?: {input, output, reasoning}, error?, duration, provider}
Executor = Callable[[ExecutionRequest], Awaitable[dict]]

ALLOW = {"allow": True}


def resolve_provider(model_id: str | None) -> str:
    """CLI provider for an internal model id: Gemini family -> google, else openai."""
    if model_id and ("gemini" in model_id or "flash" in model_id):
        return "google"
    return "openai"


class PreToolUseHandler:
    """Wires the decision engine to the executor and the trackers."""

    def __init__(
        self,
        session: SessionContext,
        executor: Executor | None = None,
        engine: RoutingDecisionEngine | None = None,
        use_v2: bool = False,
        cwd: Path | None = None,
    ):
        self.session = session
        self.executor = executor
        self.engine = engine or RoutingDecisionEngine(session=session, cwd=cwd)
        self.use_v2 = use_v2
        self.cwd = cwd
        self.fusion = FusionStateStore(session)
        self.limits = ProviderLimitsStore(session.paths)
        self.calls = CallLogger(session.paths)

    def decide(self, tool_input: dict) -> RoutingDecision:
        if self.use_v2:
            decision = self.engine.should_route_v2(tool_input)
        else:
            decision = self.engine.should_route(tool_input)
        if decision.route:
            decision = apply_gemini_fallback(decision, self.limits.get_gemini_limits())
        return decision

    async def handle(self, payload: dict) -> dict:
        tool_name = payload.get("tool_name") or payload.get("toolName") or ""
        if tool_name != "Task":
            return dict(ALLOW)

        tool_input = payload.get("tool_input") or payload.get("toolInput") or {}
        decision = self.decide(tool_input)
        target = decision.target_model or {}
        self.calls.log_routing({
            "toolName": tool_name,
            "subagentType": tool_input.get("subagent_type"),
            "decision": "opencode" if decision.route else "claude",
            "reason": decision.reason,
            "target": target.get("id") or "claude",
        })

        if not decision.route:
            self.fusion.record_decision(decision.to_dict())
            return dict(ALLOW)

        logger.info(f"Routing Task to {target.get('name') or 'CLI'} via {decision.opencode_agent} ({decision.reason})")
        result = await self.execute(tool_input, decision)
        self.record_result(decision, result)

        if not result.get("success"):
            logger.warning(f"External execution failed, falling through to Claude: {result.get('error')}")
            return dict(ALLOW)

        output = result.get("output") or "Completed"
        return {
            "allow": False,
            "reason": f"Task executed via CLI ({decision.opencode_agent}). Result: Success",
            "message": output[:OUTPUT_PREVIEW_CHARS],
        }

    async def execute(self, tool_input: dict, decision: RoutingDecision) -> dict:
        if self.executor is None:
            return {"success": False, "error": "no executor configured", "duration": 0}
        model_id = (decision.target_model or {}).get("id") or "gpt-5.3-codex"
        request = ExecutionRequest(
            prompt=tool_input.get("prompt") or "",
            provider=resolve_provider(model_id),
            agent=decision.opencode_agent or "Codex",
            model=model_id,
            cwd=str(self.cwd) if self.cwd else None,
        )
        started = time.monotonic()
        result = await self.executor(request)
        result.setdefault("duration", int((time.monotonic() - started) * 1000))
        result.setdefault("provider", request.provider)
        return result

    def record_result(self, decision: RoutingDecision, result: dict) -> None:
        """Tracker updates; a failed execution counts as a Claude task."""
        success = bool(result.get("success"))
        model_id = (decision.target_model or {}).get("id") or ""
        tokens = result.get("tokens") or {}

        if self.session.session_id and self.executor is not None:
            provider = result.get("provider") or "openai"
            self.calls.log_call(self.session.session_id, {
                "provider": "gemini" if provider == "google" else provider,
                "model": model_id,
                "agent": decision.opencode_agent or "",
                "success": success,
                "source": "fusion-cli",
                "duration": result.get("duration") or 0,
                "inputTokens": tokens.get("input") or 0,
                "outputTokens": tokens.get("output") or 0,
                "reasoningTokens": tokens.get("reasoning") or 0,
            })

        if not success:
            self.fusion.record_decision({"route": False})
            return

        self.fusion.record_decision(decision.to_dict())
        if resolve_provider(model_id) == "google":
            self.limits.record_gemini_request((tokens.get("input") or 0) + (tokens.get("output") or 0))

        totals = self.calls.aggregate_session_tokens(self.session.session_id)
        if totals:
            self.fusion.update_savings_from_tokens(
                openai={"input": totals["openai"]["input"], "output": totals["openai"]["output"]},
                gemini={"input": totals["gemini"]["input"], "output": totals["gemini"]["output"]},
            )


async def handle_pre_tool_use(
    payload: dict,
    executor: Executor | None = None,
    session: SessionContext | None = None,
    engine: RoutingDecisionEngine | None = None,
    use_v2: bool = False,
    cwd: Path | None = None,
) -> dict:
    """Hook entry point; never raises."""
    try:
        if session is None:
            session = SessionRegistry().resolve()
        handler = PreToolUseHandler(session, executor=executor, engine=engine, use_v2=use_v2, cwd=cwd)
        return await handler.handle(payload if isinstance(payload, dict) else {})
    except Exception as e:
        logger.error(f"Fusion hook error: {e}")
        return dict(ALLOW)
