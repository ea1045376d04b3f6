"""Handoff context markdown written when a fallback model takes over."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

HANDOFF_DIRNAME = Path(".omcm") / "handoff"
HANDOFF_FILENAME = "context.md"

HANDOFF_TEMPLATE = """# Handoff Context

- Created: {created}
- From: {from_model}
- To: {to_model}
- Reason: {reason}

## Current Task
{current_task}

## Session Summary
{session_summary}

## Todo List
{todos}
"""


def _model_label(model: Any) -> str:
    if isinstance(model, dict):
        return f"{model.get('name') or model.get('id')} ({model.get('id')})"
    return str(model or "unknown")


def _todo_lines(todos: Any) -> str:
    if not todos:
        return "- (none)"
    lines = []
    for item in todos:
        if isinstance(item, dict):
            done = item.get("status") == "completed"
            lines.append(f"- [{'x' if done else ' '}] {item.get('content') or item.get('text') or ''}")
        else:
            lines.append(f"- [ ] {item}")
    return "\n".join(lines)


def render_handoff(
    from_model: Any,
    to_model: Any,
    reason: str,
    current_task: str | None = None,
    session_summary: str | None = None,
    todo_list: list | None = None,
    max_length: int = 50000,
) -> str:
    text = HANDOFF_TEMPLATE.format(
        created=datetime.now().isoformat(timespec="seconds"),
        from_model=_model_label(from_model),
        to_model=_model_label(to_model),
        reason=reason,
        current_task=current_task or "(none)",
        session_summary=session_summary or "(none)",
        todos=_todo_lines(todo_list),
    )
    return text[:max_length]


def write_handoff_context(project_dir: str | Path, **kwargs) -> Path:
    """Write ``<project>/.omcm/handoff/context.md``; OSError propagates to the caller."""
    target = Path(project_dir) / HANDOFF_DIRNAME
    target.mkdir(parents=True, exist_ok=True)
    path = target / HANDOFF_FILENAME
    path.write_text(render_handoff(**kwargs), encoding="utf-8")
    return path
