"""Tests for omcm.handoff."""

from omcm.fallback import FALLBACK_CHAIN
from omcm.handoff import render_handoff


class TestHandoff:
    def test_render_and_truncate(self):
        text = render_handoff(
            FALLBACK_CHAIN[0], FALLBACK_CHAIN[1], "limit",
            todo_list=[{"content": "write tests", "status": "completed"}, "ship"],
        )
        assert "- [x] write tests" in text
        assert "- [ ] ship" in text
        assert len(render_handoff("a", "b", "r", max_length=20)) == 20
