"""
Tests for User-Facing Messages

Tests that every status the agent and CLI display resolves to text.
"""

import pytest

from maca.messages import msg, stage_status
from maca.realtime.events import PipelineStage, SessionState


class TestMessages:
    """Tests for msg() and stage_status()."""

    @pytest.mark.parametrize("stage", [s for s in PipelineStage if s is not PipelineStage.IDLE])
    def test_stage_statuses_defined(self, stage):
        """Test every working stage has a status line."""
        assert stage_status(stage.value) != f"status.{stage.value}"

    @pytest.mark.parametrize("state", list(SessionState))
    def test_session_statuses_defined(self, state):
        """Test every session state has a status line."""
        assert msg(f"session.{state.value}") != f"session.{state.value}"

    def test_listening_status(self):
        """Test the recording prompt text."""
        assert msg("status.listening") == "Listening..."

    def test_unknown_key_returns_key(self):
        """Test missing keys fall back to the key itself."""
        assert msg("status.generating") == "status.generating"
