"""
Tests for the Conversation Pipeline

Tests turn orchestration end to end with mocked collaborators and an
in-memory transport: stage ordering, history atomicity, reentrancy,
timeouts, reset races and visual context.
"""

import asyncio
import base64

import pytest

from maca.core.providers import AudioClip, SynthesizedAudio, Transcript
from maca.errors import (
    DeliveryError,
    ReplyError,
    SynthesisError,
    TranscriptionError,
    TransportError,
    VisionError,
)
from maca.realtime.avatar_protocol import AvatarEventProtocol
from maca.realtime.conversation_pipeline import (
    ConversationConfig,
    ConversationHistory,
    ConversationPipeline,
)
from maca.realtime.events import (
    EventBus,
    PipelineFailed,
    PipelineStage,
    StageCompleted,
    StageStarted,
    TurnCompleted,
    TurnRejected,
)

from conftest import make_wav


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def pipeline(mock_transcriber, mock_replier, mock_synthesizer, fake_transport, bus, mock_vision):
    return ConversationPipeline(
        transcriber=mock_transcriber,
        replier=mock_replier,
        synthesizer=mock_synthesizer,
        transport=fake_transport,
        protocol=AvatarEventProtocol(inter_chunk_delay_s=0),
        event_bus=bus,
        vision=mock_vision,
        config=ConversationConfig(voice="rachel"),
    )


@pytest.fixture
def clip():
    return AudioClip(data=make_wav(), container_format="wav", mime_type="audio/wav")


def gate_replier(mock_replier, reply="Gated reply"):
    """Make the replier block until the returned event is set."""
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_reply(message, history):
        entered.set()
        await release.wait()
        return reply

    mock_replier.reply.side_effect = slow_reply
    return entered, release


class TestConversationHistory:
    """Tests for ConversationHistory."""

    def test_append_turn_pairs(self):
        """Test turns are stored as user/assistant pairs."""
        history = ConversationHistory()
        history.append_turn("hi", "hello")
        history.append_turn("how?", "fine")

        assert len(history) == 4
        assert history.turn_count == 2
        assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]

    def test_snapshot_limit(self):
        """Test snapshots can be limited to the latest messages."""
        history = ConversationHistory()
        history.append_turn("a", "b")
        history.append_turn("c", "d")

        assert [m.content for m in history.snapshot(2)] == ["c", "d"]
        assert len(history.snapshot()) == 4


class TestVoiceTurn:
    """Tests for a full voice turn."""

    @pytest.mark.asyncio
    async def test_happy_path(self, pipeline, clip, fake_transport, mock_replier, mock_synthesizer):
        """Test one turn delivers bracketed speech and commits both messages."""
        result = await pipeline.process_voice_input(clip)

        assert result.transcript == "I have a headache"
        assert result.reply == "I'm sorry to hear that. How long has it lasted?"
        assert result.committed is True
        assert result.audio_bytes == 48000

        assert fake_transport.types == [
            "agent.start_listening",
            "agent.speak",
            "agent.speak_end",
            "agent.stop_listening",
        ]
        speak = fake_transport.published[1]
        assert base64.b64decode(speak["audio"]) == b"\x01\x02" * 24000
        assert speak["event_id"] == fake_transport.published[2]["event_id"] == result.event_id

        history = pipeline.history
        assert [(m.role, m.content) for m in history] == [
            ("user", "I have a headache"),
            ("assistant", "I'm sorry to hear that. How long has it lasted?"),
        ]
        mock_replier.reply.assert_awaited_once_with("I have a headache", ())
        mock_synthesizer.synthesize.assert_awaited_once_with(result.reply, "rachel")
        assert pipeline.is_processing is False
        assert pipeline.stage is PipelineStage.IDLE

    @pytest.mark.asyncio
    async def test_stage_events_in_order(self, pipeline, clip, bus):
        """Test stage events follow the turn's state machine."""
        seen = []
        bus.subscribe(StageStarted, lambda e: seen.append(("start", e.stage)))
        bus.subscribe(StageCompleted, lambda e: seen.append(("done", e.stage)))
        completed = []
        bus.subscribe(TurnCompleted, completed.append)

        result = await pipeline.process_voice_input(clip)

        stages = [
            PipelineStage.TRANSCRIBING,
            PipelineStage.THINKING,
            PipelineStage.SYNTHESIZING,
            PipelineStage.DELIVERING,
        ]
        assert seen == [pair for stage in stages for pair in (("start", stage), ("done", stage))]
        assert completed[0].turn_id == result.turn_id
        assert set(result.timings_ms) == {s.value for s in stages}

    @pytest.mark.asyncio
    async def test_history_sent_on_next_turn(self, pipeline, clip, mock_replier):
        """Test prior turns are sent to the replier, excluding the new message."""
        await pipeline.process_voice_input(clip)
        await pipeline.process_text_input("It started this morning")

        message, prior = mock_replier.reply.await_args.args
        assert message == "It started this morning"
        assert [m.content for m in prior] == [
            "I have a headache",
            "I'm sorry to hear that. How long has it lasted?",
        ]
        assert len(pipeline.history) == 4


class TestFailures:
    """Tests for stage failures leaving history untouched."""

    @pytest.mark.asyncio
    async def test_empty_transcript(self, pipeline, clip, bus, fake_transport, mock_transcriber, mock_replier):
        """Test an empty transcript aborts before the LLM."""
        mock_transcriber.transcribe.return_value = Transcript(text="   ")
        failures = []
        bus.subscribe(PipelineFailed, failures.append)

        with pytest.raises(TranscriptionError):
            await pipeline.process_voice_input(clip)

        mock_replier.reply.assert_not_awaited()
        assert fake_transport.published == []
        assert pipeline.history == ()
        assert failures[0].stage is PipelineStage.TRANSCRIBING

    @pytest.mark.asyncio
    async def test_transcriber_exception_wrapped(self, pipeline, clip, mock_transcriber):
        """Test collaborator exceptions are chained into the stage error."""
        mock_transcriber.transcribe.side_effect = ConnectionError("refused")

        with pytest.raises(TranscriptionError) as exc_info:
            await pipeline.process_voice_input(clip)
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_llm_failure(self, pipeline, clip, bus, fake_transport, mock_replier, mock_synthesizer):
        """Test an LLM failure keeps history unchanged and sends nothing."""
        mock_replier.reply.side_effect = RuntimeError("quota exceeded")
        failures = []
        bus.subscribe(PipelineFailed, failures.append)

        with pytest.raises(ReplyError):
            await pipeline.process_voice_input(clip)

        mock_synthesizer.synthesize.assert_not_awaited()
        assert fake_transport.published == []
        assert pipeline.history == ()
        assert failures[0].stage is PipelineStage.THINKING
        assert "quota exceeded" in failures[0].message

    @pytest.mark.asyncio
    async def test_empty_reply(self, pipeline, clip, mock_replier):
        """Test an empty reply is a ReplyError."""
        mock_replier.reply.return_value = ""
        with pytest.raises(ReplyError):
            await pipeline.process_voice_input(clip)

    @pytest.mark.asyncio
    async def test_tts_failure(self, pipeline, clip, fake_transport, mock_synthesizer):
        """Test a synthesis failure keeps history unchanged and sends nothing."""
        mock_synthesizer.synthesize.side_effect = RuntimeError("voice not found")

        with pytest.raises(SynthesisError):
            await pipeline.process_voice_input(clip)

        assert fake_transport.published == []
        assert pipeline.history == ()

    @pytest.mark.asyncio
    async def test_empty_audio(self, pipeline, clip, mock_synthesizer):
        """Test empty synthesized audio is a SynthesisError."""
        mock_synthesizer.synthesize.return_value = SynthesizedAudio(data=b"")
        with pytest.raises(SynthesisError):
            await pipeline.process_voice_input(clip)

    @pytest.mark.asyncio
    async def test_delivery_failure(self, pipeline, clip, fake_transport):
        """Test a publish failure is a DeliveryError and nothing is committed."""
        fake_transport.fail_on_publish = 2

        with pytest.raises(DeliveryError) as exc_info:
            await pipeline.process_voice_input(clip)

        assert isinstance(exc_info.value.__cause__, TransportError)
        assert fake_transport.types == ["agent.start_listening"]
        assert pipeline.history == ()
        assert pipeline.is_processing is False

    @pytest.mark.asyncio
    async def test_stage_timeout(self, mock_transcriber, mock_replier, mock_synthesizer, fake_transport, clip):
        """Test a slow stage times out as that stage's error."""
        async def never_replies(message, history):
            await asyncio.sleep(10)

        mock_replier.reply.side_effect = never_replies
        pipeline = ConversationPipeline(
            mock_transcriber, mock_replier, mock_synthesizer, fake_transport,
            config=ConversationConfig(llm_timeout_s=0.01),
        )

        with pytest.raises(ReplyError, match="timed out"):
            await pipeline.process_voice_input(clip)
        assert pipeline.is_processing is False

    @pytest.mark.asyncio
    async def test_delivery_timeout_closes_utterance(
        self, mock_transcriber, mock_replier, mock_synthesizer, fake_transport, clip
    ):
        """Test a delivery timeout mid-burst still ends the speech and listening."""
        pipeline = ConversationPipeline(
            mock_transcriber, mock_replier, mock_synthesizer, fake_transport,
            protocol=AvatarEventProtocol(chunk_threshold=1000, inter_chunk_delay_s=10),
            config=ConversationConfig(delivery_timeout_s=0.05),
        )

        with pytest.raises(DeliveryError, match="timed out"):
            await pipeline.process_voice_input(clip)

        assert fake_transport.types == [
            "agent.start_listening", "agent.speak", "agent.speak_end", "agent.stop_listening",
        ]
        speak, speak_end = fake_transport.published[1:3]
        assert speak_end["event_id"] == speak["event_id"]
        assert pipeline.history == ()


class TestTurnTaking:
    """Tests for reentrancy and reset races."""

    @pytest.mark.asyncio
    async def test_second_turn_rejected(self, pipeline, clip, bus, mock_replier):
        """Test input during an active turn is rejected, not queued."""
        entered, release = gate_replier(mock_replier)
        rejected = []
        bus.subscribe(TurnRejected, rejected.append)

        first = asyncio.create_task(pipeline.process_voice_input(clip))
        await entered.wait()
        assert pipeline.is_processing is True

        second = await pipeline.process_text_input("Are you there?")
        assert second is None
        assert len(rejected) == 1

        release.set()
        result = await first
        assert result.committed is True
        assert mock_replier.reply.await_count == 1
        assert len(pipeline.history) == 2

    @pytest.mark.asyncio
    async def test_reset_during_turn(self, pipeline, clip, fake_transport, mock_replier):
        """Test a turn in flight during reset still speaks but does not commit."""
        entered, release = gate_replier(mock_replier)

        turn = asyncio.create_task(pipeline.process_voice_input(clip))
        await entered.wait()
        pipeline.reset_conversation()
        release.set()
        result = await turn

        assert result.committed is False
        assert pipeline.history == ()
        assert pipeline.generation == 1
        assert "agent.speak_end" in fake_transport.types

    @pytest.mark.asyncio
    async def test_empty_text_input(self, pipeline):
        """Test typed input must not be blank."""
        with pytest.raises(ValueError):
            await pipeline.process_text_input("   ")

    @pytest.mark.asyncio
    async def test_speak_text_skips_history(self, pipeline, fake_transport, mock_replier):
        """Test speak_text delivers fixed text without touching history."""
        result = await pipeline.speak_text("Hello, I'm MACA.")

        assert result.committed is False
        assert result.reply == "Hello, I'm MACA."
        mock_replier.reply.assert_not_awaited()
        assert pipeline.history == ()
        assert fake_transport.types[-1] == "agent.stop_listening"


class TestVisualContext:
    """Tests for image analysis and visual context."""

    @pytest.mark.asyncio
    async def test_analysis_stored(self, pipeline, mock_vision):
        """Test analysis results are kept as the last analysis."""
        analysis = await pipeline.analyze_image("aGVsbG8=", prompt="Describe")
        assert analysis == "A person holding their forehead."
        assert pipeline.last_analysis == analysis
        mock_vision.analyze.assert_awaited_once_with("aGVsbG8=", "Describe")

    @pytest.mark.asyncio
    async def test_context_attached_once(self, pipeline, mock_replier):
        """Test visual context rides on the next committed turn only."""
        pipeline.include_visual_context = True
        await pipeline.analyze_image("aGVsbG8=")

        await pipeline.process_text_input("What do you see?")
        message = mock_replier.reply.await_args.args[0]
        assert message.startswith("What do you see?")
        assert "[Visual context: A person holding their forehead.]" in message
        # History keeps the user's words only
        assert pipeline.history[0].content == "What do you see?"

        await pipeline.process_text_input("Thanks")
        assert mock_replier.reply.await_args.args[0] == "Thanks"

    @pytest.mark.asyncio
    async def test_context_off_by_default(self, pipeline, mock_replier):
        """Test analysis is not attached unless enabled."""
        await pipeline.analyze_image("aGVsbG8=")
        await pipeline.process_text_input("Hi")
        assert mock_replier.reply.await_args.args[0] == "Hi"

    @pytest.mark.asyncio
    async def test_no_analyzer(self, mock_transcriber, mock_replier, mock_synthesizer, fake_transport):
        """Test analyze_image without an analyzer raises VisionError."""
        pipeline = ConversationPipeline(mock_transcriber, mock_replier, mock_synthesizer, fake_transport)
        with pytest.raises(VisionError):
            await pipeline.analyze_image("aGVsbG8=")

    @pytest.mark.asyncio
    async def test_empty_analysis(self, pipeline, mock_vision):
        """Test an empty analysis raises VisionError."""
        mock_vision.analyze.return_value = " "
        with pytest.raises(VisionError):
            await pipeline.analyze_image("aGVsbG8=")
        assert pipeline.last_analysis is None
