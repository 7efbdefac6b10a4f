"""
Tests for the Avatar Event Protocol

Tests wire encoding and speech streaming over a fake transport.
"""

import asyncio
import base64
import json

import pytest

from maca.errors import TransportError
from maca.realtime.audio_codec import pcm_to_wav
from maca.realtime.avatar_protocol import (
    AvatarEvent,
    AvatarEventProtocol,
    AvatarEventType,
)


class TestAvatarEvent:
    """Tests for AvatarEvent encoding."""

    def test_speak_wire_format(self):
        """Test speak events carry type, audio and event_id only."""
        event = AvatarEvent(AvatarEventType.SPEAK, event_id="e1", audio="AAAA")
        assert json.loads(event.encode()) == {
            "type": "agent.speak", "audio": "AAAA", "event_id": "e1",
        }

    def test_interrupt_has_no_event_id(self):
        """Test interrupt is just a type."""
        assert AvatarEvent(AvatarEventType.INTERRUPT).to_dict() == {"type": "agent.interrupt"}

    def test_decode(self):
        """Test decoding a wire message."""
        event = AvatarEvent.decode(b'{"type":"avatar.speak_text","text":"hi","event_id":"x"}')
        assert event.type is AvatarEventType.SPEAK_TEXT
        assert event.text == "hi"
        assert event.event_id == "x"

    def test_decode_unknown_type(self):
        """Test unknown event types are rejected."""
        with pytest.raises(ValueError):
            AvatarEvent.decode('{"type":"agent.dance"}')

    def test_decode_missing_type(self):
        """Test messages without a type are rejected."""
        with pytest.raises(ValueError):
            AvatarEvent.decode("[]")


class TestSendSpeech:
    """Tests for streaming speech to the avatar."""

    @pytest.mark.asyncio
    async def test_short_audio_single_event(self, fake_transport):
        """Test one second of 24 kHz PCM goes out as one speak plus speak_end."""
        protocol = AvatarEventProtocol(inter_chunk_delay_s=0)
        pcm = b"\x01\x02" * 24000

        event_id = await protocol.send_speech(fake_transport, pcm)

        assert fake_transport.types == ["agent.speak", "agent.speak_end"]
        speak, end = fake_transport.published
        assert base64.b64decode(speak["audio"]) == pcm
        assert speak["event_id"] == end["event_id"] == event_id
        assert "audio" not in end

    @pytest.mark.asyncio
    async def test_long_audio_chunked(self, fake_transport):
        """Test audio encoding to 1,200,000 chars is sent as three chunks."""
        protocol = AvatarEventProtocol(inter_chunk_delay_s=0)
        pcm = b"\x00" * 900_000  # base64 length 1,200,000

        event_id = await protocol.send_speech(fake_transport, pcm)

        assert fake_transport.types == [
            "agent.speak", "agent.speak", "agent.speak", "agent.speak_end",
        ]
        chunks = [m["audio"] for m in fake_transport.published[:3]]
        assert [len(c) for c in chunks] == [500_000, 500_000, 200_000]
        assert base64.b64decode("".join(chunks)) == pcm
        assert {m["event_id"] for m in fake_transport.published} == {event_id}

    @pytest.mark.asyncio
    async def test_threshold_boundary_not_chunked(self, fake_transport):
        """Test audio exactly at the threshold is sent whole."""
        protocol = AvatarEventProtocol(chunk_threshold=8, inter_chunk_delay_s=0)
        await protocol.send_speech(fake_transport, b"\x00" * 6)  # 8 chars
        assert fake_transport.types == ["agent.speak", "agent.speak_end"]

    @pytest.mark.asyncio
    async def test_wav_source_sends_payload_only(self, fake_transport):
        """Test WAV input is stripped to its PCM payload."""
        protocol = AvatarEventProtocol(inter_chunk_delay_s=0)
        pcm = b"\x05\x06" * 50
        await protocol.send_speech(fake_transport, pcm_to_wav(pcm, 24000), source_format="wav")
        assert base64.b64decode(fake_transport.published[0]["audio"]) == pcm

    @pytest.mark.asyncio
    async def test_sample_rate_mismatch_still_sent(self, fake_transport):
        """Test mismatched sample rates are passed through unresampled."""
        protocol = AvatarEventProtocol(inter_chunk_delay_s=0)
        pcm = b"\x00\x01" * 100
        await protocol.send_speech(fake_transport, pcm, sample_rate_hz=16000)
        assert base64.b64decode(fake_transport.published[0]["audio"]) == pcm

    @pytest.mark.asyncio
    async def test_distinct_event_ids(self, fake_transport):
        """Test each utterance gets a new event id."""
        protocol = AvatarEventProtocol(inter_chunk_delay_s=0)
        first = await protocol.send_speech(fake_transport, b"\x00\x00")
        second = await protocol.send_speech(fake_transport, b"\x00\x00")
        assert first != second

    @pytest.mark.asyncio
    async def test_publish_failure(self, fake_transport):
        """Test a failed publish surfaces as TransportError and stops the burst."""
        protocol = AvatarEventProtocol(chunk_threshold=4, inter_chunk_delay_s=0)
        fake_transport.fail_on_publish = 2

        with pytest.raises(TransportError):
            await protocol.send_speech(fake_transport, b"\x00" * 12)
        assert fake_transport.types == ["agent.speak"]

    @pytest.mark.asyncio
    async def test_cancelled_burst_sends_speak_end(self, fake_transport):
        """Test cancelling mid-burst still terminates the utterance."""
        protocol = AvatarEventProtocol(chunk_threshold=4, inter_chunk_delay_s=10)
        task = asyncio.create_task(protocol.send_speech(fake_transport, b"\x00" * 12))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_transport.types == ["agent.speak", "agent.speak_end"]
        speak, speak_end = fake_transport.published
        assert speak_end["event_id"] == speak["event_id"]


class TestControlEvents:
    """Tests for single control events."""

    @pytest.mark.asyncio
    async def test_listening_and_keep_alive(self, fake_transport):
        """Test control events carry fresh event ids."""
        protocol = AvatarEventProtocol()
        start_id = await protocol.start_listening(fake_transport)
        stop_id = await protocol.stop_listening(fake_transport)
        keep_id = await protocol.keep_alive(fake_transport)
        await protocol.send_interrupt(fake_transport)

        assert fake_transport.types == [
            "agent.start_listening",
            "agent.stop_listening",
            "session.keep_alive",
            "agent.interrupt",
        ]
        assert len({start_id, stop_id, keep_id}) == 3
        assert fake_transport.published[0]["event_id"] == start_id

    @pytest.mark.asyncio
    async def test_send_command_with_text(self, fake_transport):
        """Test managed-mode commands carry text."""
        protocol = AvatarEventProtocol()
        await protocol.send_command(fake_transport, AvatarEventType.SPEAK_RESPONSE, text="hello")
        message = fake_transport.published[0]
        assert message["type"] == "avatar.speak_response"
        assert message["text"] == "hello"

    @pytest.mark.asyncio
    async def test_non_transport_error_wrapped(self):
        """Test unexpected publish errors are wrapped in TransportError."""
        from unittest.mock import AsyncMock, MagicMock

        channel = MagicMock()
        channel.publish = AsyncMock(side_effect=ConnectionResetError("reset"))
        with pytest.raises(TransportError, match="agent.interrupt"):
            await AvatarEventProtocol().send_interrupt(channel)

    def test_invalid_threshold(self):
        """Test a non-positive chunk threshold is rejected."""
        with pytest.raises(ValueError):
            AvatarEventProtocol(chunk_threshold=0)
