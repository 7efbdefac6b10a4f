"""
Tests for the LiveKit Transport

The LiveKit room is replaced by a mock; room callbacks are invoked by hand.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from livekit import rtc

from maca.errors import TransportError
from maca.realtime.events import ConnectionQuality
from maca.realtime.transport import LiveKitTransport, TransportListener


@pytest.fixture
def room():
    room = MagicMock()
    room.connect = AsyncMock()
    room.disconnect = AsyncMock()
    room.isconnected.return_value = True
    room.local_participant.publish_data = AsyncMock()
    room.remote_participants = {}
    room.name = "avatar-room"

    handlers = {}
    room.on.side_effect = lambda event, handler: handlers.__setitem__(event, handler)
    room.handlers = handlers
    return room


@pytest.fixture
def listener():
    return TransportListener(
        on_connected=MagicMock(),
        on_reconnecting=MagicMock(),
        on_disconnected=MagicMock(),
        on_stream_ready=MagicMock(),
        on_connection_quality=MagicMock(),
    )


@pytest.fixture
def transport(room, listener):
    transport = LiveKitTransport(topic="agent-control", connect_timeout_s=1)
    transport.set_listener(listener)
    with patch("maca.realtime.transport.rtc.Room", return_value=room):
        yield transport


def video_track():
    track = MagicMock()
    track.kind = rtc.TrackKind.KIND_VIDEO
    return track


class TestLiveKitTransport:
    """Tests for LiveKitTransport."""

    @pytest.mark.asyncio
    async def test_connect_and_publish(self, transport, room, listener):
        """Test connect notifies and publishes go out on the topic reliably."""
        await transport.connect("wss://lk", "tok")

        room.connect.assert_awaited_once()
        assert room.connect.await_args.args[:2] == ("wss://lk", "tok")
        listener.on_connected.assert_called_once()
        assert transport.is_connected is True

        await transport.publish_json({"type": "agent.interrupt"})
        room.local_participant.publish_data.assert_awaited_once_with(
            b'{"type":"agent.interrupt"}', reliable=True, topic="agent-control"
        )

    @pytest.mark.asyncio
    async def test_connect_failure(self, transport, room):
        """Test connect errors surface as TransportError."""
        room.connect.side_effect = RuntimeError("invalid token")
        with pytest.raises(TransportError, match="invalid token"):
            await transport.connect("wss://lk", "bad")
        assert transport.is_connected is False

    @pytest.mark.asyncio
    async def test_publish_when_disconnected(self, transport):
        """Test publishing without a room raises TransportError."""
        with pytest.raises(TransportError):
            await transport.publish(b"{}")

    @pytest.mark.asyncio
    async def test_stream_ready_from_video_track(self, transport, room, listener):
        """Test a subscribed video track marks the stream ready."""
        await transport.connect("wss://lk", "tok")
        participant = MagicMock(identity="avatar")

        room.handlers["track_subscribed"](video_track(), MagicMock(), participant)
        room.handlers["track_subscribed"](video_track(), MagicMock(), participant)
        listener.on_stream_ready.assert_called_once_with(True)

        room.handlers["track_unsubscribed"](video_track(), MagicMock(), participant)
        listener.on_stream_ready.assert_called_with(False)

    @pytest.mark.asyncio
    async def test_remote_disconnect_notifies(self, transport, room, listener):
        """Test an unexpected room disconnect is reported."""
        await transport.connect("wss://lk", "tok")
        room.handlers["disconnected"]("SERVER_SHUTDOWN")
        listener.on_disconnected.assert_called_once_with("SERVER_SHUTDOWN")
        assert transport.is_connected is False

    @pytest.mark.asyncio
    async def test_own_disconnect_silent(self, transport, room, listener):
        """Test a deliberate disconnect does not report a remote disconnect."""
        await transport.connect("wss://lk", "tok")
        await transport.disconnect()
        room.handlers["disconnected"]("CLIENT_INITIATED")

        room.disconnect.assert_awaited_once()
        listener.on_disconnected.assert_not_called()
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_local_quality_only(self, transport, room, listener):
        """Test only the local participant's quality is relayed."""
        await transport.connect("wss://lk", "tok")
        room.handlers["connection_quality_changed"](MagicMock(), rtc.ConnectionQuality.QUALITY_POOR)
        listener.on_connection_quality.assert_not_called()

        room.handlers["connection_quality_changed"](
            room.local_participant, rtc.ConnectionQuality.QUALITY_GOOD
        )
        listener.on_connection_quality.assert_called_once_with(ConnectionQuality.GOOD)

    @pytest.mark.asyncio
    async def test_reconnecting(self, transport, room, listener):
        """Test reconnecting state is relayed."""
        await transport.connect("wss://lk", "tok")
        room.handlers["connection_state_changed"](rtc.ConnectionState.CONN_RECONNECTING)
        listener.on_reconnecting.assert_called_once()
