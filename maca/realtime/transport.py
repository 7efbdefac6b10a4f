"""
Transport Channel Module

Abstraction over the real-time room that connects us to the avatar renderer:
media tracks plus a reliable, ordered data channel for control events.

LiveKitTransport is the production implementation. Tests substitute an
in-memory channel implementing the same interface.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from livekit import rtc

from maca.errors import TransportError
from maca.logger import get_logger
from .events import ConnectionQuality

logger = get_logger(__name__)


@dataclass
class TransportListener:
    """
    Callbacks a transport invokes on connection changes.

    All callbacks are synchronous and invoked on the event loop thread.
    """
    on_connected: Optional[Callable[[], None]] = None
    on_reconnecting: Optional[Callable[[], None]] = None
    on_disconnected: Optional[Callable[[str], None]] = None
    on_stream_ready: Optional[Callable[[bool], None]] = None
    on_connection_quality: Optional[Callable[[ConnectionQuality], None]] = None


class TransportChannel(ABC):
    """Bidirectional real-time connection to the avatar backend."""

    def __init__(self):
        self._listener = TransportListener()

    def set_listener(self, listener: TransportListener) -> None:
        """Register the callbacks for connection notifications."""
        self._listener = listener

    @abstractmethod
    async def connect(self, url: str, token: str) -> None:
        """
        Join the room.

        Raises:
            TransportError: If the connection cannot be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Leave the room. Safe to call when not connected."""
        pass

    @abstractmethod
    async def publish(self, payload: bytes, reliable: bool = True) -> None:
        """
        Publish raw bytes on the data channel.

        Raises:
            TransportError: If not connected or the publish fails
        """
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    async def publish_json(self, message: Dict[str, Any]) -> None:
        """Publish a JSON message (UTF-8) with reliable, ordered delivery."""
        payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
        await self.publish(payload, reliable=True)

    # Notification helpers for implementations

    def _notify_connected(self) -> None:
        if self._listener.on_connected:
            self._listener.on_connected()

    def _notify_reconnecting(self) -> None:
        if self._listener.on_reconnecting:
            self._listener.on_reconnecting()

    def _notify_disconnected(self, reason: str) -> None:
        if self._listener.on_disconnected:
            self._listener.on_disconnected(reason)

    def _notify_stream_ready(self, ready: bool) -> None:
        if self._listener.on_stream_ready:
            self._listener.on_stream_ready(ready)

    def _notify_quality(self, quality: ConnectionQuality) -> None:
        if self._listener.on_connection_quality:
            self._listener.on_connection_quality(quality)


# ============================================================================
# LiveKit
# ============================================================================

_QUALITY_MAP = {
    rtc.ConnectionQuality.QUALITY_EXCELLENT: ConnectionQuality.EXCELLENT,
    rtc.ConnectionQuality.QUALITY_GOOD: ConnectionQuality.GOOD,
    rtc.ConnectionQuality.QUALITY_POOR: ConnectionQuality.POOR,
    rtc.ConnectionQuality.QUALITY_LOST: ConnectionQuality.LOST,
}


class LiveKitTransport(TransportChannel):
    """
    LiveKit room transport.

    The avatar is a remote participant; its subscribed video track marks the
    stream as ready. Control events go out on `topic` with reliable delivery.

    Usage:
        transport = LiveKitTransport(topic="agent-control")
        await transport.connect(credentials.transport_url, credentials.transport_client_token)
        await transport.publish_json({"type": "session.keep_alive", "event_id": "..."})
        await transport.disconnect()
    """

    def __init__(self, topic: str = "agent-control", connect_timeout_s: float = 20.0):
        super().__init__()
        self._topic = topic
        self._connect_timeout_s = connect_timeout_s
        self._room: Optional[rtc.Room] = None
        self._stream_ready = False
        self._closing = False

    async def connect(self, url: str, token: str) -> None:
        if self._room is not None:
            await self.disconnect()

        room = rtc.Room()
        room.on("connection_state_changed", self._on_connection_state_changed)
        room.on("disconnected", self._on_disconnected)
        room.on("track_subscribed", self._on_track_subscribed)
        room.on("track_unsubscribed", self._on_track_unsubscribed)
        room.on("connection_quality_changed", self._on_connection_quality_changed)

        self._room = room
        self._closing = False
        self._stream_ready = False

        logger.info(f"Connecting to LiveKit room at {url}")
        try:
            await asyncio.wait_for(
                room.connect(url, token, options=rtc.RoomOptions(auto_subscribe=True)),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            self._room = None
            raise TransportError(f"LiveKit connect timed out after {self._connect_timeout_s}s") from e
        except Exception as e:
            self._room = None
            raise TransportError(f"LiveKit connect failed: {e}") from e

        logger.info(f"Connected to room {room.name}")
        self._notify_connected()

        # The avatar may already be publishing video when we join
        for participant in room.remote_participants.values():
            for publication in participant.track_publications.values():
                if publication.kind == rtc.TrackKind.KIND_VIDEO and publication.subscribed:
                    self._set_stream_ready(True)

    async def disconnect(self) -> None:
        room = self._room
        if room is None:
            return

        self._closing = True
        self._room = None
        try:
            await room.disconnect()
            logger.info("Disconnected from LiveKit room")
        except Exception as e:
            raise TransportError(f"LiveKit disconnect failed: {e}") from e
        finally:
            self._set_stream_ready(False)

    async def publish(self, payload: bytes, reliable: bool = True) -> None:
        room = self._room
        if room is None or not room.isconnected():
            raise TransportError("Cannot publish: not connected")

        try:
            await room.local_participant.publish_data(
                payload, reliable=reliable, topic=self._topic
            )
        except Exception as e:
            raise TransportError(f"Data publish failed: {e}") from e

    @property
    def is_connected(self) -> bool:
        return self._room is not None and self._room.isconnected()

    @property
    def room(self) -> Optional[rtc.Room]:
        """Underlying room, for attaching media sinks."""
        return self._room

    # ========================================================================
    # Room callbacks
    # ========================================================================

    def _set_stream_ready(self, ready: bool) -> None:
        if ready != self._stream_ready:
            self._stream_ready = ready
            self._notify_stream_ready(ready)

    def _on_connection_state_changed(self, state: Any) -> None:
        logger.debug(f"LiveKit connection state: {state}")
        if state == rtc.ConnectionState.CONN_RECONNECTING:
            self._notify_reconnecting()
        elif state == rtc.ConnectionState.CONN_CONNECTED:
            self._notify_connected()

    def _on_disconnected(self, reason: Any = None) -> None:
        self._set_stream_ready(False)
        if self._closing:
            return
        logger.warning(f"LiveKit room disconnected: {reason}")
        self._room = None
        self._notify_disconnected(str(reason) if reason is not None else "remote disconnect")

    def _on_track_subscribed(self, track: Any, publication: Any, participant: Any) -> None:
        if track.kind == rtc.TrackKind.KIND_VIDEO:
            logger.info(f"Avatar video track subscribed from {participant.identity}")
            self._set_stream_ready(True)

    def _on_track_unsubscribed(self, track: Any, publication: Any, participant: Any) -> None:
        if track.kind == rtc.TrackKind.KIND_VIDEO:
            logger.info(f"Avatar video track unsubscribed from {participant.identity}")
            self._set_stream_ready(False)

    def _on_connection_quality_changed(self, participant: Any, quality: Any) -> None:
        room = self._room
        if room is not None and participant is not room.local_participant:
            return
        self._notify_quality(_QUALITY_MAP.get(quality, ConnectionQuality.UNKNOWN))
