"""
Avatar Event Protocol

Encodes the JSON control vocabulary sent to the avatar renderer over the
transport's reliable data channel, and streams synthesized speech as
`agent.speak` events.

Wire format (field names are fixed for renderer interop):
    {"type": "agent.speak", "audio": "<base64 pcm>", "event_id": "..."}
    {"type": "agent.speak_end", "event_id": "..."}
    {"type": "agent.interrupt"}
    {"type": "agent.start_listening", "event_id": "..."}
    {"type": "agent.stop_listening", "event_id": "..."}
    {"type": "session.keep_alive", "event_id": "..."}

Managed (FULL) sessions accept text commands instead of audio:
    {"type": "avatar.speak_text", "text": "...", "event_id": "..."}
    {"type": "avatar.speak_response", "text": "...", "event_id": "..."}
"""

import asyncio
import json
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from maca.errors import TransportError
from maca.logger import get_logger
from . import audio_codec
from .transport import TransportChannel

logger = get_logger(__name__)

DEFAULT_CHUNK_THRESHOLD = 500_000
DEFAULT_INTER_CHUNK_DELAY_S = 0.04
DEFAULT_RENDERER_SAMPLE_RATE = 24000


class AvatarEventType(Enum):
    """Event types understood by the avatar renderer."""
    SPEAK = "agent.speak"
    SPEAK_END = "agent.speak_end"
    INTERRUPT = "agent.interrupt"
    START_LISTENING = "agent.start_listening"
    STOP_LISTENING = "agent.stop_listening"
    KEEP_ALIVE = "session.keep_alive"
    # Managed mode commands
    SPEAK_TEXT = "avatar.speak_text"
    SPEAK_RESPONSE = "avatar.speak_response"
    MANAGED_INTERRUPT = "avatar.interrupt"
    MANAGED_START_LISTENING = "avatar.start_listening"
    MANAGED_STOP_LISTENING = "avatar.stop_listening"


@dataclass(frozen=True)
class AvatarEvent:
    """One control event on the data channel."""
    type: AvatarEventType
    event_id: Optional[str] = None
    audio: Optional[str] = None
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": self.type.value}
        if self.audio is not None:
            message["audio"] = self.audio
        if self.text is not None:
            message["text"] = self.text
        if self.event_id is not None:
            message["event_id"] = self.event_id
        return message

    def encode(self) -> bytes:
        """Serialize to UTF-8 JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, payload: Union[bytes, str]) -> "AvatarEvent":
        """
        Parse a wire message.

        Raises:
            ValueError: If the payload is not a known event
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
        if not isinstance(data, dict) or "type" not in data:
            raise ValueError("Avatar event must be an object with a 'type' field")
        return cls(
            type=AvatarEventType(data["type"]),
            event_id=data.get("event_id"),
            audio=data.get("audio"),
            text=data.get("text"),
        )


def new_event_id() -> str:
    """Generate a unique event id."""
    return uuid.uuid4().hex


class AvatarEventProtocol:
    """
    Stateless translator from intents to avatar wire events.

    Shared by the conversation pipeline and the session controller. Publish
    failures surface as TransportError; nothing is retried here.

    Usage:
        protocol = AvatarEventProtocol()
        await protocol.start_listening(channel)
        await protocol.send_speech(channel, pcm_bytes, source_format="pcm", sample_rate_hz=24000)
        await protocol.stop_listening(channel)
    """

    def __init__(
        self,
        chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD,
        inter_chunk_delay_s: float = DEFAULT_INTER_CHUNK_DELAY_S,
        renderer_sample_rate: int = DEFAULT_RENDERER_SAMPLE_RATE,
    ):
        if chunk_threshold <= 0:
            raise ValueError("chunk_threshold must be positive")
        self.chunk_threshold = chunk_threshold
        self.inter_chunk_delay_s = inter_chunk_delay_s
        self.renderer_sample_rate = renderer_sample_rate

    async def _publish(self, channel: TransportChannel, event: AvatarEvent) -> None:
        try:
            await channel.publish(event.encode(), reliable=True)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Failed to publish {event.type.value}: {e}") from e

    async def send_speech(
        self,
        channel: TransportChannel,
        audio: bytes,
        source_format: str = "pcm",
        sample_rate_hz: int = DEFAULT_RENDERER_SAMPLE_RATE,
    ) -> str:
        """
        Stream audio to the avatar as speak events followed by one speak_end.

        Args:
            channel: Connected transport
            audio: Raw 16-bit PCM, or a WAV container when source_format is "wav"
            source_format: "pcm" or "wav"
            sample_rate_hz: Sample rate of the audio (not resampled)

        Returns:
            The event id shared by every event of this utterance
        """
        if source_format == "wav":
            audio = audio_codec.extract_pcm_from_wav(audio)

        if sample_rate_hz != self.renderer_sample_rate:
            logger.warning(
                f"Audio is {sample_rate_hz} Hz but the renderer expects "
                f"{self.renderer_sample_rate} Hz; sending without resampling"
            )

        event_id = new_event_id()
        encoded = audio_codec.to_base64(audio)

        try:
            if len(encoded) > self.chunk_threshold:
                chunks = audio_codec.chunk(encoded, self.chunk_threshold)
                logger.debug(f"Sending {len(encoded)} chars of audio in {len(chunks)} chunks")
                for index, part in enumerate(chunks):
                    if index > 0 and self.inter_chunk_delay_s > 0:
                        await asyncio.sleep(self.inter_chunk_delay_s)
                    await self._publish(
                        channel, AvatarEvent(AvatarEventType.SPEAK, event_id=event_id, audio=part)
                    )
            else:
                logger.debug(f"Sending {len(encoded)} chars of audio in one event")
                await self._publish(
                    channel, AvatarEvent(AvatarEventType.SPEAK, event_id=event_id, audio=encoded)
                )
        except asyncio.CancelledError:
            # A partial utterance still needs its terminator
            await self._close_utterance(channel, event_id)
            raise

        await self._publish(channel, AvatarEvent(AvatarEventType.SPEAK_END, event_id=event_id))
        return event_id

    async def _close_utterance(self, channel: TransportChannel, event_id: str) -> None:
        logger.warning(f"Speech {event_id} cancelled mid-burst, sending speak_end")
        try:
            await self._publish(channel, AvatarEvent(AvatarEventType.SPEAK_END, event_id=event_id))
        except TransportError as e:
            logger.warning(f"speak_end after cancelled speech failed: {e}")

    async def send_interrupt(self, channel: TransportChannel) -> None:
        await self._publish(channel, AvatarEvent(AvatarEventType.INTERRUPT))

    async def start_listening(self, channel: TransportChannel) -> str:
        event_id = new_event_id()
        await self._publish(channel, AvatarEvent(AvatarEventType.START_LISTENING, event_id=event_id))
        return event_id

    async def stop_listening(self, channel: TransportChannel) -> str:
        event_id = new_event_id()
        await self._publish(channel, AvatarEvent(AvatarEventType.STOP_LISTENING, event_id=event_id))
        return event_id

    async def keep_alive(self, channel: TransportChannel) -> str:
        """Send session.keep_alive. The caller owns the timer."""
        event_id = new_event_id()
        await self._publish(channel, AvatarEvent(AvatarEventType.KEEP_ALIVE, event_id=event_id))
        return event_id

    async def send_command(
        self,
        channel: TransportChannel,
        event_type: AvatarEventType,
        text: Optional[str] = None,
    ) -> str:
        """Send a managed-mode command, optionally carrying text."""
        event_id = new_event_id()
        await self._publish(channel, AvatarEvent(event_type, event_id=event_id, text=text))
        return event_id
