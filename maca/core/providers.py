"""
Collaborator Interfaces Module

Narrow adapter interfaces for the external services the pipeline depends on,
plus the data types that cross those boundaries.

Architecture:
- Transcriber: speech-to-text
- Replier: conversational reply generation
- Synthesizer: text-to-speech
- SessionIssuer: avatar session credentials and remote session lifecycle
- VisionAnalyzer: image analysis for visual context

Timeouts and retries are the caller's policy; implementations make one
attempt and raise on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Data Types
# ============================================================================

class AvatarMode(Enum):
    """How the avatar session produces speech."""
    CUSTOM = "CUSTOM"  # We run STT/LLM/TTS and stream audio
    FULL = "FULL"      # Vendor runs its own LLM/TTS

    @classmethod
    def parse(cls, value: str) -> "AvatarMode":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown avatar mode: {value!r} (expected CUSTOM or FULL)")


@dataclass(frozen=True)
class ConversationMessage:
    """
    One message of conversation history.

    Attributes:
        role: "user" or "assistant"
        content: Message text
    """
    role: str
    content: str

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role!r}")

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class AudioClip:
    """
    Audio payload with its declared encoding.

    Attributes:
        data: Raw bytes
        container_format: "webm", "wav" or "pcm"
        sample_rate_hz: Sample rate
        bit_depth: Bits per sample
        mime_type: MIME type used when uploading
    """
    data: bytes
    container_format: str = "wav"
    sample_rate_hz: int = 16000
    bit_depth: int = 16
    mime_type: Optional[str] = None

    @property
    def content_type(self) -> str:
        if self.mime_type:
            return self.mime_type
        return {
            "wav": "audio/wav",
            "webm": "audio/webm",
            "pcm": "audio/pcm",
        }.get(self.container_format, "application/octet-stream")

    @property
    def filename(self) -> str:
        return f"recording.{self.container_format}"

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class Transcript:
    """Speech-to-text result."""
    text: str
    language: Optional[str] = None


@dataclass
class SynthesizedAudio:
    """
    Text-to-speech result.

    Attributes:
        data: Audio bytes
        container_format: "pcm" or "wav"
        sample_rate_hz: Sample rate declared by the synthesizer
        bit_depth: Bits per sample
    """
    data: bytes
    container_format: str = "pcm"
    sample_rate_hz: int = 24000
    bit_depth: int = 16

    @property
    def duration_s(self) -> float:
        """Approximate playback length for mono PCM."""
        bytes_per_second = self.sample_rate_hz * (self.bit_depth // 8)
        return len(self.data) / bytes_per_second if bytes_per_second else 0.0


class SessionCredentials(BaseModel):
    """
    Credentials for one avatar session.

    Serialized with the vendor field names (livekit_url, livekit_client_token).
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: str = Field(min_length=1)
    session_token: str = Field(min_length=1)
    transport_url: str = Field(alias="livekit_url", min_length=1)
    transport_client_token: str = Field(alias="livekit_client_token", min_length=1)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# ============================================================================
# Interfaces
# ============================================================================

class Transcriber(ABC):
    """Speech-to-text collaborator."""

    @abstractmethod
    async def transcribe(self, clip: AudioClip, language: Optional[str] = None) -> Transcript:
        """
        Transcribe an audio clip.

        Raises:
            TranscriptionError: On collaborator failure
        """
        pass


class Replier(ABC):
    """Conversational reply collaborator."""

    @abstractmethod
    async def reply(self, message: str, history: Sequence[ConversationMessage]) -> str:
        """
        Generate a reply to `message` given prior history.

        Raises:
            ReplyError: On collaborator failure
        """
        pass


class Synthesizer(ABC):
    """Text-to-speech collaborator."""

    @abstractmethod
    async def synthesize(self, text: str, voice: Optional[str] = None) -> SynthesizedAudio:
        """
        Synthesize speech.

        Raises:
            SynthesisError: On collaborator failure
        """
        pass


class SessionIssuer(ABC):
    """Issues and manages remote avatar sessions."""

    @abstractmethod
    async def issue(
        self,
        mode: AvatarMode,
        avatar_id: Optional[str] = None,
        voice_id: Optional[str] = None,
    ) -> SessionCredentials:
        """
        Create a session and return its credentials.

        Raises:
            CredentialsError: On failure or incomplete credentials
        """
        pass

    @abstractmethod
    async def stop(self, credentials: SessionCredentials) -> None:
        """Close the remote session."""
        pass

    @abstractmethod
    async def keep_alive(self, credentials: SessionCredentials) -> None:
        """Reset the remote session idle timer."""
        pass


class VisionAnalyzer(ABC):
    """Image analysis collaborator."""

    @abstractmethod
    async def analyze(self, image_b64: str, prompt: Optional[str] = None) -> str:
        """
        Describe an image.

        Raises:
            VisionError: On failure or empty analysis
        """
        pass


def history_to_dicts(history: Sequence[ConversationMessage]) -> List[dict]:
    """Convert history to the {role, content} wire form."""
    return [m.to_dict() for m in history]
