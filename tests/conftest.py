"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment before maca.config is imported
os.environ["APP_ENV"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ELEVENLABS_API_KEY"] = "test-elevenlabs-key"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"
os.environ["LIVEAVATAR_API_KEY"] = "test-liveavatar-key"
os.environ["LIVEAVATAR_AVATAR_ID"] = "avatar-test"
os.environ["MACA_BACKEND_URL"] = "http://collaborators.test"

from maca.core.providers import (  # noqa: E402
    AvatarMode,
    Replier,
    SessionCredentials,
    SessionIssuer,
    SynthesizedAudio,
    Synthesizer,
    Transcriber,
    Transcript,
    VisionAnalyzer,
)
from maca.errors import TransportError  # noqa: E402
from maca.realtime.audio_codec import pcm_to_wav  # noqa: E402
from maca.realtime.transport import TransportChannel  # noqa: E402


class FakeTransport(TransportChannel):
    """
    In-memory transport recording every published message.

    Set `fail_on_publish` to the (1-based) publish call that should raise,
    or `fail_connect` to make connect() raise.
    """

    def __init__(self):
        super().__init__()
        self.connected = False
        self.published: List[Dict[str, Any]] = []
        self.connect_calls: List[tuple] = []
        self.disconnect_calls = 0
        self.fail_on_publish: Optional[int] = None
        self.fail_connect: Optional[Exception] = None
        self.ready_on_connect = False
        self._publish_calls = 0

    async def connect(self, url: str, token: str) -> None:
        self.connect_calls.append((url, token))
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True
        self._notify_connected()
        if self.ready_on_connect:
            self._notify_stream_ready(True)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def publish(self, payload: bytes, reliable: bool = True) -> None:
        self._publish_calls += 1
        if self.fail_on_publish is not None and self._publish_calls >= self.fail_on_publish:
            raise TransportError("data channel closed")
        self.published.append(json.loads(payload.decode("utf-8")))

    @property
    def is_connected(self) -> bool:
        return self.connected

    # Simulate room notifications
    def emit_stream_ready(self, ready: bool) -> None:
        self._notify_stream_ready(ready)

    def emit_disconnected(self, reason: str = "remote") -> None:
        self.connected = False
        self._notify_disconnected(reason)

    def emit_reconnecting(self) -> None:
        self._notify_reconnecting()

    def emit_quality(self, quality) -> None:
        self._notify_quality(quality)

    @property
    def types(self) -> List[str]:
        return [m["type"] for m in self.published]


def make_credentials(**overrides) -> SessionCredentials:
    values = {
        "session_id": "sess-1",
        "session_token": "tok-1",
        "livekit_url": "wss://room.test",
        "livekit_client_token": "client-tok",
    }
    values.update(overrides)
    return SessionCredentials(**values)


def make_wav(num_samples: int = 1600, sample_rate: int = 16000) -> bytes:
    """Build a mono 16-bit WAV of silence."""
    return pcm_to_wav(b"\x00\x00" * num_samples, sample_rate)


@pytest.fixture
def fake_transport():
    """Connected-capable in-memory transport."""
    return FakeTransport()


@pytest.fixture
def credentials():
    return make_credentials()


@pytest.fixture
def mock_transcriber():
    transcriber = AsyncMock(spec=Transcriber)
    transcriber.transcribe.return_value = Transcript(text="I have a headache", language="en")
    return transcriber


@pytest.fixture
def mock_replier():
    replier = AsyncMock(spec=Replier)
    replier.reply.return_value = "I'm sorry to hear that. How long has it lasted?"
    return replier


@pytest.fixture
def mock_synthesizer():
    synthesizer = AsyncMock(spec=Synthesizer)
    # One second of 24 kHz 16-bit mono audio
    synthesizer.synthesize.return_value = SynthesizedAudio(
        data=b"\x01\x02" * 24000, container_format="pcm", sample_rate_hz=24000
    )
    return synthesizer


@pytest.fixture
def mock_vision():
    vision = AsyncMock(spec=VisionAnalyzer)
    vision.analyze.return_value = "A person holding their forehead."
    return vision


@pytest.fixture
def mock_issuer(credentials):
    issuer = AsyncMock(spec=SessionIssuer)
    issuer.issue.return_value = credentials
    return issuer


@pytest.fixture
def custom_mode():
    return AvatarMode.CUSTOM
