"""
ElevenLabs Speech Module

Speech-to-text and text-to-speech against the ElevenLabs HTTP API.

Usage:
    from maca.core.speech import ElevenLabsSpeech

    speech = ElevenLabsSpeech()
    result = await speech.transcribe(wav_bytes, filename="recording.wav", content_type="audio/wav")
    pcm = await speech.synthesize("Hello", voice="rachel")
"""

from typing import Any, Dict, Optional

import aiohttp

from maca.config import ElevenLabsConfig, settings
from maca.errors import VendorError
from maca.logger import get_logger
from maca.messages import msg
from .vendor import VendorClient

logger = get_logger(__name__)

# Named voices; unknown names fall back to rachel
VOICE_IDS: Dict[str, str] = {
    "rachel": "21m00Tcm4TlvDq8ikWAM",
    "adam": "pNInz6obpgDQGcFmaJgB",
    "antoni": "ErXwobaYiN019PkySvjV",
    "bella": "EXAVITQu4vr4xnSDxMaL",
    "elli": "MF3mGyEYCl7XYWbV9V6O",
    "josh": "TxGEqnHWrfWFTfGW9XjX",
}
DEFAULT_VOICE = "rachel"

VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.75}


def resolve_voice(name: Optional[str]) -> str:
    """Map a voice name to an ElevenLabs voice id."""
    if not name:
        return VOICE_IDS[DEFAULT_VOICE]
    return VOICE_IDS.get(name.lower(), VOICE_IDS[DEFAULT_VOICE])


class ElevenLabsSpeech(VendorClient):
    """
    ElevenLabs STT (scribe) and TTS (multilingual v2, raw PCM output).
    """
    name = "ElevenLabs"

    def __init__(self, config: Optional[ElevenLabsConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(session=session)
        self._config = config or settings.elevenlabs

    def _require_key(self, message_key: str) -> str:
        if not self._config.is_configured:
            raise VendorError(msg(message_key), status=500)
        return self._config.api_key

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "recording.webm",
        content_type: str = "audio/webm",
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Transcribe audio.

        Returns:
            {"text": str, "language": str}

        Raises:
            VendorError: On API failure or empty transcript
        """
        api_key = self._require_key("error.stt_not_configured")
        logger.info(f"STT: {len(audio) / 1024:.1f}KB of {content_type}")

        form = aiohttp.FormData()
        form.add_field("file", audio, filename=filename, content_type=content_type)
        form.add_field("model_id", self._config.stt_model)
        if language:
            form.add_field("language_code", language)

        data = await self._post(
            f"{self._config.api_url.rstrip('/')}/speech-to-text",
            headers={"xi-api-key": api_key},
            data=form,
        )

        text = (data.get("text") or "").strip() if isinstance(data, dict) else ""
        if not text:
            raise VendorError(msg("error.empty_transcript"), status=500)

        logger.info(f"STT: {text[:100]}")
        return {
            "text": text,
            "language": data.get("language_code") or language or "auto-detected",
        }

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        """
        Synthesize speech as 16-bit mono PCM at the configured output rate.

        Text longer than max_tts_chars is truncated.
        """
        api_key = self._require_key("error.tts_not_configured")
        if len(text) > self._config.max_tts_chars:
            logger.warning(f"TTS text truncated from {len(text)} to {self._config.max_tts_chars} chars")
            text = text[:self._config.max_tts_chars]

        voice_id = resolve_voice(voice or self._config.default_voice)
        url = f"{self._config.api_url.rstrip('/')}/text-to-speech/{voice_id}"

        audio = await self._post(
            url,
            expect="bytes",
            params={"output_format": self._config.output_format},
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
            json={
                "text": text,
                "model_id": self._config.tts_model,
                "voice_settings": VOICE_SETTINGS,
            },
        )
        logger.info(f"TTS: {len(audio) / 1024:.1f}KB for {len(text)} chars (voice {voice_id})")
        return audio

    @property
    def sample_rate(self) -> int:
        return self._config.output_sample_rate
