"""
Gemini Vision Module

Short clinical descriptions of camera frames, used as visual context for
the conversation.
"""

import re
from typing import Optional, Tuple

import aiohttp

from maca.config import GeminiConfig, settings
from maca.errors import VendorError
from maca.logger import get_logger
from maca.messages import msg
from .llm import extract_text
from .vendor import VendorClient

logger = get_logger(__name__)

VISION_PROMPT = """You are a medical AI assistant analyzing an image from a patient during a telemedicine consultation.

Analyze this image and describe what you see in a medical context:
1. If you see hands or gestures, describe the gesture or what they might be indicating
2. If you see skin conditions, rashes, or visible symptoms, describe them clearly
3. If you see any objects (medications, medical devices, documents), identify them
4. If you see general body parts or posture, describe any relevant observations

Be concise and clinical. Focus on medically relevant observations.
If nothing medically relevant is visible, simply describe what you see briefly.

Respond in 1-2 sentences, suitable for voice output."""

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


def parse_image_data(image: str) -> Tuple[str, str]:
    """
    Split an optional data URL into (mime_type, base64 payload).

    PNG and WebP are detected from the prefix; anything else is sent as JPEG.
    """
    if image.startswith("data:image/png"):
        mime_type = "image/png"
    elif image.startswith("data:image/webp"):
        mime_type = "image/webp"
    else:
        mime_type = "image/jpeg"
    return mime_type, _DATA_URL_PREFIX.sub("", image, count=1)


class GeminiVision(VendorClient):
    """Image analysis with inline image data."""
    name = "Gemini Vision"

    def __init__(self, config: Optional[GeminiConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(session=session)
        self._config = config or settings.gemini

    async def analyze(self, image: str, prompt: Optional[str] = None) -> str:
        if not self._config.is_configured:
            raise VendorError(msg("error.vision_not_configured"), status=500)

        mime_type, data = parse_image_data(image)
        body = {
            "contents": [{
                "parts": [
                    {"inline_data": {"mime_type": mime_type, "data": data}},
                    {"text": prompt or VISION_PROMPT},
                ],
            }],
            "generationConfig": {
                "temperature": self._config.vision_temperature,
                "maxOutputTokens": self._config.vision_max_tokens,
            },
        }
        logger.info(f"Vision: analyzing {mime_type} image with {self._config.vision_model}")

        result = await self._post(
            self._config.model_url(self._config.vision_model),
            params={"key": self._config.api_key},
            json=body,
        )

        text = extract_text(result) if isinstance(result, dict) else ""
        if not text:
            raise VendorError(msg("error.empty_analysis"), status=500)
        return text

    @property
    def model(self) -> str:
        return self._config.vision_model
