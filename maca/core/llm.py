"""
Gemini Chat Module

Conversational replies from Gemini generateContent with the MACA clinical
system prompt.

Usage:
    from maca.core.llm import GeminiChat

    chat = GeminiChat()
    reply = await chat.reply("I have a headache", history=[])
"""

from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from maca.config import GeminiConfig, settings
from maca.errors import VendorError
from maca.logger import get_logger
from maca.messages import msg
from .vendor import VendorClient

logger = get_logger(__name__)


SYSTEM_PROMPT = """You are MACA (Multimodal Assistant for Clinical Analysis), a knowledgeable medical AI assistant.

LANGUAGE SUPPORT:
You understand and respond in multiple languages including:
- English
- Yoruba
- Igbo
- Hausa
- Pidgin

Detect the language from the user's input and respond in that same language to ensure clear communication.

Your role is to:
- Listen carefully to patient symptoms
- Ask relevant clarifying questions
- Analyze symptoms and provide potential diagnoses
- Explain the diagnosed condition in clear, understandable terms
- Recommend the appropriate type of medical specialist to consult

EMERGENCY FIRST-AID EXCEPTION:
If the situation is life-threatening or an emergency requiring immediate action before professional help arrives, you MAY provide first-aid instructions and emergency medication guidance to sustain life (e.g., CPR, stopping bleeding, EpiPen for anaphylaxis, aspirin for heart attack). ALWAYS instruct to call emergency services immediately.

STANDARD LIMITATIONS (Non-Emergency):
- You CAN provide diagnoses based on symptoms
- You do NOT recommend treatments or medications for non-emergency conditions
- You do NOT prescribe anything for chronic or non-urgent conditions
- You ALWAYS advise consulting a licensed medical practitioner for treatment
- You specify WHICH TYPE of practitioner based on the diagnosis

Maintain a professional, empathetic, and helpful tone in all languages. Clearly distinguish between life-threatening emergencies and standard medical consultations.

Your replies are spoken aloud by an avatar: keep them conversational and avoid markdown."""


def to_gemini_contents(history: Sequence[Dict[str, str]], message: str) -> List[Dict[str, Any]]:
    """Map {role, content} history plus the new message to Gemini contents."""
    contents = [
        {
            "role": "model" if item.get("role") == "assistant" else "user",
            "parts": [{"text": item.get("content", "")}],
        }
        for item in history
    ]
    contents.append({"role": "user", "parts": [{"text": message}]})
    return contents


def extract_text(data: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts).strip()


class GeminiChat(VendorClient):
    """Gemini chat completion with conversation history."""
    name = "Gemini"

    def __init__(
        self,
        config: Optional[GeminiConfig] = None,
        system_prompt: str = SYSTEM_PROMPT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(session=session)
        self._config = config or settings.gemini
        self._system_prompt = system_prompt

    async def reply(self, message: str, history: Sequence[Dict[str, str]] = ()) -> str:
        """
        Generate the assistant's reply.

        Raises:
            VendorError: On API failure or empty reply
        """
        if not self._config.is_configured:
            raise VendorError(msg("error.llm_not_configured"), status=500)

        body = {
            "system_instruction": {"parts": [{"text": self._system_prompt}]},
            "contents": to_gemini_contents(history, message),
            "generationConfig": {"temperature": self._config.temperature},
        }
        logger.debug(f"Chat: {len(history)} history messages, message {len(message)} chars")

        data = await self._post(
            self._config.model_url(self._config.chat_model),
            params={"key": self._config.api_key},
            json=body,
        )

        text = extract_text(data) if isinstance(data, dict) else ""
        if not text:
            raise VendorError(msg("error.empty_reply"), status=500)
        return text
