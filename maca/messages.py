"""Status and error text shown to users.

Stage names map onto short status lines for a CLI or UI status bar.
"""

from __future__ import annotations

_MESSAGES: dict[str, str] = {
    "status.ready": "Ready",
    "status.listening": "Listening...",
    "status.processing": "Processing...",
    "status.transcribing": "Transcribing...",
    "status.thinking": "Thinking...",
    "status.synthesizing": "Converting to speech...",
    "status.delivering": "Sending to avatar...",
    "status.error": "Error occurred",
    "session.inactive": "Avatar offline",
    "session.connecting": "Connecting to avatar...",
    "session.loading": "Loading avatar stream...",
    "session.active": "Avatar connected",
    "session.disconnected": "Avatar disconnected",
    "session.error": "Avatar session error",
    "error.stt_not_configured": "Speech-to-text service is not configured.",
    "error.tts_not_configured": "Text-to-speech service is not configured.",
    "error.llm_not_configured": "Chat service is not configured.",
    "error.vision_not_configured": "Vision service is not configured.",
    "error.session_not_configured": "Avatar session service is not configured.",
    "error.empty_transcript": "No speech detected in the audio.",
    "error.empty_reply": "No response generated.",
    "error.empty_analysis": "No analysis generated.",
    "error.missing_audio": "No audio file provided.",
    "error.missing_text": "Text is required.",
    "error.missing_image": "Image data is required.",
    "error.missing_message": "Message is required.",
    "error.rate_limited": "Too many requests. Please try again later.",
    "error.service_not_ready": "Service is starting up. Please try again in a moment.",
    "memory.cleared": "Conversation cleared.",
}

# Seconds an error status stays up before reverting to ready
ERROR_STATUS_HOLD_S = 2.0


def msg(key: str) -> str:
    """Return a message by key, or the key itself if not found."""
    return _MESSAGES.get(key, key)


def stage_status(stage: str) -> str:
    """Status line for a pipeline stage name (e.g. "thinking")."""
    return msg(f"status.{stage}")
