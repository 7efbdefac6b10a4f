"""
Error Types

Exceptions raised across the avatar pipeline. Stage errors carry the stage
that failed so observers can report it without parsing messages.
"""

from typing import Optional


class MacaError(Exception):
    """Base class for all pipeline errors."""


# ============================================================================
# Conversation Pipeline
# ============================================================================

class PipelineError(MacaError):
    """A conversation turn failed at a specific stage."""
    stage: str = "pipeline"

    def __init__(self, message: str = "", stage: Optional[str] = None):
        super().__init__(message or f"{stage or self.stage} failed")
        if stage is not None:
            self.stage = stage


class TranscriptionError(PipelineError):
    """Speech-to-text failed or returned an empty transcript."""
    stage = "transcribing"


class ReplyError(PipelineError):
    """The language model failed or returned an empty reply."""
    stage = "thinking"


class SynthesisError(PipelineError):
    """Text-to-speech failed or returned no audio."""
    stage = "synthesizing"


class DeliveryError(PipelineError):
    """Audio could not be delivered to the avatar."""
    stage = "delivering"


# ============================================================================
# Transport / Session
# ============================================================================

class TransportError(MacaError):
    """Connecting to or publishing on the real-time room failed."""


class SessionLifecycleError(MacaError):
    """A session operation was called in the wrong state."""


class NotInitialized(SessionLifecycleError):
    """start_session() was called before credentials were issued."""


class AlreadyInitializing(SessionLifecycleError):
    """start_session() was called while a previous start is still resolving."""


class CredentialsError(SessionLifecycleError):
    """The session issuer failed or returned incomplete credentials."""


# ============================================================================
# Capture / Side channels
# ============================================================================

class MicrophoneAccessError(MacaError):
    """No input device, permission denied or the audio backend failed."""


class VisionError(MacaError):
    """Image analysis failed or returned no text."""


class DecodeError(MacaError, ValueError):
    """Malformed base64 input."""


class MalformedContainer(UserWarning):
    """A WAV buffer could not be parsed; the raw bytes were used instead."""


# ============================================================================
# Vendor calls (collaborator service)
# ============================================================================

class VendorError(MacaError):
    """
    A vendor API call failed.

    Attributes:
        status: HTTP status to report to our own caller
        detail: Human readable detail
    """

    def __init__(self, detail: str, status: int = 502):
        super().__init__(detail)
        self.status = status
        self.detail = detail
