"""
Core Module

Collaborator interfaces, their HTTP adapters, and the vendor clients that
back the collaborator service.
"""

from .providers import (
    AudioClip,
    AvatarMode,
    ConversationMessage,
    Replier,
    SessionCredentials,
    SessionIssuer,
    SynthesizedAudio,
    Synthesizer,
    Transcriber,
    Transcript,
    VisionAnalyzer,
)
from .clients import BackendHttp, HttpCollaborators

__all__ = [
    "AudioClip",
    "AvatarMode",
    "ConversationMessage",
    "Replier",
    "SessionCredentials",
    "SessionIssuer",
    "SynthesizedAudio",
    "Synthesizer",
    "Transcriber",
    "Transcript",
    "VisionAnalyzer",
    "BackendHttp",
    "HttpCollaborators",
]
