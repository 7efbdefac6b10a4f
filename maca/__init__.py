"""
MACA Avatar Pipeline - Source Package

Voice/video AI-avatar conversation pipeline for MACA (Multimodal Assistant
for Clinical Analysis).

This package provides:
- Speech-to-text, reply generation and speech synthesis via HTTP collaborators
- Streaming of synthesized audio to a remote talking-avatar renderer
- Avatar session lifecycle over a LiveKit real-time room
- Push-to-talk microphone capture
- CLI and collaborator HTTP service
"""

__version__ = "1.0.0"

from maca.config import settings

__all__ = ["settings", "__version__"]
