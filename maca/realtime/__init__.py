"""
Real-Time Avatar Conversation Module

Architecture:
- Event Bus: Typed pipeline and session events
- Audio Codec: base64, WAV parsing and chunking
- Transport: LiveKit room with a reliable data channel
- Avatar Protocol: agent.* / session.* control events
- Session Controller: Avatar session lifecycle (custom and managed modes)
- Conversation Pipeline: STT -> LLM -> TTS -> avatar turns
- Recording Controller: Push-to-talk microphone capture
- Avatar Agent: Everything above wired together

Usage:
    from maca.realtime import AvatarAgent

    agent = AvatarAgent()
    await agent.start()
"""

from .events import (
    Event,
    EventBus,
    Subscription,
    PipelineStage,
    StageStarted,
    StageCompleted,
    TurnCompleted,
    TurnRejected,
    PipelineFailed,
    SessionState,
    SessionStateChanged,
    StreamReadyChanged,
    ConnectionQuality,
    ConnectionQualityChanged,
)
from .audio_codec import ChunkSequence, chunk, extract_pcm_from_wav, from_base64, to_base64
from .transport import LiveKitTransport, TransportChannel, TransportListener
from .avatar_protocol import AvatarEvent, AvatarEventProtocol, AvatarEventType
from .session_controller import (
    CustomModeStrategy,
    ManagedModeStrategy,
    ModeStrategy,
    SessionController,
)
from .conversation_pipeline import (
    ConversationConfig,
    ConversationHistory,
    ConversationPipeline,
    TurnResult,
)
from .recording import RecordingController
from .avatar_agent import AvatarAgent, AvatarAgentConfig

__all__ = [
    # Events
    "Event",
    "EventBus",
    "Subscription",
    "PipelineStage",
    "StageStarted",
    "StageCompleted",
    "TurnCompleted",
    "TurnRejected",
    "PipelineFailed",
    "SessionState",
    "SessionStateChanged",
    "StreamReadyChanged",
    "ConnectionQuality",
    "ConnectionQualityChanged",
    # Codec
    "ChunkSequence",
    "chunk",
    "extract_pcm_from_wav",
    "from_base64",
    "to_base64",
    # Transport / protocol
    "LiveKitTransport",
    "TransportChannel",
    "TransportListener",
    "AvatarEvent",
    "AvatarEventProtocol",
    "AvatarEventType",
    # Session
    "CustomModeStrategy",
    "ManagedModeStrategy",
    "ModeStrategy",
    "SessionController",
    # Pipeline
    "ConversationConfig",
    "ConversationHistory",
    "ConversationPipeline",
    "TurnResult",
    # Capture / agent
    "RecordingController",
    "AvatarAgent",
    "AvatarAgentConfig",
]
