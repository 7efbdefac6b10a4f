"""
Configuration Management Module

All application configuration comes from environment variables with sensible
defaults. Values are loaded from a .env file (if present) and can be overridden
by system environment variables.

Usage:
    from maca.config import settings
    print(settings.liveavatar.avatar_id)
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def get_env(key: str, default: str = "", required: bool = False) -> str:
    """
    Get an environment variable with optional default and validation.

    Args:
        key: The environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        The environment variable value or default

    Raises:
        ValueError: If required=True and the variable is not set
    """
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get an environment variable as integer."""
    return int(get_env(key, str(default)))


def get_env_float(key: str, default: float) -> float:
    """Get an environment variable as float."""
    return float(get_env(key, str(default)))


def get_env_bool(key: str, default: bool) -> bool:
    """Get an environment variable as boolean."""
    value = get_env(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def get_env_list(key: str, default: str = "") -> List[str]:
    """Get a comma separated environment variable as a list."""
    return [item.strip() for item in get_env(key, default).split(",") if item.strip()]


@dataclass
class ElevenLabsConfig:
    """
    ElevenLabs speech configuration (speech-to-text and text-to-speech).

    Attributes:
        api_key: ElevenLabs API key
        api_url: Base URL of the ElevenLabs API
        stt_model: Model used for transcription
        tts_model: Model used for synthesis
        default_voice: Named voice used when a request does not pick one
        output_format: Synthesis output format (raw 16-bit PCM at 24 kHz)
        max_tts_chars: Longer texts are truncated before synthesis
    """
    api_key: str = field(default_factory=lambda: get_env("ELEVENLABS_API_KEY").strip())
    api_url: str = field(default_factory=lambda: get_env("ELEVENLABS_API_URL", "https://api.elevenlabs.io/v1"))
    stt_model: str = field(default_factory=lambda: get_env("ELEVENLABS_STT_MODEL", "scribe_v1"))
    tts_model: str = field(default_factory=lambda: get_env("ELEVENLABS_TTS_MODEL", "eleven_multilingual_v2"))
    default_voice: str = field(default_factory=lambda: get_env("ELEVENLABS_VOICE", "rachel"))
    output_format: str = field(default_factory=lambda: get_env("ELEVENLABS_OUTPUT_FORMAT", "pcm_24000"))
    max_tts_chars: int = field(default_factory=lambda: get_env_int("ELEVENLABS_MAX_TTS_CHARS", 2500))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def output_sample_rate(self) -> int:
        """Sample rate encoded in the output format name (pcm_24000 -> 24000)."""
        try:
            return int(self.output_format.rsplit("_", 1)[-1])
        except ValueError:
            return 24000

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("ELEVENLABS_API_KEY is required")
        return True


@dataclass
class GeminiConfig:
    """
    Gemini configuration for chat replies and image analysis.

    Attributes:
        api_key: Gemini API key
        api_url: Base URL of the Generative Language API
        chat_model: Model used for conversation replies
        vision_model: Model used for image analysis
        temperature: Sampling temperature for replies
        vision_temperature: Sampling temperature for image analysis
        vision_max_tokens: Output token cap for image analysis
    """
    api_key: str = field(default_factory=lambda: get_env("GEMINI_API_KEY").strip())
    api_url: str = field(default_factory=lambda: get_env(
        "GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta"
    ))
    chat_model: str = field(default_factory=lambda: get_env("GEMINI_CHAT_MODEL", "gemini-1.5-pro"))
    vision_model: str = field(default_factory=lambda: get_env(
        "GEMINI_VISION_MODEL", "gemini-2.5-flash-preview-05-20"
    ))
    temperature: float = field(default_factory=lambda: get_env_float("GEMINI_TEMPERATURE", 0.7))
    vision_temperature: float = field(default_factory=lambda: get_env_float("GEMINI_VISION_TEMPERATURE", 0.4))
    vision_max_tokens: int = field(default_factory=lambda: get_env_int("GEMINI_VISION_MAX_TOKENS", 150))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def model_url(self, model: str) -> str:
        """Get the generateContent URL for a model."""
        base = self.api_url.rstrip("/")
        return f"{base}/models/{model}:generateContent"

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY is required")
        return True


@dataclass
class LiveAvatarConfig:
    """
    LiveAvatar session configuration.

    Attributes:
        api_key: LiveAvatar API key (whitespace stripped)
        api_url: Base URL of the LiveAvatar API
        avatar_id: Avatar to render
        voice_id: Voice used by the vendor in managed mode
        mode: CUSTOM (we stream audio) or FULL (vendor-managed conversation)
        data_topic: LiveKit data topic carrying avatar control events
        renderer_sample_rate: PCM sample rate the renderer expects
    """
    api_key: str = field(default_factory=lambda: "".join(get_env("LIVEAVATAR_API_KEY").split()))
    api_url: str = field(default_factory=lambda: get_env("LIVEAVATAR_API_URL", "https://api.liveavatar.com/v1"))
    avatar_id: str = field(default_factory=lambda: get_env("LIVEAVATAR_AVATAR_ID"))
    voice_id: str = field(default_factory=lambda: get_env("LIVEAVATAR_VOICE_ID"))
    mode: str = field(default_factory=lambda: get_env("LIVEAVATAR_MODE", "CUSTOM").upper())
    data_topic: str = field(default_factory=lambda: get_env("LIVEAVATAR_DATA_TOPIC", "agent-control"))
    renderer_sample_rate: int = field(default_factory=lambda: get_env_int("LIVEAVATAR_SAMPLE_RATE", 24000))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.avatar_id)

    def endpoint(self, path: str) -> str:
        """Get the full URL for a sessions endpoint."""
        return f"{self.api_url.rstrip('/')}/sessions/{path.lstrip('/')}"

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("LIVEAVATAR_API_KEY is required")
        if not self.avatar_id:
            raise ValueError("LIVEAVATAR_AVATAR_ID is required")
        if self.mode not in ("CUSTOM", "FULL"):
            raise ValueError("LIVEAVATAR_MODE must be CUSTOM or FULL")
        return True


@dataclass
class BackendConfig:
    """
    Where the client-side pipeline reaches its collaborators.

    Attributes:
        base_url: Base URL of the collaborator service (api_server.py)
        connect_timeout_s: HTTP connect timeout
        read_timeout_s: HTTP total timeout per request
    """
    base_url: str = field(default_factory=lambda: get_env("MACA_BACKEND_URL", "http://localhost:8000"))
    connect_timeout_s: float = field(default_factory=lambda: get_env_float("MACA_BACKEND_CONNECT_TIMEOUT", 10.0))
    read_timeout_s: float = field(default_factory=lambda: get_env_float("MACA_BACKEND_READ_TIMEOUT", 60.0))

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass
class PipelineConfig:
    """
    Conversation pipeline configuration.

    Attributes:
        stt_timeout_s: Transcription stage timeout
        llm_timeout_s: Reply stage timeout
        tts_timeout_s: Synthesis stage timeout
        delivery_timeout_s: Avatar delivery stage timeout
        chunk_threshold_chars: Base64 audio longer than this is chunked
        inter_chunk_delay_s: Pause between chunked speak events
        voice: Voice requested from the synthesizer
        language: Optional language hint for transcription
        max_history_messages: History messages sent to the LLM (0 = all)
    """
    stt_timeout_s: float = field(default_factory=lambda: get_env_float("PIPELINE_STT_TIMEOUT", 15.0))
    llm_timeout_s: float = field(default_factory=lambda: get_env_float("PIPELINE_LLM_TIMEOUT", 30.0))
    tts_timeout_s: float = field(default_factory=lambda: get_env_float("PIPELINE_TTS_TIMEOUT", 15.0))
    delivery_timeout_s: float = field(default_factory=lambda: get_env_float("PIPELINE_DELIVERY_TIMEOUT", 30.0))
    chunk_threshold_chars: int = field(default_factory=lambda: get_env_int("AVATAR_CHUNK_THRESHOLD", 500_000))
    inter_chunk_delay_s: float = field(default_factory=lambda: get_env_float("AVATAR_INTER_CHUNK_DELAY", 0.04))
    voice: str = field(default_factory=lambda: get_env("PIPELINE_VOICE", "rachel"))
    language: Optional[str] = field(default_factory=lambda: get_env("PIPELINE_LANGUAGE") or None)
    max_history_messages: int = field(default_factory=lambda: get_env_int("PIPELINE_MAX_HISTORY", 0))

    def validate(self) -> bool:
        if self.chunk_threshold_chars <= 0:
            raise ValueError("AVATAR_CHUNK_THRESHOLD must be positive")
        for name in ("stt_timeout_s", "llm_timeout_s", "tts_timeout_s", "delivery_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return True


@dataclass
class RecordingConfig:
    """
    Microphone capture configuration.

    Attributes:
        sample_rate: Capture sample rate in Hz
        channels: Number of input channels
        device: Optional input device name or index
    """
    sample_rate: int = field(default_factory=lambda: get_env_int("RECORDING_SAMPLE_RATE", 16000))
    channels: int = field(default_factory=lambda: get_env_int("RECORDING_CHANNELS", 1))
    device: Optional[str] = field(default_factory=lambda: get_env("RECORDING_DEVICE") or None)


@dataclass
class SessionConfig:
    """
    Avatar session housekeeping.

    Attributes:
        keep_alive_interval_s: Period of the keep-alive timer owned by the agent
        connect_timeout_s: Transport connect timeout
    """
    keep_alive_interval_s: float = field(default_factory=lambda: get_env_float("SESSION_KEEP_ALIVE_INTERVAL", 60.0))
    connect_timeout_s: float = field(default_factory=lambda: get_env_float("SESSION_CONNECT_TIMEOUT", 20.0))


@dataclass
class ServerConfig:
    """Collaborator HTTP service settings."""
    host: str = field(default_factory=lambda: get_env("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: get_env_int("PORT", 8000))
    cors_origins: List[str] = field(default_factory=lambda: get_env_list(
        "CORS_ORIGINS", "http://localhost:3000"
    ))
    rate_limit_requests: int = field(default_factory=lambda: get_env_int("RATE_LIMIT_REQUESTS", 60))
    rate_limit_window: int = field(default_factory=lambda: get_env_int("RATE_LIMIT_WINDOW", 60))
    rate_limit_enabled: bool = field(default_factory=lambda: get_env_bool("RATE_LIMIT_ENABLED", True))


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        file: Optional log file path
    """
    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE") or None)


@dataclass
class Settings:
    """
    Main settings container aggregating all configuration sections.

    Example:
        from maca.config import settings

        settings.liveavatar.validate()
        timeout = settings.pipeline.llm_timeout_s
    """
    elevenlabs: ElevenLabsConfig = field(default_factory=ElevenLabsConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    liveavatar: LiveAvatarConfig = field(default_factory=LiveAvatarConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    app_env: str = field(default_factory=lambda: get_env("APP_ENV", "development"))

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    def validate_server(self) -> bool:
        """
        Validate the vendor settings the collaborator service needs.

        Raises:
            ValueError: If any validation fails
        """
        self.elevenlabs.validate()
        self.gemini.validate()
        self.liveavatar.validate()
        return True

    def validate_client(self) -> bool:
        """Validate the settings the client-side pipeline needs."""
        self.pipeline.validate()
        if not self.backend.base_url:
            raise ValueError("MACA_BACKEND_URL is required")
        return True


# Singleton settings instance
settings = Settings()
