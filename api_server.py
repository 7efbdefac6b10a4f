"""
FastAPI Collaborator Service

Exposes speech-to-text, chat, text-to-speech, avatar session and vision
endpoints backed by ElevenLabs, Gemini and LiveAvatar. The avatar pipeline
(maca.core.clients) talks to these routes.
"""

import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from maca.config import settings
from maca.core.liveavatar import LiveAvatarClient
from maca.core.llm import GeminiChat
from maca.core.providers import AvatarMode
from maca.core.speech import ElevenLabsSpeech
from maca.core.vision import GeminiVision
from maca.errors import VendorError
from maca.logger import get_logger, init_logging
from maca.messages import msg
from maca.realtime.audio_codec import pcm_to_wav

logger = get_logger(__name__)


# Pydantic models for API
class HistoryMessage(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    message: str = ""
    history: List[HistoryMessage] = Field(default_factory=list)


class ChatResponse(BaseModel):
    response: str
    conversationId: str


class TTSRequest(BaseModel):
    text: str = ""
    voice: Optional[str] = None
    format: Optional[str] = Field(default=None, pattern="^(pcm|wav)$")


class SessionRequest(BaseModel):
    mode: str = "CUSTOM"
    avatar_id: Optional[str] = None
    voice_id: Optional[str] = None


class SessionTokenRequest(BaseModel):
    session_token: str = Field(min_length=1)


class VisionRequest(BaseModel):
    image: str = ""
    prompt: Optional[str] = None


class VisionResponse(BaseModel):
    analysis: str
    model: str


@dataclass
class Vendors:
    """Vendor clients shared by all requests."""
    speech: ElevenLabsSpeech
    chat: GeminiChat
    vision: GeminiVision
    liveavatar: LiveAvatarClient

    @classmethod
    def create(cls) -> "Vendors":
        return cls(
            speech=ElevenLabsSpeech(),
            chat=GeminiChat(),
            vision=GeminiVision(),
            liveavatar=LiveAvatarClient(),
        )

    async def close(self) -> None:
        for client in (self.speech, self.chat, self.vision, self.liveavatar):
            await client.close()


# Global vendor clients
vendors: Optional[Vendors] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources."""
    global vendors

    init_logging()
    vendors = Vendors.create()
    logger.info(
        "Collaborator service ready "
        f"(elevenlabs={settings.elevenlabs.is_configured}, "
        f"gemini={settings.gemini.is_configured}, "
        f"liveavatar={settings.liveavatar.is_configured})"
    )

    yield

    await vendors.close()
    vendors = None


# Rate limiting middleware
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple in-memory rate limiting middleware.
    Limits requests per IP address within a time window.
    """

    def __init__(self, app, requests_limit: int = 60, window_seconds: int = 60):
        super().__init__(app)
        self.requests_limit = requests_limit
        self.window_seconds = window_seconds
        self.request_counts: Dict[str, list] = defaultdict(list)

    async def dispatch(self, request: Request, call_next):
        # Health checks and session upkeep are never limited
        if request.url.path in ("/api/health", "/api/session/keep-alive", "/api/session/stop"):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()

        current_time = time.time()
        cutoff_time = current_time - self.window_seconds
        self.request_counts[client_ip] = [
            ts for ts in self.request_counts[client_ip] if ts > cutoff_time
        ]

        if len(self.request_counts[client_ip]) >= self.requests_limit:
            return JSONResponse(
                status_code=429,
                content={
                    "error": msg("error.rate_limited"),
                    "retry_after": self.window_seconds
                },
                headers={"Retry-After": str(self.window_seconds)}
            )

        self.request_counts[client_ip].append(current_time)
        return await call_next(request)


# Create FastAPI app
app = FastAPI(
    title="MACA Collaborator API",
    description="Speech, chat, vision and avatar session endpoints for the MACA avatar pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

if settings.server.rate_limit_enabled:
    app.add_middleware(
        RateLimitMiddleware,
        requests_limit=settings.server.rate_limit_requests,
        window_seconds=settings.server.rate_limit_window,
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VendorError)
async def vendor_error_handler(request: Request, exc: VendorError):
    logger.error(f"{request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', []) if p != 'body')}: {err.get('msg')}"
        for err in errors
    )
    return JSONResponse(status_code=400, content={"error": detail or "Invalid request"})


def get_vendors() -> Vendors:
    """Get the vendor clients."""
    if vendors is None:
        raise HTTPException(status_code=503, detail=msg("error.service_not_ready"))
    return vendors


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "services": {
            "elevenlabs": settings.elevenlabs.is_configured,
            "gemini": settings.gemini.is_configured,
            "liveavatar": settings.liveavatar.is_configured,
        },
    }


@app.post("/api/stt")
async def speech_to_text(
    audio: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
    clients: Vendors = Depends(get_vendors),
):
    """Transcribe an uploaded audio file."""
    if audio is None:
        raise HTTPException(status_code=400, detail=msg("error.missing_audio"))

    data = await audio.read()
    if not data:
        raise HTTPException(status_code=400, detail=msg("error.missing_audio"))

    return await clients.speech.transcribe(
        data,
        filename=audio.filename or "recording.webm",
        content_type=audio.content_type or "audio/webm",
        language=language or None,
    )


@app.post("/api/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, clients: Vendors = Depends(get_vendors)):
    """Reply to a message given prior conversation history."""
    if not request.message.strip():
        raise HTTPException(status_code=400, detail=msg("error.missing_message"))

    history = [m.model_dump() for m in request.history]
    reply = await clients.chat.reply(request.message, history)
    return ChatResponse(response=reply, conversationId=str(uuid.uuid4()))


@app.post("/api/tts")
async def text_to_speech(request: TTSRequest, clients: Vendors = Depends(get_vendors)):
    """
    Convert text to speech.

    Returns raw 16-bit mono PCM (or WAV when format is "wav") with the sample
    rate and bit depth in X-Sample-Rate / X-Bit-Depth headers.
    """
    if not request.text.strip():
        raise HTTPException(status_code=400, detail=msg("error.missing_text"))

    audio = await clients.speech.synthesize(request.text, request.voice)
    sample_rate = clients.speech.sample_rate

    if request.format == "wav":
        audio = pcm_to_wav(audio, sample_rate)
        media_type = "audio/wav"
    else:
        media_type = "audio/pcm"

    return Response(
        content=audio,
        media_type=media_type,
        headers={
            "X-Sample-Rate": str(sample_rate),
            "X-Bit-Depth": "16",
        },
    )


@app.post("/api/session")
async def create_session(request: SessionRequest, clients: Vendors = Depends(get_vendors)):
    """Create a LiveAvatar session and return its LiveKit credentials."""
    try:
        mode = AvatarMode.parse(request.mode)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    credentials = await clients.liveavatar.create_session(
        mode=mode,
        avatar_id=request.avatar_id,
        voice_id=request.voice_id,
    )
    return credentials.to_wire()


@app.post("/api/session/stop")
async def stop_session(request: SessionTokenRequest, clients: Vendors = Depends(get_vendors)):
    """Stop a LiveAvatar session."""
    await clients.liveavatar.stop_session(request.session_token)
    return {"ok": True}


@app.post("/api/session/keep-alive")
async def keep_alive(request: SessionTokenRequest, clients: Vendors = Depends(get_vendors)):
    """Reset a LiveAvatar session's idle timer."""
    await clients.liveavatar.keep_alive(request.session_token)
    return {"ok": True}


@app.post("/api/vision", response_model=VisionResponse)
async def analyze_image(request: VisionRequest, clients: Vendors = Depends(get_vendors)):
    """Describe an image (base64 or data URL) in a clinical context."""
    if not request.image:
        raise HTTPException(status_code=400, detail=msg("error.missing_image"))

    analysis = await clients.vision.analyze(request.image, request.prompt)
    return VisionResponse(analysis=analysis, model=clients.vision.model)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api_server:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.is_development,
    )
