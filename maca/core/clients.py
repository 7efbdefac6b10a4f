"""
HTTP Collaborator Clients

aiohttp implementations of the collaborator interfaces, talking to the
collaborator service (api_server.py) routes:

    POST /api/stt                 multipart audio (+ language) -> {text, language}
    POST /api/chat                {message, history}            -> {response}
    POST /api/tts                 {text, voice?, format?}       -> raw audio + X-Sample-Rate / X-Bit-Depth
    POST /api/session             {mode, avatar_id?, voice_id?} -> SessionCredentials
    POST /api/session/stop        {session_token}               -> {ok}
    POST /api/session/keep-alive  {session_token}               -> {ok}
    POST /api/vision              {image, prompt?}              -> {analysis}

Usage:
    async with BackendHttp() as http:
        collaborators = HttpCollaborators.create(http)
        transcript = await collaborators.transcriber.transcribe(clip)
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Type

import aiohttp
from pydantic import ValidationError

from maca.config import settings
from maca.errors import (
    CredentialsError,
    MacaError,
    ReplyError,
    SynthesisError,
    TranscriptionError,
    VisionError,
)
from maca.logger import get_logger
from maca.messages import msg
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
    history_to_dicts,
)

logger = get_logger(__name__)


class BackendHttp:
    """
    Shared aiohttp session for the collaborator service.

    Features:
    - Lazy session creation
    - Error bodies ({"error"} or {"detail"}) folded into exception messages
    - Network failures mapped onto the caller's error type
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        connect_timeout_s: Optional[float] = None,
        read_timeout_s: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        config = settings.backend
        self._base_url = (base_url or config.base_url).rstrip("/")
        self._timeout = aiohttp.ClientTimeout(
            total=read_timeout_s or config.read_timeout_s,
            connect=connect_timeout_s or config.connect_timeout_s,
        )
        self._session = session
        self._owns_session = session is None

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BackendHttp":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @staticmethod
    async def _error_detail(response: aiohttp.ClientResponse) -> str:
        text = await response.text()
        try:
            body = json.loads(text)
        except ValueError:
            return text[:200] or response.reason or ""
        if isinstance(body, dict):
            detail = body.get("error") or body.get("detail") or body.get("message")
            if detail:
                return str(detail)
        return text[:200]

    async def get(self, path: str, error_cls: Type[MacaError], **kwargs: Any) -> "HttpResult":
        """GET a collaborator route."""
        return await self.request("GET", path, error_cls, **kwargs)

    async def post(self, path: str, error_cls: Type[MacaError], **kwargs: Any) -> "HttpResult":
        """POST to a collaborator route."""
        return await self.request("POST", path, error_cls, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        error_cls: Type[MacaError],
        **kwargs: Any,
    ) -> "HttpResult":
        """
        Send a request to a collaborator route.

        Raises:
            error_cls: On non-2xx status or network failure
        """
        session = await self._get_session()
        url = self.url(path)
        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    detail = await self._error_detail(response)
                    raise error_cls(f"{path} returned {response.status}: {detail}")
                body = await response.read()
                return HttpResult(
                    status=response.status,
                    headers=dict(response.headers),
                    body=body,
                )
        except MacaError:
            raise
        except asyncio.TimeoutError as e:
            raise error_cls(f"{path} timed out") from e
        except aiohttp.ClientError as e:
            raise error_cls(f"{path} request failed: {e}") from e


@dataclass
class HttpResult:
    """Status, headers and body of a collaborator response."""
    status: int
    headers: Dict[str, str]
    body: bytes

    def json(self, error_cls: Type[MacaError]) -> Dict[str, Any]:
        try:
            data = json.loads(self.body)
        except ValueError as e:
            raise error_cls(f"Invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise error_cls("Expected a JSON object response")
        return data

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


# ============================================================================
# Adapters
# ============================================================================

class HttpTranscriber(Transcriber):
    """POST /api/stt"""

    def __init__(self, http: BackendHttp):
        self._http = http

    async def transcribe(self, clip: AudioClip, language: Optional[str] = None) -> Transcript:
        form = aiohttp.FormData()
        form.add_field("audio", clip.data, filename=clip.filename, content_type=clip.content_type)
        if language:
            form.add_field("language", language)

        result = await self._http.post("/api/stt", TranscriptionError, data=form)
        data = result.json(TranscriptionError)

        text = (data.get("text") or "").strip()
        if not text:
            raise TranscriptionError(msg("error.empty_transcript"))
        return Transcript(text=text, language=data.get("language"))


class HttpReplier(Replier):
    """POST /api/chat"""

    def __init__(self, http: BackendHttp):
        self._http = http

    async def reply(self, message: str, history: Sequence[ConversationMessage]) -> str:
        payload = {"message": message, "history": history_to_dicts(history)}
        result = await self._http.post("/api/chat", ReplyError, json=payload)
        data = result.json(ReplyError)

        response = (data.get("response") or "").strip()
        if not response:
            raise ReplyError(msg("error.empty_reply"))
        return response


class HttpSynthesizer(Synthesizer):
    """POST /api/tts"""

    def __init__(self, http: BackendHttp, output_format: str = "pcm"):
        self._http = http
        self._output_format = output_format

    async def synthesize(self, text: str, voice: Optional[str] = None) -> SynthesizedAudio:
        payload: Dict[str, Any] = {"text": text, "format": self._output_format}
        if voice:
            payload["voice"] = voice

        result = await self._http.post("/api/tts", SynthesisError, json=payload)
        if not result.body:
            raise SynthesisError("Synthesizer returned no audio")

        content_type = (result.header("Content-Type") or "").lower()
        container = "wav" if "wav" in content_type else "pcm"
        try:
            sample_rate = int(result.header("X-Sample-Rate", "24000"))
            bit_depth = int(result.header("X-Bit-Depth", "16"))
        except ValueError as e:
            raise SynthesisError(f"Invalid audio headers: {e}") from e

        logger.debug(f"Synthesized {len(result.body)} bytes ({container}, {sample_rate} Hz)")
        return SynthesizedAudio(
            data=result.body,
            container_format=container,
            sample_rate_hz=sample_rate,
            bit_depth=bit_depth,
        )


class HttpSessionIssuer(SessionIssuer):
    """POST /api/session, /api/session/stop, /api/session/keep-alive"""

    def __init__(self, http: BackendHttp):
        self._http = http

    async def issue(
        self,
        mode: AvatarMode,
        avatar_id: Optional[str] = None,
        voice_id: Optional[str] = None,
    ) -> SessionCredentials:
        payload: Dict[str, Any] = {"mode": mode.value}
        if avatar_id:
            payload["avatar_id"] = avatar_id
        if voice_id:
            payload["voice_id"] = voice_id

        result = await self._http.post("/api/session", CredentialsError, json=payload)
        data = result.json(CredentialsError)
        try:
            return SessionCredentials.model_validate(data)
        except ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise CredentialsError(f"Incomplete session credentials: {missing}") from e

    async def stop(self, credentials: SessionCredentials) -> None:
        await self._http.post(
            "/api/session/stop",
            CredentialsError,
            json={"session_token": credentials.session_token},
        )

    async def keep_alive(self, credentials: SessionCredentials) -> None:
        await self._http.post(
            "/api/session/keep-alive",
            CredentialsError,
            json={"session_token": credentials.session_token},
        )


class HttpVisionAnalyzer(VisionAnalyzer):
    """POST /api/vision"""

    def __init__(self, http: BackendHttp):
        self._http = http

    async def analyze(self, image_b64: str, prompt: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"image": image_b64}
        if prompt:
            payload["prompt"] = prompt

        result = await self._http.post("/api/vision", VisionError, json=payload)
        data = result.json(VisionError)

        analysis = (data.get("analysis") or "").strip()
        if not analysis:
            raise VisionError(msg("error.empty_analysis"))
        return analysis


@dataclass
class HttpCollaborators:
    """All HTTP adapters sharing one BackendHttp."""
    http: BackendHttp
    transcriber: HttpTranscriber
    replier: HttpReplier
    synthesizer: HttpSynthesizer
    issuer: HttpSessionIssuer
    vision: HttpVisionAnalyzer

    @classmethod
    def create(cls, http: Optional[BackendHttp] = None) -> "HttpCollaborators":
        http = http or BackendHttp()
        return cls(
            http=http,
            transcriber=HttpTranscriber(http),
            replier=HttpReplier(http),
            synthesizer=HttpSynthesizer(http),
            issuer=HttpSessionIssuer(http),
            vision=HttpVisionAnalyzer(http),
        )

    async def close(self) -> None:
        await self.http.close()
