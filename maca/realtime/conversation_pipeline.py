"""
Conversation Pipeline Module

Turn-taking orchestrator for the custom avatar mode:

    idle -> transcribing -> thinking -> synthesizing -> delivering -> idle

Each turn chains STT, LLM, TTS and avatar delivery. History only ever holds
complete turns: the user and assistant messages are committed together after
the audio reached the avatar, and only if the conversation was not reset in
the meantime.

Features:
- Reentrancy guard (a second turn while one is in flight is rejected, not queued)
- Per-stage timeouts mapped onto stage errors
- Stage events for UI status (StageStarted / StageCompleted / TurnCompleted / PipelineFailed)
- Generation counter guarding commits against reset races
- Optional visual context from image analysis
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from maca.config import settings
from maca.core.providers import (
    AudioClip,
    ConversationMessage,
    Replier,
    SynthesizedAudio,
    Synthesizer,
    Transcriber,
    Transcript,
    VisionAnalyzer,
)
from maca.errors import (
    DeliveryError,
    PipelineError,
    ReplyError,
    SynthesisError,
    TranscriptionError,
    VisionError,
)
from maca.logger import get_logger
from maca.messages import msg
from .avatar_protocol import AvatarEventProtocol
from .events import (
    EventBus,
    PipelineFailed,
    PipelineStage,
    StageCompleted,
    StageStarted,
    TurnCompleted,
    TurnRejected,
)
from .transport import TransportChannel

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class ConversationConfig:
    """Configuration for the conversation pipeline."""
    stt_timeout_s: float = 15.0
    llm_timeout_s: float = 30.0
    tts_timeout_s: float = 15.0
    delivery_timeout_s: float = 30.0
    voice: Optional[str] = None
    language: Optional[str] = None
    max_history_messages: int = 0  # 0 sends the full history
    include_visual_context: bool = False

    @classmethod
    def from_settings(cls) -> "ConversationConfig":
        config = settings.pipeline
        return cls(
            stt_timeout_s=config.stt_timeout_s,
            llm_timeout_s=config.llm_timeout_s,
            tts_timeout_s=config.tts_timeout_s,
            delivery_timeout_s=config.delivery_timeout_s,
            voice=config.voice,
            language=config.language,
            max_history_messages=config.max_history_messages,
        )


@dataclass
class TurnResult:
    """Outcome of one delivered turn."""
    turn_id: int
    transcript: str
    reply: str
    audio_bytes: int = 0
    event_id: str = ""
    timings_ms: Dict[str, float] = field(default_factory=dict)
    committed: bool = False

    @property
    def total_ms(self) -> float:
        return sum(self.timings_ms.values())


class ConversationHistory:
    """
    In-memory conversation history for one session.

    Messages are immutable once appended and only added in complete
    user/assistant pairs.
    """

    def __init__(self):
        self._messages: List[ConversationMessage] = []

    def append_turn(self, user_text: str, assistant_text: str) -> None:
        self._messages.append(ConversationMessage(role="user", content=user_text))
        self._messages.append(ConversationMessage(role="assistant", content=assistant_text))

    def snapshot(self, max_messages: int = 0) -> Tuple[ConversationMessage, ...]:
        """Immutable copy of the history, optionally only the latest messages."""
        messages = self._messages[-max_messages:] if max_messages > 0 else self._messages
        return tuple(messages)

    def clear(self) -> None:
        self._messages.clear()

    @property
    def turn_count(self) -> int:
        return sum(1 for m in self._messages if m.role == "user")

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(tuple(self._messages))


class ConversationPipeline:
    """
    Orchestrates one conversation turn at a time.

    Usage:
        pipeline = ConversationPipeline(transcriber, replier, synthesizer, transport)
        bus.subscribe(StageStarted, on_stage)
        result = await pipeline.process_voice_input(clip)
    """

    def __init__(
        self,
        transcriber: Transcriber,
        replier: Replier,
        synthesizer: Synthesizer,
        transport: TransportChannel,
        protocol: Optional[AvatarEventProtocol] = None,
        event_bus: Optional[EventBus] = None,
        vision: Optional[VisionAnalyzer] = None,
        config: Optional[ConversationConfig] = None,
    ):
        self._transcriber = transcriber
        self._replier = replier
        self._synthesizer = synthesizer
        self._transport = transport
        self._protocol = protocol or AvatarEventProtocol()
        self._event_bus = event_bus or EventBus()
        self._vision = vision
        self._config = config or ConversationConfig.from_settings()

        self._history = ConversationHistory()
        self._generation = 0
        self._turn_counter = 0
        self._busy = False
        self._active_turn_id = 0
        self._stage = PipelineStage.IDLE

        self._last_analysis: Optional[str] = None
        self._pending_visual_context: Optional[str] = None

    # ========================================================================
    # Turns
    # ========================================================================

    async def process_voice_input(self, clip: AudioClip) -> Optional[TurnResult]:
        """
        Run a full voice turn: transcribe, reply, synthesize, deliver.

        Returns:
            The TurnResult, or None if another turn was in flight

        Raises:
            TranscriptionError, ReplyError, SynthesisError, DeliveryError
        """
        turn_id = await self._begin_turn()
        if turn_id is None:
            return None

        logger.info(f"Turn {turn_id}: processing {len(clip)} bytes of {clip.container_format} audio")
        try:
            generation = self._generation
            timings: Dict[str, float] = {}
            transcript = await self._run_stage(
                PipelineStage.TRANSCRIBING, turn_id, timings,
                lambda: self._transcribe(clip),
                self._config.stt_timeout_s, TranscriptionError,
            )
            logger.info(f"User: {transcript.text}")
            return await self._reply_and_deliver(turn_id, generation, transcript.text, timings)
        except PipelineError as e:
            await self._fail(turn_id, e)
            raise
        finally:
            self._end_turn()

    async def process_text_input(self, text: str) -> Optional[TurnResult]:
        """Run a typed turn (no transcription)."""
        text = text.strip()
        if not text:
            raise ValueError(msg("error.missing_text"))

        turn_id = await self._begin_turn()
        if turn_id is None:
            return None

        try:
            logger.info(f"User (typed): {text}")
            return await self._reply_and_deliver(turn_id, self._generation, text, {})
        except PipelineError as e:
            await self._fail(turn_id, e)
            raise
        finally:
            self._end_turn()

    async def speak_text(self, text: str) -> Optional[TurnResult]:
        """Synthesize and deliver fixed text without touching history."""
        text = text.strip()
        if not text:
            raise ValueError(msg("error.missing_text"))

        turn_id = await self._begin_turn()
        if turn_id is None:
            return None

        try:
            timings: Dict[str, float] = {}
            audio, event_id = await self._synthesize_and_deliver(turn_id, text, timings)
            result = TurnResult(
                turn_id=turn_id,
                transcript="",
                reply=text,
                audio_bytes=len(audio.data),
                event_id=event_id,
                timings_ms=timings,
                committed=False,
            )
            await self._event_bus.publish(TurnCompleted(
                turn_id=turn_id, reply=text, timings_ms=dict(timings), committed=False,
            ))
            return result
        except PipelineError as e:
            await self._fail(turn_id, e)
            raise
        finally:
            self._end_turn()

    def reset_conversation(self) -> None:
        """
        Clear history. Does not cancel an in-flight turn, but that turn will
        not commit into the cleared history.
        """
        self._history.clear()
        self._generation += 1
        self._pending_visual_context = None
        logger.info(f"Conversation reset (generation {self._generation})")

    # ========================================================================
    # Vision
    # ========================================================================

    async def analyze_image(self, image_b64: str, prompt: Optional[str] = None) -> str:
        """
        Analyze an image and keep the result as visual context.

        Raises:
            VisionError: If no analyzer is configured or the analysis fails
        """
        if self._vision is None:
            raise VisionError(msg("error.vision_not_configured"))
        if not image_b64:
            raise VisionError(msg("error.missing_image"))

        try:
            analysis = await self._vision.analyze(image_b64, prompt)
        except VisionError:
            raise
        except Exception as e:
            raise VisionError(f"Image analysis failed: {e}") from e

        analysis = (analysis or "").strip()
        if not analysis:
            raise VisionError(msg("error.empty_analysis"))

        self._last_analysis = analysis
        if self._config.include_visual_context:
            self._pending_visual_context = analysis
        logger.info(f"Vision analysis: {analysis[:80]}")
        return analysis

    def _with_visual_context(self, text: str) -> str:
        if not self._pending_visual_context:
            return text
        return f"{text}\n\n[Visual context: {self._pending_visual_context}]"

    # ========================================================================
    # Stages
    # ========================================================================

    async def _reply_and_deliver(
        self,
        turn_id: int,
        generation: int,
        user_text: str,
        timings: Dict[str, float],
    ) -> TurnResult:
        prior = self._history.snapshot(self._config.max_history_messages)
        message = self._with_visual_context(user_text)
        used_visual_context = message != user_text

        reply = await self._run_stage(
            PipelineStage.THINKING, turn_id, timings,
            lambda: self._reply(message, prior),
            self._config.llm_timeout_s, ReplyError,
        )
        logger.info(f"Assistant: {reply}")

        audio, event_id = await self._synthesize_and_deliver(turn_id, reply, timings)

        committed = self._commit(generation, user_text, reply)
        if committed and used_visual_context:
            self._pending_visual_context = None

        self._log_timings(turn_id, timings)
        await self._event_bus.publish(TurnCompleted(
            turn_id=turn_id,
            transcript=user_text,
            reply=reply,
            timings_ms=dict(timings),
            committed=committed,
        ))
        return TurnResult(
            turn_id=turn_id,
            transcript=user_text,
            reply=reply,
            audio_bytes=len(audio.data),
            event_id=event_id,
            timings_ms=timings,
            committed=committed,
        )

    async def _synthesize_and_deliver(
        self,
        turn_id: int,
        text: str,
        timings: Dict[str, float],
    ) -> Tuple[SynthesizedAudio, str]:
        audio = await self._run_stage(
            PipelineStage.SYNTHESIZING, turn_id, timings,
            lambda: self._synthesize(text),
            self._config.tts_timeout_s, SynthesisError,
        )
        event_id = await self._run_stage(
            PipelineStage.DELIVERING, turn_id, timings,
            lambda: self._deliver(audio),
            self._config.delivery_timeout_s, DeliveryError,
        )
        return audio, event_id

    async def _run_stage(
        self,
        stage: PipelineStage,
        turn_id: int,
        timings: Dict[str, float],
        operation: Callable[[], Awaitable[T]],
        timeout_s: float,
        error_cls: Type[PipelineError],
    ) -> T:
        """Run one stage with its timeout, events and error mapping."""
        self._stage = stage
        await self._event_bus.publish(StageStarted(stage=stage, turn_id=turn_id))

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(operation(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{stage.value} timed out after {timeout_s:g}s") from e
        except error_cls:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise error_cls(f"{stage.value} failed: {e}") from e

        duration_ms = (time.perf_counter() - start) * 1000
        timings[stage.value] = duration_ms
        logger.debug(f"Turn {turn_id}: {stage.value} took {duration_ms:.0f}ms")
        await self._event_bus.publish(StageCompleted(
            stage=stage, turn_id=turn_id, duration_ms=duration_ms
        ))
        return result

    async def _transcribe(self, clip: AudioClip) -> Transcript:
        transcript = await self._transcriber.transcribe(clip, self._config.language)
        if not transcript or not (transcript.text or "").strip():
            raise TranscriptionError(msg("error.empty_transcript"))
        return Transcript(text=transcript.text.strip(), language=transcript.language)

    async def _reply(self, message: str, prior: Tuple[ConversationMessage, ...]) -> str:
        reply = await self._replier.reply(message, prior)
        if not reply or not reply.strip():
            raise ReplyError(msg("error.empty_reply"))
        return reply.strip()

    async def _synthesize(self, text: str) -> SynthesizedAudio:
        audio = await self._synthesizer.synthesize(text, self._config.voice)
        if audio is None or not audio.data:
            raise SynthesisError("Synthesizer returned no audio")
        logger.debug(f"Synthesized {len(audio.data)} bytes at {audio.sample_rate_hz} Hz")
        return audio

    async def _deliver(self, audio: SynthesizedAudio) -> str:
        """Bracket the speech burst with start/stop listening."""
        channel = self._transport
        await self._protocol.start_listening(channel)
        try:
            event_id = await self._protocol.send_speech(
                channel,
                audio.data,
                source_format=audio.container_format,
                sample_rate_hz=audio.sample_rate_hz,
            )
        except BaseException:
            try:
                await self._protocol.stop_listening(channel)
            except Exception as e:
                logger.warning(f"stop_listening after failed delivery also failed: {e}")
            raise
        await self._protocol.stop_listening(channel)
        return event_id

    # ========================================================================
    # Turn bookkeeping
    # ========================================================================

    async def _begin_turn(self) -> Optional[int]:
        if self._busy:
            logger.warning(f"Turn already in progress (turn {self._active_turn_id}), ignoring new input")
            await self._event_bus.publish(TurnRejected(active_turn_id=self._active_turn_id))
            return None
        self._busy = True
        self._turn_counter += 1
        self._active_turn_id = self._turn_counter
        return self._active_turn_id

    def _end_turn(self) -> None:
        self._busy = False
        self._stage = PipelineStage.IDLE

    def _commit(self, generation: int, user_text: str, reply: str) -> bool:
        if generation != self._generation:
            logger.info("Conversation was reset during the turn; not committing to history")
            return False
        self._history.append_turn(user_text, reply)
        return True

    async def _fail(self, turn_id: int, error: PipelineError) -> None:
        try:
            stage = PipelineStage(error.stage)
        except ValueError:
            stage = self._stage
        logger.error(f"Turn {turn_id} failed while {stage.value}: {error}")
        await self._event_bus.publish(PipelineFailed(stage=stage, error=error, turn_id=turn_id))

    def _log_timings(self, turn_id: int, timings: Dict[str, float]) -> None:
        breakdown = ", ".join(f"{name}={ms:.0f}ms" for name, ms in timings.items())
        logger.info(f"Turn {turn_id} completed in {sum(timings.values()):.0f}ms ({breakdown})")

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def history(self) -> Tuple[ConversationMessage, ...]:
        """Committed conversation history."""
        return self._history.snapshot()

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def is_processing(self) -> bool:
        return self._busy

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def last_analysis(self) -> Optional[str]:
        return self._last_analysis

    @property
    def include_visual_context(self) -> bool:
        return self._config.include_visual_context

    @include_visual_context.setter
    def include_visual_context(self, enabled: bool) -> None:
        self._config.include_visual_context = enabled
        if not enabled:
            self._pending_visual_context = None

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "stage": self._stage.value,
            "turns": self._turn_counter,
            "history_messages": len(self._history),
            "generation": self._generation,
        }
