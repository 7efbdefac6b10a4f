"""
Avatar Agent Module

Assembles the session controller, conversation pipeline and recorder into
one object with a start/stop lifecycle, and owns the keep-alive timer and
the status line shown to the user.

Usage:
    agent = AvatarAgent()
    await agent.start()
    agent.recorder.start_recording()
    await agent.recorder.stop_recording()
    await agent.stop()
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from maca.config import settings
from maca.core.clients import HttpCollaborators
from maca.core.providers import AvatarMode
from maca.logger import get_logger
from maca.messages import ERROR_STATUS_HOLD_S, msg, stage_status

from .avatar_protocol import AvatarEventProtocol
from .conversation_pipeline import ConversationConfig, ConversationPipeline
from .events import (
    EventBus,
    PipelineFailed,
    SessionState,
    SessionStateChanged,
    StageStarted,
    Subscription,
    TurnCompleted,
    TurnRejected,
)
from .recording import RecordingController
from .session_controller import SessionController
from .transport import LiveKitTransport, TransportChannel

logger = get_logger(__name__)


@dataclass
class AvatarAgentConfig:
    """Configuration for the avatar agent."""
    mode: AvatarMode = field(default_factory=lambda: AvatarMode.parse(settings.liveavatar.mode))
    avatar_id: Optional[str] = field(default_factory=lambda: settings.liveavatar.avatar_id or None)
    voice_id: Optional[str] = field(default_factory=lambda: settings.liveavatar.voice_id or None)
    keep_alive_interval_s: float = field(default_factory=lambda: settings.session.keep_alive_interval_s)
    stream_ready_timeout_s: float = field(default_factory=lambda: settings.session.connect_timeout_s)
    include_visual_context: bool = False


class AvatarAgent:
    """
    Voice-driven avatar conversation.

    Features:
    - Session create/start/stop with a keep-alive timer
    - Push-to-talk recording feeding the conversation pipeline (custom mode)
    - Status text derived from pipeline and session events
    """

    def __init__(
        self,
        config: Optional[AvatarAgentConfig] = None,
        collaborators: Optional[HttpCollaborators] = None,
        transport: Optional[TransportChannel] = None,
        on_status: Optional[Callable[[str], None]] = None,
        recorder_factory: Optional[Callable[[ConversationPipeline], RecordingController]] = None,
    ):
        self._config = config or AvatarAgentConfig()
        self._collaborators = collaborators or HttpCollaborators.create()
        self._on_status = on_status

        self._event_bus = EventBus()
        self._transport = transport or LiveKitTransport(
            topic=settings.liveavatar.data_topic,
            connect_timeout_s=settings.session.connect_timeout_s,
        )
        self._protocol = AvatarEventProtocol(
            chunk_threshold=settings.pipeline.chunk_threshold_chars,
            inter_chunk_delay_s=settings.pipeline.inter_chunk_delay_s,
            renderer_sample_rate=settings.liveavatar.renderer_sample_rate,
        )

        self._session = SessionController(
            transport=self._transport,
            issuer=self._collaborators.issuer,
            event_bus=self._event_bus,
            protocol=self._protocol,
            mode=self._config.mode,
            avatar_id=self._config.avatar_id,
            voice_id=self._config.voice_id,
        )

        pipeline_config = ConversationConfig.from_settings()
        pipeline_config.include_visual_context = self._config.include_visual_context
        self._pipeline = ConversationPipeline(
            transcriber=self._collaborators.transcriber,
            replier=self._collaborators.replier,
            synthesizer=self._collaborators.synthesizer,
            transport=self._transport,
            protocol=self._protocol,
            event_bus=self._event_bus,
            vision=self._collaborators.vision,
            config=pipeline_config,
        )
        self._recorder = (recorder_factory or RecordingController)(self._pipeline)

        self._keep_alive_task: Optional[asyncio.Task] = None
        self._revert_task: Optional[asyncio.Task] = None
        self._subscriptions: List[Subscription] = []
        self._status = msg("session.inactive")
        self._running = False

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Create and connect the avatar session, then start the keep-alive timer."""
        if self._running:
            return

        self._subscribe_status()
        await self._session.create_session()
        await self._session.start_session()
        self._running = True

        if self._config.keep_alive_interval_s > 0:
            self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

        await self._wait_for_stream()
        logger.info(f"Avatar agent started in {self._config.mode.value} mode")

    async def stop(self) -> None:
        """Stop recording, the keep-alive timer and the session."""
        logger.debug("Stopping avatar agent...")
        self._running = False

        for task in (self._keep_alive_task, self._revert_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._keep_alive_task = None
        self._revert_task = None

        self._recorder.cancel_recording()

        try:
            await self._session.stop_session()
        except Exception as e:
            logger.error(f"Error stopping session: {e}")

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        await self._collaborators.close()
        logger.info("Avatar agent stopped")

    async def _wait_for_stream(self) -> None:
        if self._session.is_stream_ready:
            return
        ready = asyncio.Event()
        subscription = self._event_bus.subscribe(
            SessionStateChanged, lambda e: ready.set() if self._session.is_stream_ready else None
        )
        try:
            await asyncio.wait_for(ready.wait(), timeout=self._config.stream_ready_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Avatar stream not ready yet; continuing")
        finally:
            subscription.unsubscribe()

    async def _keep_alive_loop(self) -> None:
        """Periodic keep-alive. Failures are logged and retried next tick."""
        interval = self._config.keep_alive_interval_s
        while self._running:
            await asyncio.sleep(interval)
            state = self._session.session_state
            if state not in (SessionState.LOADING, SessionState.ACTIVE):
                logger.info(f"Session is {state.value}; keep-alive stopped")
                return
            try:
                await self._session.keep_alive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Keep-alive failed: {e}")

    # ========================================================================
    # Status
    # ========================================================================

    def _subscribe_status(self) -> None:
        if self._subscriptions:
            return
        bus = self._event_bus
        self._subscriptions = [
            bus.subscribe(StageStarted, lambda e: self._set_status(stage_status(e.stage.value))),
            bus.subscribe(TurnCompleted, lambda e: self._set_status(msg("status.ready"))),
            bus.subscribe(TurnRejected, lambda e: self._set_status(msg("status.processing"))),
            bus.subscribe(PipelineFailed, self._on_pipeline_failed),
            bus.subscribe(SessionStateChanged, lambda e: self._set_status(msg(f"session.{e.state.value}"))),
        ]

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status:
            self._on_status(status)

    def _on_pipeline_failed(self, event: PipelineFailed) -> None:
        self._set_status(msg("status.error"))
        if self._revert_task and not self._revert_task.done():
            self._revert_task.cancel()
        self._revert_task = asyncio.ensure_future(self._revert_status())

    async def _revert_status(self) -> None:
        await asyncio.sleep(ERROR_STATUS_HOLD_S)
        if self._status == msg("status.error"):
            self._set_status(msg("status.ready"))

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def session(self) -> SessionController:
        return self._session

    @property
    def pipeline(self) -> ConversationPipeline:
        return self._pipeline

    @property
    def recorder(self) -> RecordingController:
        return self._recorder

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "session": self._session.stats,
            "pipeline": self._pipeline.stats,
            "status": self._status,
        }
