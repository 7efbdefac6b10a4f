"""
Session Controller Module

Owns the lifecycle of one avatar session: credentials from the session
issuer, the transport connection and the observable session state.

State machine:
    inactive --start--> connecting --transport connected--> loading
    loading --stream ready--> active
    active --(stop | remote disconnect | fatal error)--> disconnected / error
    any --stop--> inactive

Mode-specific behavior (keep-alive, interrupt, listening, text commands) is
delegated to a strategy chosen when the controller is created.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from maca.core.providers import AvatarMode, SessionCredentials, SessionIssuer
from maca.errors import (
    AlreadyInitializing,
    MacaError,
    NotInitialized,
    SessionLifecycleError,
    TransportError,
)
from maca.logger import get_logger
from .avatar_protocol import AvatarEventProtocol, AvatarEventType
from .events import (
    ConnectionQuality,
    ConnectionQualityChanged,
    EventBus,
    SessionState,
    SessionStateChanged,
    StreamReadyChanged,
)
from .transport import TransportChannel, TransportListener

logger = get_logger(__name__)


# ============================================================================
# Mode Strategies
# ============================================================================

class ModeStrategy(ABC):
    """Avatar-mode specific session operations."""
    mode: AvatarMode

    def __init__(self, protocol: AvatarEventProtocol, issuer: SessionIssuer):
        self._protocol = protocol
        self._issuer = issuer

    @abstractmethod
    async def keep_alive(self, channel: TransportChannel, credentials: SessionCredentials) -> None:
        pass

    @abstractmethod
    async def interrupt(self, channel: TransportChannel) -> None:
        pass

    @abstractmethod
    async def start_listening(self, channel: TransportChannel) -> None:
        pass

    @abstractmethod
    async def stop_listening(self, channel: TransportChannel) -> None:
        pass

    async def send_text(self, channel: TransportChannel, text: str) -> None:
        raise SessionLifecycleError(f"send_text is not available in {self.mode.value} mode")

    async def repeat(self, channel: TransportChannel, text: str) -> None:
        raise SessionLifecycleError(f"repeat is not available in {self.mode.value} mode")


class CustomModeStrategy(ModeStrategy):
    """We supply speech; control goes over the data channel as agent.* events."""
    mode = AvatarMode.CUSTOM

    async def keep_alive(self, channel: TransportChannel, credentials: SessionCredentials) -> None:
        await self._protocol.keep_alive(channel)

    async def interrupt(self, channel: TransportChannel) -> None:
        await self._protocol.send_interrupt(channel)

    async def start_listening(self, channel: TransportChannel) -> None:
        await self._protocol.start_listening(channel)

    async def stop_listening(self, channel: TransportChannel) -> None:
        await self._protocol.stop_listening(channel)


class ManagedModeStrategy(ModeStrategy):
    """The vendor runs its own LLM/TTS; we send text commands."""
    mode = AvatarMode.FULL

    async def keep_alive(self, channel: TransportChannel, credentials: SessionCredentials) -> None:
        await self._issuer.keep_alive(credentials)

    async def interrupt(self, channel: TransportChannel) -> None:
        await self._protocol.send_command(channel, AvatarEventType.MANAGED_INTERRUPT)

    async def start_listening(self, channel: TransportChannel) -> None:
        await self._protocol.send_command(channel, AvatarEventType.MANAGED_START_LISTENING)

    async def stop_listening(self, channel: TransportChannel) -> None:
        await self._protocol.send_command(channel, AvatarEventType.MANAGED_STOP_LISTENING)

    async def send_text(self, channel: TransportChannel, text: str) -> None:
        await self._protocol.send_command(channel, AvatarEventType.SPEAK_RESPONSE, text=text)

    async def repeat(self, channel: TransportChannel, text: str) -> None:
        await self._protocol.send_command(channel, AvatarEventType.SPEAK_TEXT, text=text)


def strategy_for(mode: AvatarMode, protocol: AvatarEventProtocol, issuer: SessionIssuer) -> ModeStrategy:
    """Create the strategy for an avatar mode."""
    if mode == AvatarMode.FULL:
        return ManagedModeStrategy(protocol, issuer)
    return CustomModeStrategy(protocol, issuer)


# ============================================================================
# Controller
# ============================================================================

class SessionController:
    """
    Lifecycle owner for one avatar session.

    Features:
    - Explicit credential issuance (create_session) and connection (start_session)
    - Idempotent stop that never leaves the session stuck
    - Transport notifications relayed as typed events
    - Read-only observables: session_state, is_stream_ready, connection_quality

    Usage:
        controller = SessionController(LiveKitTransport(), issuer, event_bus)
        await controller.create_session()
        await controller.start_session()
        ...
        await controller.stop_session()
    """

    def __init__(
        self,
        transport: TransportChannel,
        issuer: SessionIssuer,
        event_bus: Optional[EventBus] = None,
        protocol: Optional[AvatarEventProtocol] = None,
        mode: AvatarMode = AvatarMode.CUSTOM,
        avatar_id: Optional[str] = None,
        voice_id: Optional[str] = None,
    ):
        self._transport = transport
        self._issuer = issuer
        self._event_bus = event_bus or EventBus()
        self._protocol = protocol or AvatarEventProtocol()
        self._mode = mode
        self._strategy = strategy_for(mode, self._protocol, issuer)
        self._avatar_id = avatar_id
        self._voice_id = voice_id

        self._state = SessionState.INACTIVE
        self._credentials: Optional[SessionCredentials] = None
        self._starting = False
        self._stream_ready = False
        self._quality = ConnectionQuality.UNKNOWN

        self._transport.set_listener(TransportListener(
            on_connected=self._on_transport_connected,
            on_reconnecting=self._on_transport_reconnecting,
            on_disconnected=self._on_transport_disconnected,
            on_stream_ready=self._on_stream_ready,
            on_connection_quality=self._on_connection_quality,
        ))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def create_session(self) -> SessionCredentials:
        """
        Obtain credentials for a new session from the issuer.

        Raises:
            AlreadyInitializing: While a start is resolving
            SessionLifecycleError: If a session is already running
            CredentialsError: If the issuer fails
        """
        if self._starting:
            raise AlreadyInitializing("Session start already in progress")
        if self._state not in (SessionState.INACTIVE, SessionState.DISCONNECTED, SessionState.ERROR):
            raise SessionLifecycleError(f"Session already {self._state.value}; stop it first")

        if self._credentials is not None:
            await self._release_stale_session()

        logger.info(f"Requesting {self._mode.value} avatar session")
        self._credentials = await self._issuer.issue(
            self._mode, avatar_id=self._avatar_id, voice_id=self._voice_id
        )
        logger.info(f"Session issued: {self._credentials.session_id}")
        return self._credentials

    async def _release_stale_session(self) -> None:
        """Best-effort close of a previous session left after a failure."""
        credentials = self._credentials
        self._credentials = None
        logger.info(f"Closing previous session {credentials.session_id} before reissue")

        try:
            await self._transport.disconnect()
        except Exception as e:
            logger.warning(f"Transport disconnect failed: {e}")
        try:
            await self._issuer.stop(credentials)
        except Exception as e:
            logger.warning(f"Previous session stop failed: {e}")

    async def start_session(self) -> None:
        """
        Connect the transport using the issued credentials.

        Raises:
            NotInitialized: If create_session() has not succeeded
            AlreadyInitializing: If a previous start is still resolving
            TransportError: If the connection fails (state becomes error)
        """
        if self._starting:
            raise AlreadyInitializing("Session start already in progress")
        if self._credentials is None:
            raise NotInitialized("No session credentials; call create_session() first")
        if self._state in (SessionState.CONNECTING, SessionState.LOADING, SessionState.ACTIVE):
            raise SessionLifecycleError(f"Session already {self._state.value}")

        credentials = self._credentials
        self._starting = True
        self._set_state(SessionState.CONNECTING)
        try:
            await self._transport.connect(
                credentials.transport_url, credentials.transport_client_token
            )
        except Exception as e:
            if self._state == SessionState.CONNECTING:
                self._set_state(SessionState.ERROR, reason=str(e))
            if isinstance(e, MacaError):
                raise
            raise TransportError(f"Transport connect failed: {e}") from e
        finally:
            self._starting = False

        if self._state == SessionState.INACTIVE:
            # stop_session() ran while we were connecting
            await self._transport.disconnect()
            raise SessionLifecycleError("Session stopped while starting")

        if self._state == SessionState.CONNECTING:
            self._set_state(SessionState.LOADING)
        if self._stream_ready and self._state == SessionState.LOADING:
            self._set_state(SessionState.ACTIVE)

    async def stop_session(self) -> None:
        """
        Tear down the transport and close the remote session.

        Idempotent. State always ends as inactive; the first teardown error is
        re-raised after cleanup.
        """
        if (
            self._state == SessionState.INACTIVE
            and self._credentials is None
            and not self._transport.is_connected
        ):
            logger.debug("stop_session: already inactive")
            return

        credentials = self._credentials
        first_error: Optional[BaseException] = None

        try:
            await self._transport.disconnect()
        except Exception as e:
            logger.error(f"Transport disconnect failed: {e}")
            first_error = e

        if credentials is not None:
            try:
                await self._issuer.stop(credentials)
            except Exception as e:
                if first_error is None:
                    first_error = e
                logger.error(f"Remote session stop failed: {e}")

        self._credentials = None
        self._update_stream_ready(False)
        self._set_state(SessionState.INACTIVE)
        logger.info("Session stopped")

        if first_error is not None:
            if isinstance(first_error, MacaError):
                raise first_error
            raise TransportError(f"Session teardown failed: {first_error}") from first_error

    async def keep_alive(self) -> None:
        """Reset the remote idle timer via the active mode strategy."""
        credentials = self._require_live()
        await self._strategy.keep_alive(self._transport, credentials)
        logger.debug("Keep-alive sent")

    # ========================================================================
    # Avatar Commands
    # ========================================================================

    async def interrupt(self) -> None:
        """Ask the avatar to stop speaking (best effort)."""
        self._require_live()
        await self._strategy.interrupt(self._transport)

    async def start_listening(self) -> None:
        self._require_live()
        await self._strategy.start_listening(self._transport)

    async def stop_listening(self) -> None:
        self._require_live()
        await self._strategy.stop_listening(self._transport)

    async def send_text(self, text: str) -> None:
        """Managed mode: the vendor generates and speaks a reply to `text`."""
        self._require_live()
        await self._strategy.send_text(self._transport, text)

    async def repeat(self, text: str) -> None:
        """Managed mode: the avatar speaks `text` verbatim."""
        self._require_live()
        await self._strategy.repeat(self._transport, text)

    def _require_live(self) -> SessionCredentials:
        if self._credentials is None or self._state not in (SessionState.LOADING, SessionState.ACTIVE):
            raise NotInitialized(f"No live session (state: {self._state.value})")
        return self._credentials

    # ========================================================================
    # Transport Notifications
    # ========================================================================

    def _set_state(self, state: SessionState, reason: str = "") -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.info(f"Session state: {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""))
        self._event_bus.publish_nowait(
            SessionStateChanged(state=state, previous_state=previous, reason=reason)
        )

    def _update_stream_ready(self, ready: bool) -> None:
        if ready == self._stream_ready:
            return
        self._stream_ready = ready
        self._event_bus.publish_nowait(StreamReadyChanged(ready=ready))

    def _on_transport_connected(self) -> None:
        if self._state == SessionState.CONNECTING:
            self._set_state(SessionState.LOADING)
        if self._stream_ready and self._state == SessionState.LOADING:
            self._set_state(SessionState.ACTIVE)

    def _on_transport_reconnecting(self) -> None:
        logger.warning("Transport reconnecting")
        self._on_connection_quality(ConnectionQuality.POOR)

    def _on_transport_disconnected(self, reason: str) -> None:
        if self._state in (SessionState.INACTIVE, SessionState.DISCONNECTED):
            return
        self._update_stream_ready(False)
        self._set_state(SessionState.DISCONNECTED, reason=reason)

    def _on_stream_ready(self, ready: bool) -> None:
        self._update_stream_ready(ready)
        if ready and self._state == SessionState.LOADING:
            self._set_state(SessionState.ACTIVE)
        elif not ready and self._state == SessionState.ACTIVE:
            self._set_state(SessionState.LOADING, reason="avatar stream lost")

    def _on_connection_quality(self, quality: ConnectionQuality) -> None:
        if quality == self._quality:
            return
        self._quality = quality
        self._event_bus.publish_nowait(ConnectionQualityChanged(quality=quality))

    # ========================================================================
    # Observables
    # ========================================================================

    @property
    def session_state(self) -> SessionState:
        return self._state

    @property
    def is_stream_ready(self) -> bool:
        return self._stream_ready

    @property
    def connection_quality(self) -> ConnectionQuality:
        return self._quality

    @property
    def credentials(self) -> Optional[SessionCredentials]:
        return self._credentials

    @property
    def is_starting(self) -> bool:
        return self._starting

    @property
    def mode(self) -> AvatarMode:
        return self._mode

    @property
    def transport(self) -> TransportChannel:
        return self._transport

    @property
    def protocol(self) -> AvatarEventProtocol:
        return self._protocol

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "mode": self._mode.value,
            "state": self._state.value,
            "stream_ready": self._stream_ready,
            "connection_quality": self._quality.value,
            "session_id": self._credentials.session_id if self._credentials else None,
        }
