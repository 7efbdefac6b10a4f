"""
Event System for the Avatar Pipeline

Typed event bus that lets UIs and controllers observe pipeline and session
progress without reaching into component internals.

Event Types:
- StageStarted / StageCompleted: Conversation stage transitions
- TurnCompleted: A full turn was delivered to the avatar
- PipelineFailed: A turn aborted, carrying the failing stage and cause
- TurnRejected: A turn was refused because another is in flight
- SessionStateChanged: Avatar session lifecycle transitions
- StreamReadyChanged: Avatar video stream became (un)available
- ConnectionQualityChanged: Transport link quality updates
"""

import asyncio
import inspect
import time
import uuid
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from maca.logger import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Any], Any]


@dataclass
class Event(ABC):
    """Base event class for all pipeline events."""
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    @property
    def age_ms(self) -> float:
        """Get event age in milliseconds."""
        return (time.time() - self.timestamp) * 1000


# ============================================================================
# Conversation Pipeline Events
# ============================================================================

class PipelineStage(Enum):
    """Stage of a conversation turn."""
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    THINKING = "thinking"
    SYNTHESIZING = "synthesizing"
    DELIVERING = "delivering"


@dataclass
class StageStarted(Event):
    """A turn entered a stage."""
    stage: PipelineStage = PipelineStage.IDLE
    turn_id: int = 0
    source: str = "pipeline"


@dataclass
class StageCompleted(Event):
    """A turn finished a stage."""
    stage: PipelineStage = PipelineStage.IDLE
    turn_id: int = 0
    duration_ms: float = 0.0
    source: str = "pipeline"


@dataclass
class TurnCompleted(Event):
    """A turn was delivered end to end."""
    turn_id: int = 0
    transcript: str = ""
    reply: str = ""
    timings_ms: Dict[str, float] = field(default_factory=dict)
    committed: bool = True
    source: str = "pipeline"


@dataclass
class PipelineFailed(Event):
    """A turn aborted at `stage`."""
    stage: PipelineStage = PipelineStage.IDLE
    error: Optional[BaseException] = None
    turn_id: int = 0
    source: str = "pipeline"

    @property
    def message(self) -> str:
        return str(self.error) if self.error else ""


@dataclass
class TurnRejected(Event):
    """A turn was refused because another one is in flight."""
    reason: str = "turn already in progress"
    active_turn_id: int = 0
    source: str = "pipeline"


# ============================================================================
# Session Events
# ============================================================================

class SessionState(Enum):
    """Avatar session lifecycle state."""
    INACTIVE = "inactive"
    CONNECTING = "connecting"
    LOADING = "loading"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ConnectionQuality(Enum):
    """Transport link quality as reported by the room."""
    UNKNOWN = "unknown"
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    LOST = "lost"


@dataclass
class SessionStateChanged(Event):
    """Session state transition."""
    state: SessionState = SessionState.INACTIVE
    previous_state: SessionState = SessionState.INACTIVE
    reason: str = ""
    source: str = "session"


@dataclass
class StreamReadyChanged(Event):
    """Avatar video stream availability changed."""
    ready: bool = False
    source: str = "session"


@dataclass
class ConnectionQualityChanged(Event):
    """Transport link quality changed."""
    quality: ConnectionQuality = ConnectionQuality.UNKNOWN
    source: str = "session"


# ============================================================================
# Event Bus
# ============================================================================

@dataclass(eq=False)
class Subscription:
    """
    Handle returned by EventBus.subscribe().

    Unsubscribing through the handle removes exactly this registration,
    even if the same callable was subscribed more than once.
    """
    bus: "EventBus"
    event_type: type
    handler: EventHandler
    active: bool = True

    def unsubscribe(self) -> None:
        if self.active:
            self.bus._remove(self)
            self.active = False


class EventBus:
    """
    Simple async event bus for pipeline and session observers.

    Features:
    - Type-keyed subscriptions matched with isinstance (subscribe to Event for all)
    - Sync or async handlers
    - Explicit unsubscribe handles
    - Handler failures logged, never propagated to the publisher
    """

    def __init__(self):
        self._subscriptions: Dict[type, List[Subscription]] = {}
        self._pending: Set[asyncio.Future] = set()
        self._event_count: int = 0

    def subscribe(self, event_type: type, handler: EventHandler) -> Subscription:
        """Subscribe to events of a specific type (and its subclasses)."""
        subscription = Subscription(self, event_type, handler)
        self._subscriptions.setdefault(event_type, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        registered = self._subscriptions.get(subscription.event_type, [])
        self._subscriptions[subscription.event_type] = [
            s for s in registered if s is not subscription
        ]

    def _handlers_for(self, event: Event) -> List[EventHandler]:
        handlers = []
        for registered_type, subscriptions in list(self._subscriptions.items()):
            if isinstance(event, registered_type):
                handlers.extend(s.handler for s in subscriptions)
        return handlers

    async def publish(self, event: Event) -> None:
        """Dispatch an event to all handlers, awaiting async ones in order."""
        self._event_count += 1
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Handler error for {type(event).__name__}: {e}")

    def publish_nowait(self, event: Event) -> None:
        """
        Dispatch from synchronous code (e.g. transport callbacks).

        Sync handlers run immediately; async handlers are scheduled on the
        running loop.
        """
        self._event_count += 1
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Handler error for {type(event).__name__}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async handler error: {error}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for handlers scheduled by publish_nowait to finish."""
        if not self._pending:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*list(self._pending), return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Event handler drain timed out")

    def clear(self) -> None:
        """Remove all subscriptions."""
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.active = False
        self._subscriptions.clear()

    def handler_count(self, event_type: Optional[type] = None) -> int:
        """Number of registrations, optionally for one event type."""
        if event_type is not None:
            return len(self._subscriptions.get(event_type, []))
        return sum(len(s) for s in self._subscriptions.values())

    @property
    def event_count(self) -> int:
        """Total events published."""
        return self._event_count
