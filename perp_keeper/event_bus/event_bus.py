"""
EventBus - typed outbound events with backpressure and handler timeouts.

The keeper never calls a subscriber directly: producers put Event values on
the bus queue and the consumer task dispatches them to registered handlers.
A slow or failing handler cannot stall a liquidation.
"""

import asyncio
import itertools
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Outbound keeper events."""
    LIQUIDATION_SUCCESS = "liquidation.success"
    LIQUIDATION_FAILURE = "liquidation.failure"
    PRICE_UPDATED = "price.updated"
    CRANK_SUCCESS = "crank.success"
    CRANK_FAILURE = "crank.failure"
    CRANK_STALE = "crank.stale"
    MARKET_DISCOVERED = "market.discovered"
    MARKET_REMOVED = "market.removed"


class EventPriority(Enum):
    """Event priority for queue ordering."""
    LOW = 3
    NORMAL = 2
    HIGH = 1
    CRITICAL = 0


@dataclass
class Event:
    """Unified event structure."""
    event_type: EventType
    market: str
    data: Dict[str, Any]
    priority: EventPriority = EventPriority.NORMAL
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "market": self.market,
            "data": self.data,
            "trace_id": self.trace_id,
            "timestamp": self.timestamp,
            "source": self.source,
        }


class EventHandler(ABC):
    """Abstract base for event handlers."""

    @abstractmethod
    async def handle(self, event: Event) -> Tuple[bool, Optional[str]]:
        """
        Handle an event.

        Returns:
            (success, error_message)
        """

    @abstractmethod
    def handles(self, event_type: EventType) -> bool:
        """Check if this handler processes this event type."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Handler name for logging."""


class CallbackHandler(EventHandler):
    """Adapts an async callable into a handler."""

    def __init__(
        self,
        callback: Callable[[Event], Awaitable[None]],
        event_types: Optional[Iterable[EventType]] = None,
        name: Optional[str] = None,
    ):
        self._callback = callback
        self._event_types = set(event_types) if event_types else set(EventType)
        self._name = name or getattr(callback, "__name__", "callback")

    async def handle(self, event: Event) -> Tuple[bool, Optional[str]]:
        await self._callback(event)
        return True, None

    def handles(self, event_type: EventType) -> bool:
        return event_type in self._event_types

    @property
    def name(self) -> str:
        return self._name


class LoggingEventHandler(EventHandler):
    """Writes every event to the keeper log."""

    LEVELS = {
        EventType.LIQUIDATION_FAILURE: logging.WARNING,
        EventType.CRANK_FAILURE: logging.WARNING,
        EventType.CRANK_STALE: logging.WARNING,
        EventType.PRICE_UPDATED: logging.DEBUG,
        EventType.CRANK_SUCCESS: logging.DEBUG,
    }

    async def handle(self, event: Event) -> Tuple[bool, Optional[str]]:
        level = self.LEVELS.get(event.event_type, logging.INFO)
        logger.log(level, f"event {event.event_type.value} market={event.market[:8]} {event.data}")
        return True, None

    def handles(self, event_type: EventType) -> bool:
        return True

    @property
    def name(self) -> str:
        return "log"


class EventBus:
    """
    Event dispatch with backpressure and timeout handling.

    Features:
    - Bounded async queue, producers wait at most emit_timeout when full
    - Priority ordering, FIFO within a priority
    - Handler timeout wrapping
    - Bounded dead letter queue for failed deliveries
    """

    def __init__(
        self,
        max_queue_size: int = 1000,
        handler_timeout: float = 10.0,
        dlq_retention: int = 100,
        emit_timeout: float = 5.0,
    ):
        self.max_queue_size = max_queue_size
        self.handler_timeout = handler_timeout
        self.dlq_retention = dlq_retention
        self.emit_timeout = emit_timeout

        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_queue_size)
        self._sequence = itertools.count()
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._dead_letter_queue: List[Tuple[Event, str]] = []

        self._stats = {
            "events_emitted": 0,
            "events_processed": 0,
            "events_failed": 0,
            "handler_timeouts": 0,
        }

        self._running = False
        self._consumer_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(self, handler: EventHandler, event_types: Optional[Iterable[EventType]] = None) -> None:
        """Register a handler for specific event types (all types it handles by default)."""
        types = list(event_types) if event_types else [t for t in EventType if handler.handles(t)]
        for event_type in types:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug(f"Registered handler {handler.name} for {event_type.value}")

    def subscribe(
        self,
        callback: Callable[[Event], Awaitable[None]],
        event_types: Optional[Iterable[EventType]] = None,
    ) -> EventHandler:
        handler = CallbackHandler(callback, event_types)
        self.register_handler(handler, event_types)
        return handler

    async def emit(self, event: Event) -> bool:
        """
        Queue an event.

        Returns:
            True if queued, False if dropped because the queue stayed full
        """
        if self._queue.full():
            logger.warning(
                f"EventBus queue full ({self._queue.qsize()}/{self.max_queue_size}), "
                f"blocking {event.event_type.value} (trace: {event.trace_id})"
            )
        try:
            await asyncio.wait_for(
                self._queue.put((event.priority.value, next(self._sequence), event)),
                timeout=self.emit_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Timeout queueing event {event.event_type.value} (queue full)")
            self._dead_letter_queue.append((event, "Queue timeout - backpressure exceeded"))
            self._trim_dlq()
            return False
        self._stats["events_emitted"] += 1
        return True

    async def publish(
        self,
        event_type: EventType,
        market: str,
        data: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL,
        source: str = "",
    ) -> bool:
        return await self.emit(Event(event_type, market, data, priority=priority, source=source))

    async def _dispatch_event(self, event: Event) -> None:
        handlers = self._handlers.get(event.event_type, [])
        if not handlers:
            logger.debug(f"No handlers for {event.event_type.value} (trace: {event.trace_id})")
            return

        for handler in handlers:
            start = time.monotonic()
            try:
                success, error = await asyncio.wait_for(
                    handler.handle(event),
                    timeout=self.handler_timeout,
                )
            except asyncio.TimeoutError:
                success = False
                error = f"Handler timeout ({self.handler_timeout}s)"
                self._stats["handler_timeouts"] += 1
            except Exception as e:
                success = False
                error = f"Handler exception: {e}"

            duration_ms = (time.monotonic() - start) * 1000
            if success:
                self._stats["events_processed"] += 1
                logger.debug(
                    f"Handler {handler.name} processed {event.event_type.value} "
                    f"in {duration_ms:.1f}ms (trace: {event.trace_id})"
                )
            else:
                self._stats["events_failed"] += 1
                self._dead_letter_queue.append((event, error or "Handler failed"))
                self._trim_dlq()
                logger.warning(f"Handler {handler.name} failed: {error} (trace: {event.trace_id})")

    async def _consumer(self) -> None:
        logger.info("EventBus consumer started")
        while self._running:
            try:
                _, _, event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._dispatch_event(event)
            finally:
                self._queue.task_done()

    async def dispatch_pending(self) -> int:
        """Dispatch everything currently queued without a consumer task."""
        dispatched = 0
        while not self._queue.empty():
            _, _, event = self._queue.get_nowait()
            try:
                await self._dispatch_event(event)
            finally:
                self._queue.task_done()
            dispatched += 1
        return dispatched

    async def start(self) -> None:
        if self._running:
            logger.warning("EventBus already running")
            return
        self._running = True
        self._consumer_task = asyncio.create_task(self._consumer())
        logger.info("EventBus started")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop the bus after delivering pending events (bounded by timeout)."""
        if not self._running:
            return

        logger.info(f"Stopping EventBus, waiting for {self._queue.qsize()} pending events")
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"EventBus shutdown timeout after {timeout}s, {self._queue.qsize()} events pending")

        self._running = False
        if self._consumer_task:
            await self._consumer_task
            self._consumer_task = None
        logger.info("EventBus stopped")

    def _trim_dlq(self) -> None:
        if len(self._dead_letter_queue) > self.dlq_retention:
            self._dead_letter_queue = self._dead_letter_queue[-self.dlq_retention:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "dlq_size": len(self._dead_letter_queue),
            "max_queue_size": self.max_queue_size,
        }

    def get_dead_letter_queue(self) -> List[Dict[str, Any]]:
        return [
            {
                "event_type": event.event_type.value,
                "market": event.market,
                "trace_id": event.trace_id,
                "error": error,
                "timestamp": event.timestamp,
            }
            for event, error in self._dead_letter_queue
        ]
