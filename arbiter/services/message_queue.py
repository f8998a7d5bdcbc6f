"""Priority message queue and per-channel message aggregation."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from arbiter.errors import QueueFullError
from arbiter.models.session import ChatMessage, utcnow

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    urgent = "urgent"
    high = "high"
    normal = "normal"
    low = "low"


PRIORITY_RANK = {Priority.urgent: 0, Priority.high: 1, Priority.normal: 2, Priority.low: 3}


class QueueStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


UNFINISHED = (QueueStatus.queued, QueueStatus.processing)


@dataclass
class QueuedMessage:
    message: ChatMessage
    priority: Priority = Priority.normal
    session_id: str | None = None
    status: QueueStatus = QueueStatus.queued
    enqueued_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    error: str | None = None


class QueueObserver:
    """Callbacks for queue item transitions. Override what you need."""

    async def on_queued(self, item: QueuedMessage) -> None:
        pass

    async def on_processing(self, item: QueuedMessage) -> None:
        pass

    async def on_completed(self, item: QueuedMessage) -> None:
        pass

    async def on_failed(self, item: QueuedMessage) -> None:
        pass

    async def on_session_updated(self, session_id: str, message: ChatMessage) -> None:
        pass


Processor = Callable[[QueuedMessage], Awaitable[None]]


class MessageQueue:
    """Bounded priority queue drained by a single consumer task.

    Items are kept in priority bands, FIFO within a band. Capacity counts
    only items still queued or processing; finished items linger until
    ``cleanup`` removes them.
    """

    def __init__(self, max_queue_size: int = 1000, process_delay: float = 0.1) -> None:
        self._items: list[QueuedMessage] = []
        self._session_messages: dict[str, list[QueuedMessage]] = {}
        self._observers: list[QueueObserver] = []
        self._processor: Processor | None = None
        self._max_queue_size = max_queue_size
        self._process_delay = process_delay
        self._task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    def add_observer(self, observer: QueueObserver) -> None:
        self._observers.append(observer)

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor

    async def _dispatch(self, method: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                await getattr(observer, method)(*args)
            except Exception:
                logger.exception("Queue observer %r failed in %s", observer, method)

    def _fire(self, method: str, *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._dispatch(method, *args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def unfinished_count(self) -> int:
        return sum(1 for item in self._items if item.status in UNFINISHED)

    def enqueue(
        self,
        message: ChatMessage,
        session_id: str | None = None,
        priority: Priority = Priority.normal,
    ) -> QueuedMessage:
        """Add a message in priority order.

        Raises:
            QueueFullError: at capacity with no queued low-priority item to drop.
        """
        priority = Priority(priority)
        if self.unfinished_count() >= self._max_queue_size:
            victim = next(
                (
                    item
                    for item in self._items
                    if item.priority is Priority.low and item.status is QueueStatus.queued
                ),
                None,
            )
            if victim is None:
                raise QueueFullError(
                    f"Message queue is full ({self._max_queue_size} items)"
                )
            logger.warning("Queue full, dropping low priority message %s", victim.message.id)
            self._remove(victim)

        item = QueuedMessage(message=message, priority=priority, session_id=session_id)
        rank = PRIORITY_RANK[priority]
        index = next(
            (i for i, other in enumerate(self._items) if PRIORITY_RANK[other.priority] > rank),
            len(self._items),
        )
        self._items.insert(index, item)
        if session_id:
            self._session_messages.setdefault(session_id, []).append(item)

        logger.debug("Enqueued %s (%s) at %d", message.id, priority.value, index)
        self._fire("on_queued", item)
        if self._processor is not None and not self.is_running:
            self.start()
        return item

    def _remove(self, item: QueuedMessage) -> None:
        self._items.remove(item)
        if item.session_id and item.session_id in self._session_messages:
            bucket = self._session_messages[item.session_id]
            if item in bucket:
                bucket.remove(item)
            if not bucket:
                del self._session_messages[item.session_id]

    def associate_with_session(self, message_id: str, session_id: str) -> bool:
        """Tag an already-queued message with a session. Returns False if unknown."""
        for item in self._items:
            if item.message.id != message_id:
                continue
            if item.session_id == session_id:
                return True
            if item.session_id:
                old = self._session_messages.get(item.session_id, [])
                if item in old:
                    old.remove(item)
            item.session_id = session_id
            self._session_messages.setdefault(session_id, []).append(item)
            self._fire("on_session_updated", session_id, item.message)
            return True
        return False

    def get_session_messages(self, session_id: str) -> list[ChatMessage]:
        return [item.message for item in self._session_messages.get(session_id, [])]

    def get_pending_session_messages(self, session_id: str) -> list[ChatMessage]:
        return [
            item.message
            for item in self._session_messages.get(session_id, [])
            if item.status is QueueStatus.queued
        ]

    def get_queued_for_channel(self, channel_id: str) -> list[QueuedMessage]:
        return [
            item
            for item in self._items
            if item.status is QueueStatus.queued and item.message.channel_id == channel_id
        ]

    async def wait_for_batch(self, channel_id: str, window: float) -> list[ChatMessage]:
        """Sleep for window seconds, then return messages still queued for the channel."""
        await asyncio.sleep(window)
        return [item.message for item in self.get_queued_for_channel(channel_id)]

    # -- processing -------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Message queue processing started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Message queue processing stopped")

    def _next_item(self) -> QueuedMessage | None:
        return next((i for i in self._items if i.status is QueueStatus.queued), None)

    async def process_next(self) -> bool:
        """Process a single queued item. Returns False when there was nothing to do."""
        item = self._next_item()
        if item is None or self._processor is None:
            return False

        item.status = QueueStatus.processing
        await self._dispatch("on_processing", item)
        try:
            await self._processor(item)
        except Exception as e:
            item.status = QueueStatus.failed
            item.error = str(e)
            item.processed_at = utcnow()
            logger.exception("Failed to process message %s", item.message.id)
            await self._dispatch("on_failed", item)
        else:
            item.status = QueueStatus.completed
            item.processed_at = utcnow()
            await self._dispatch("on_completed", item)
        return True

    async def _run(self) -> None:
        while True:
            await self.process_next()
            await asyncio.sleep(self._process_delay)

    # -- housekeeping -----------------------------------------------------

    def get_stats(self) -> dict:
        by_status = {s.value: 0 for s in QueueStatus}
        by_priority = {p.value: 0 for p in Priority}
        for item in self._items:
            by_status[item.status.value] += 1
            if item.status in UNFINISHED:
                by_priority[item.priority.value] += 1
        return {
            "total": len(self._items),
            "unfinished": self.unfinished_count(),
            "max_size": self._max_queue_size,
            "by_status": by_status,
            "by_priority": by_priority,
            "sessions": len(self._session_messages),
            "running": self.is_running,
        }

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Drop finished items older than max_age seconds. Returns how many were removed."""
        cutoff = utcnow() - timedelta(seconds=max_age)
        stale = [
            item
            for item in self._items
            if item.status not in UNFINISHED and (item.processed_at or item.enqueued_at) < cutoff
        ]
        for item in stale:
            self._remove(item)
        if stale:
            logger.debug("Cleaned up %d finished queue items", len(stale))
        return len(stale)


@dataclass
class AggregateResult:
    should_aggregate: bool
    messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class _Buffer:
    messages: list[ChatMessage] = field(default_factory=list)
    last_activity: datetime = field(default_factory=utcnow)


class MessageAggregator:
    """Groups rapid-fire messages per channel over a time window."""

    def __init__(self, window: float = 3.0, clock: Callable[[], datetime] = utcnow) -> None:
        self._window = timedelta(seconds=window)
        self._clock = clock
        self._buffers: dict[str, _Buffer] = {}

    @property
    def window_seconds(self) -> float:
        return self._window.total_seconds()

    def add_message(self, message: ChatMessage) -> AggregateResult:
        """Buffer a message; flush the channel once its oldest message has aged a full window."""
        now = self._clock()
        buffer = self._buffers.setdefault(message.channel_id, _Buffer(last_activity=now))
        buffer.messages.append(message)
        buffer.last_activity = now

        oldest = buffer.messages[0].timestamp
        if now - oldest >= self._window:
            messages = buffer.messages
            del self._buffers[message.channel_id]
            return AggregateResult(should_aggregate=True, messages=messages)
        return AggregateResult(should_aggregate=False)

    def force_aggregate(self, channel_id: str) -> list[ChatMessage]:
        buffer = self._buffers.pop(channel_id, None)
        return buffer.messages if buffer else []

    def get_buffer(self, channel_id: str) -> list[ChatMessage]:
        buffer = self._buffers.get(channel_id)
        return list(buffer.messages) if buffer else []

    def channels(self) -> list[str]:
        return list(self._buffers)

    def cleanup(self, max_age: float = 60.0) -> int:
        cutoff = self._clock() - timedelta(seconds=max_age)
        stale = [cid for cid, buf in self._buffers.items() if buf.last_activity < cutoff]
        for cid in stale:
            del self._buffers[cid]
        return len(stale)
