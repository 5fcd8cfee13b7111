"""
Scan Engine - Message Bus.

============================================================
PURPOSE
============================================================
Work-distribution bus between the scan pipeline stages.

TOPICS:
- high-threat     HIGH tier alert events
- medium-threat   MEDIUM tier alert events
- webhook-fanout  webhook-only redelivery of an alert event
- scan-deferred   deferred scans handed to the poll worker

DELIVERY:
- Each subscriber receives its own copy of a message
- At-least-once: a failing handler gets the message again
- After max_deliveries failures the copy goes to the topic's
  dead-letter list
- Background consumers run deliveries concurrently, so one slow
  handler call never holds up the rest of its topic

The in-process implementation serves a single deployment; a
broker-backed MessageBus can replace it behind the same interface.

============================================================
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import BusConfig


logger = logging.getLogger(__name__)


Handler = Callable[[Dict[str, Any]], Awaitable[None]]


# ============================================================
# TYPES
# ============================================================

class Topic(Enum):
    """Logical topics."""

    HIGH_THREAT = "high-threat"
    MEDIUM_THREAT = "medium-threat"
    WEBHOOK_FANOUT = "webhook-fanout"
    SCAN_DEFERRED = "scan-deferred"


@dataclass
class Message:
    """Published message."""

    topic: Topic
    payload: Dict[str, Any]
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Delivery:
    """One subscriber's copy of a message."""

    message: Message
    handler: Handler
    attempts: int = 0


@dataclass
class DeadLetter:
    """Copy that exhausted its deliveries."""

    message: Message
    handler_name: str
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================
# INTERFACE
# ============================================================

class MessageBus(ABC):
    """Pub/sub interface used by the pipeline."""

    @abstractmethod
    async def publish(self, topic: Topic, payload: Dict[str, Any]) -> str:
        """Publish a payload, returning the message id."""
        pass

    @abstractmethod
    def subscribe(self, topic: Topic, handler: Handler) -> None:
        """Register a handler for a topic."""
        pass


# ============================================================
# IN-MEMORY BUS
# ============================================================

class InMemoryMessageBus(MessageBus):
    """
    asyncio based bus.

    Run it either with start()/stop() (one consumer task per topic,
    each delivery running in its own task under a shared semaphore)
    or by calling drain() to deliver everything queued so far, one
    delivery at a time.
    """

    def __init__(self, config: Optional[BusConfig] = None):
        self._config = config or BusConfig()
        self._handlers: Dict[Topic, List[Handler]] = {topic: [] for topic in Topic}
        self._queues: Dict[Topic, asyncio.Queue] = {}
        self._dead_letters: Dict[Topic, List[DeadLetter]] = {topic: [] for topic in Topic}
        self._published: List[Message] = []
        self._tasks: List[asyncio.Task] = []
        self._in_flight: Set[asyncio.Task] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _queue(self, topic: Topic) -> asyncio.Queue:
        queue = self._queues.get(topic)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._config.queue_size)
            self._queues[topic] = queue
        return queue

    # --------------------------------------------------------
    # PUBLISH / SUBSCRIBE
    # --------------------------------------------------------

    async def publish(self, topic: Topic, payload: Dict[str, Any]) -> str:
        message = Message(topic=topic, payload=dict(payload))
        self._published.append(message)

        handlers = self._handlers[topic]
        if not handlers:
            logger.debug(f"No subscribers on {topic.value}, message {message.message_id} dropped")
            return message.message_id

        queue = self._queue(topic)
        for handler in handlers:
            await queue.put(Delivery(message=message, handler=handler))

        logger.debug(f"Published {message.message_id} on {topic.value}")
        return message.message_id

    def subscribe(self, topic: Topic, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    def published(self, topic: Optional[Topic] = None) -> List[Message]:
        """Messages published so far, optionally for one topic."""
        if topic is None:
            return list(self._published)
        return [m for m in self._published if m.topic == topic]

    def dead_letters(self, topic: Topic) -> List[DeadLetter]:
        return list(self._dead_letters[topic])

    # --------------------------------------------------------
    # DELIVERY
    # --------------------------------------------------------

    async def _deliver(self, topic: Topic, delivery: Delivery) -> None:
        delivery.attempts += 1
        try:
            await delivery.handler(dict(delivery.message.payload))
        except Exception as e:
            handler_name = getattr(delivery.handler, "__qualname__", repr(delivery.handler))
            if delivery.attempts < self._config.max_deliveries:
                logger.warning(
                    f"Handler {handler_name} failed on {topic.value} "
                    f"(attempt {delivery.attempts}), redelivering: {e}"
                )
                self._queue(topic).put_nowait(delivery)
                return

            logger.error(
                f"Message {delivery.message.message_id} on {topic.value} "
                f"dead-lettered after {delivery.attempts} attempts: {e}"
            )
            self._dead_letters[topic].append(DeadLetter(
                message=delivery.message,
                handler_name=handler_name,
                attempts=delivery.attempts,
                error=str(e),
            ))

    async def drain(self) -> int:
        """
        Deliver queued messages until every queue is empty.

        Messages published by handlers are delivered in the same call.

        Returns:
            Number of deliveries attempted
        """
        delivered = 0
        while True:
            pending = [
                (topic, queue) for topic, queue in self._queues.items()
                if not queue.empty()
            ]
            if not pending:
                return delivered

            for topic, queue in pending:
                while not queue.empty():
                    delivery = queue.get_nowait()
                    try:
                        await self._deliver(topic, delivery)
                    finally:
                        queue.task_done()
                    delivered += 1

    # --------------------------------------------------------
    # BACKGROUND CONSUMERS
    # --------------------------------------------------------

    async def _run_delivery(self, topic: Topic, delivery: Delivery) -> None:
        try:
            await self._deliver(topic, delivery)
        finally:
            self._queue(topic).task_done()
            self._semaphore.release()

    async def _consume(self, topic: Topic) -> None:
        """Hand each delivery to its own task, bounded by the semaphore."""
        queue = self._queue(topic)
        while True:
            delivery = await queue.get()
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_delivery(topic, delivery))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    @property
    def in_flight(self) -> int:
        """Deliveries currently running in background tasks."""
        return len(self._in_flight)

    async def start(self) -> None:
        """Start one consumer task per topic."""
        if self._tasks:
            return
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_deliveries)
        for topic in Topic:
            self._tasks.append(asyncio.create_task(
                self._consume(topic), name=f"bus-{topic.value}"
            ))
        logger.info(
            f"Message bus consumers started "
            f"(max_concurrent={self._config.max_concurrent_deliveries})"
        )

    async def stop(self, timeout_seconds: float = 30.0) -> None:
        """Let queued and running work finish (bounded), then cancel."""
        try:
            await asyncio.wait_for(
                asyncio.gather(*(q.join() for q in self._queues.values())),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Message bus stop timed out with work still queued "
                f"({len(self._in_flight)} deliveries running)"
            )

        tasks = self._tasks + list(self._in_flight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._in_flight.clear()
        logger.info("Message bus consumers stopped")
