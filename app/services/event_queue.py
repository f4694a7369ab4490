"""
At-least-once event queue on Redis lists.

Each queue ``q`` is a Redis list; ``pull`` atomically moves messages into
``q:inflight`` with LMOVE, so a consumer that dies mid-batch leaves them there
instead of losing them. ``ack`` removes a message from the in-flight list,
``nack`` puts it back on the live list (optionally with updated attributes),
and ``dead_letter`` moves it to another queue in the same MULTI/EXEC.

The pull time of every in-flight message is kept in the ``q:inflight:pulled``
sorted set. ``restore_inflight`` only reclaims messages pulled longer ago than
the visibility timeout, so a run that starts while another is still working
leaves that run's messages alone.
"""
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import redis

from app.config import settings
from app.database import utcnow
from app.errors import TransientInfraError

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    """A message pulled from a queue, remembering the exact payload it was stored as."""

    queue: str
    body: dict
    attributes: dict = field(default_factory=dict)
    message_id: str = ""
    published_at: Optional[str] = None
    raw: Optional[str] = None


class EventQueue(ABC):
    """Publish / pull / ack / nack / dead-letter port."""

    @abstractmethod
    def publish(self, queue: str, body: dict, attributes: Optional[dict] = None) -> str:
        """Append a message; returns its message id."""

    @abstractmethod
    def pull(self, queue: str, max_messages: int) -> list[QueueMessage]:
        """Take up to ``max_messages`` messages into the in-flight set."""

    @abstractmethod
    def ack(self, message: QueueMessage) -> None:
        """Mark a pulled message as durably processed."""

    @abstractmethod
    def nack(self, message: QueueMessage, attributes: Optional[dict] = None) -> None:
        """Return a pulled message for redelivery."""

    @abstractmethod
    def dead_letter(self, message: QueueMessage, target_queue: str, body_extra: dict, attributes: Optional[dict] = None) -> None:
        """Move a pulled message onto ``target_queue`` with extra body fields."""

    @abstractmethod
    def length(self, queue: str) -> int:
        """Number of messages waiting (not in flight)."""

    @abstractmethod
    def restore_inflight(self, queue: str, min_idle_seconds: Optional[int] = None) -> int:
        """Return in-flight messages idle longer than ``min_idle_seconds`` to the live queue."""


class RedisEventQueue(EventQueue):
    # Attempts at reclaiming before giving the in-flight list back to busier consumers
    RESTORE_ATTEMPTS = 10

    def __init__(self, redis_client: redis.Redis, now: Callable[[], datetime] = utcnow):
        self.redis = redis_client
        self.now = now

    @staticmethod
    def inflight_key(queue: str) -> str:
        return f"{queue}:inflight"

    @staticmethod
    def pulled_key(queue: str) -> str:
        return f"{queue}:inflight:pulled"

    def _stamp(self) -> float:
        return self.now().timestamp()

    @staticmethod
    def _encode(body: dict, attributes: dict, message_id: str, published_at: str) -> str:
        return json.dumps(
            {
                "messageId": message_id,
                "publishedAt": published_at,
                "attributes": attributes,
                "body": body,
            },
            ensure_ascii=False,
        )

    @staticmethod
    def _decode(queue: str, raw: str) -> QueueMessage:
        envelope = json.loads(raw)
        return QueueMessage(
            queue=queue,
            body=envelope.get("body") or {},
            attributes=envelope.get("attributes") or {},
            message_id=envelope.get("messageId", ""),
            published_at=envelope.get("publishedAt"),
            raw=raw,
        )

    def publish(self, queue: str, body: dict, attributes: Optional[dict] = None) -> str:
        message_id = uuid.uuid4().hex
        raw = self._encode(body, attributes or {}, message_id, self.now().isoformat())
        try:
            self.redis.lpush(queue, raw)
        except redis.RedisError as e:
            raise TransientInfraError(f"Could not publish to {queue}") from e
        return message_id

    def _claim_next(self, queue: str) -> Optional[str]:
        """Move the oldest message into flight and stamp its pull time in one transaction."""
        with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    pipe.watch(queue)
                    raw = pipe.lindex(queue, -1)
                    if raw is None:
                        return None
                    pipe.multi()
                    pipe.lmove(queue, self.inflight_key(queue), "RIGHT", "LEFT")
                    pipe.zadd(self.pulled_key(queue), {raw: self._stamp()})
                    pipe.execute()
                    return raw
                except redis.WatchError:
                    # A publisher or another consumer touched the queue; look again
                    continue

    def pull(self, queue: str, max_messages: int) -> list[QueueMessage]:
        messages = []
        try:
            for _ in range(max_messages):
                raw = self._claim_next(queue)
                if raw is None:
                    break
                try:
                    messages.append(self._decode(queue, raw))
                except (ValueError, TypeError):
                    # Undecodable payload: keep it visible to operators
                    logger.error("Dropping undecodable message from %s into dead letters", queue)
                    pipe = self.redis.pipeline(transaction=True)
                    pipe.lrem(self.inflight_key(queue), 1, raw)
                    pipe.zrem(self.pulled_key(queue), raw)
                    pipe.lpush(f"{queue}:undecodable", raw)
                    pipe.execute()
        except redis.RedisError as e:
            raise TransientInfraError(f"Could not pull from {queue}") from e
        return messages

    def ack(self, message: QueueMessage) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.inflight_key(message.queue), 1, message.raw)
        pipe.zrem(self.pulled_key(message.queue), message.raw)
        pipe.execute()

    def _move(self, message: QueueMessage, target_queue: str, body: dict, attributes: dict) -> None:
        raw = self._encode(
            body, attributes, message.message_id, message.published_at or self.now().isoformat()
        )
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.inflight_key(message.queue), 1, message.raw)
        pipe.zrem(self.pulled_key(message.queue), message.raw)
        pipe.lpush(target_queue, raw)
        pipe.execute()

    def nack(self, message: QueueMessage, attributes: Optional[dict] = None) -> None:
        merged = dict(message.attributes)
        merged.update(attributes or {})
        self._move(message, message.queue, message.body, merged)

    def dead_letter(self, message: QueueMessage, target_queue: str, body_extra: dict, attributes: Optional[dict] = None) -> None:
        body = dict(message.body)
        body.update(body_extra)
        merged = dict(message.attributes)
        merged.update(attributes or {})
        self._move(message, target_queue, body, merged)

    def length(self, queue: str) -> int:
        return self.redis.llen(queue)

    def restore_inflight(self, queue: str, min_idle_seconds: Optional[int] = None) -> int:
        """
        Put messages abandoned by a dead consumer back on the live queue.

        Only messages pulled more than ``min_idle_seconds`` ago are reclaimed
        (default: the visibility timeout, which outlasts every consumer's time
        limit). The selection and the move happen under WATCH, so a message
        acked or dead-lettered in between is never resurrected.
        """
        if min_idle_seconds is None:
            min_idle_seconds = settings.inflight_visibility_timeout_seconds
        inflight = self.inflight_key(queue)
        pulled = self.pulled_key(queue)
        cutoff = self._stamp() - min_idle_seconds

        with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(self.RESTORE_ATTEMPTS):
                try:
                    pipe.watch(inflight, pulled)
                    # Newest pulls sit on the left; moving left-first keeps the oldest next in line
                    stale = []
                    for raw in pipe.lrange(inflight, 0, -1):
                        pulled_at = pipe.zscore(pulled, raw)
                        if pulled_at is None or pulled_at <= cutoff:
                            stale.append(raw)
                    if not stale:
                        return 0
                    pipe.multi()
                    for raw in stale:
                        pipe.lrem(inflight, 1, raw)
                        pipe.zrem(pulled, raw)
                        pipe.rpush(queue, raw)
                    pipe.execute()
                except redis.WatchError:
                    continue
                logger.warning("Restored %d in-flight messages to %s", len(stale), queue)
                return len(stale)

        logger.warning("In-flight list of %s kept changing; nothing reclaimed this run", queue)
        return 0
