"""Reliable Redis list queue for background jobs.

Delivery is at-least-once. A consumer atomically moves a message from the
queue into its own processing list (``BLMOVE``); the message only leaves
the processing list on ``ack`` or ``reject``. Messages left in a
processing list by a crashed consumer are returned to the queue by
``recover_inflight`` when that consumer starts again.

Keys, for a queue named ``Q``:

* ``Q``: pending messages (RPUSH in, LMOVE out from the left)
* ``Q:processing:<consumer>``: messages handed to one consumer
* ``Q:deliveries``: hash of message payload to failed delivery count
* ``Q:dead``: messages rejected ``max_deliveries`` times
"""

from __future__ import annotations

import inspect
import logging
import socket
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar, cast

from redis.exceptions import RedisError

from piclib.core import metrics
from piclib.core.config import settings
from piclib.core.errors import TransientInfrastructureError
from piclib.schemas.messages import JobMessage

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Delivery:
    raw: str
    queue: str


def _normalize_payload(raw: object) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


class RedisJobQueue:
    def __init__(self, redis: Any, *, queue_key: str, consumer_name: str, max_deliveries: int = 5) -> None:
        self.redis = redis
        self.queue_key = queue_key
        self.consumer_name = consumer_name
        self.max_deliveries = max(1, int(max_deliveries))

    @property
    def processing_key(self) -> str:
        return f"{self.queue_key}:processing:{self.consumer_name}"

    @property
    def deliveries_key(self) -> str:
        return f"{self.queue_key}:deliveries"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.queue_key}:dead"

    async def publish(self, message: JobMessage) -> None:
        """Append a message to the queue.

        Raises ``TransientInfrastructureError`` when Redis is not configured
        or cannot be reached. Publishing is never retried here.
        """
        if self.redis is None:
            raise TransientInfrastructureError("Job queue is not configured", queue=self.queue_key)
        payload = message.to_json()
        try:
            await _await_if_needed(self.redis.rpush(self.queue_key, payload))
        except (RedisError, OSError) as exc:
            logger.warning("job_publish_failed", extra={"queue": self.queue_key, "type": message.type})
            raise TransientInfrastructureError("Job queue is unavailable", queue=self.queue_key) from exc
        logger.debug("job_published", extra={"queue": self.queue_key, "type": message.type})

    async def consume(self, timeout: float) -> Delivery | None:
        """Block up to ``timeout`` seconds for the next message."""
        raw = await _await_if_needed(
            self.redis.blmove(self.queue_key, self.processing_key, timeout, src="LEFT", dest="RIGHT")
        )
        if raw is None:
            return None
        return Delivery(raw=_normalize_payload(raw), queue=self.queue_key)

    async def ack(self, delivery: Delivery) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.processing_key, 1, delivery.raw)
        pipe.hdel(self.deliveries_key, delivery.raw)
        await _await_if_needed(pipe.execute())

    async def reject(self, delivery: Delivery, *, requeue: bool = True) -> bool:
        """Return a failed message to the queue.

        Returns ``False`` when the message was dead-lettered instead, either
        because ``requeue`` is false or the delivery limit was reached.
        """
        attempts = int(await _await_if_needed(self.redis.hincrby(self.deliveries_key, delivery.raw, 1)) or 0)
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self.processing_key, 1, delivery.raw)
        if requeue and attempts < self.max_deliveries:
            pipe.rpush(self.queue_key, delivery.raw)
            await _await_if_needed(pipe.execute())
            return True
        pipe.hdel(self.deliveries_key, delivery.raw)
        pipe.rpush(self.dead_letter_key, delivery.raw)
        await _await_if_needed(pipe.execute())
        metrics.record_job_dead_lettered()
        logger.error(
            "job_dead_lettered",
            extra={"queue": self.queue_key, "attempts": attempts, "payload": delivery.raw[:512]},
        )
        return False

    async def recover_inflight(self) -> int:
        """Move every message left in this consumer's processing list back to the queue."""
        moved = 0
        while True:
            raw = await _await_if_needed(self.redis.lmove(self.processing_key, self.queue_key, "RIGHT", "LEFT"))
            if raw is None:
                break
            moved += 1
        if moved:
            logger.warning("job_inflight_recovered", extra={"queue": self.queue_key, "count": moved})
        return moved

    async def depth(self) -> int:
        return int(await _await_if_needed(self.redis.llen(self.queue_key)) or 0)

    async def dead_letter_depth(self) -> int:
        return int(await _await_if_needed(self.redis.llen(self.dead_letter_key)) or 0)


async def _await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def default_consumer_name() -> str:
    return (settings.jobs_consumer_name or "").strip() or socket.gethostname()


def build_job_queue(redis: Any, *, consumer_name: str | None = None) -> RedisJobQueue:
    return RedisJobQueue(
        redis,
        queue_key=settings.jobs_queue_key,
        consumer_name=consumer_name or default_consumer_name(),
        max_deliveries=settings.jobs_max_deliveries,
    )
