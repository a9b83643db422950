from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import socket
import time
from collections.abc import Awaitable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar, cast
from uuid import uuid4

from piclib.core.config import settings
from piclib.core.logging_config import configure_logging, correlation_id_ctx_var
from piclib.core.redis_client import close_redis, get_redis
from piclib.core.sentry import init_sentry
from piclib.db.session import SessionLocal
from piclib.services.blob_store import LocalBlobStore
from piclib.services.folder_stats import FolderStatsEngine
from piclib.services.job_processor import JobOutcome, JobProcessor
from piclib.services.job_queue import Delivery, RedisJobQueue, build_job_queue
from piclib.services.metadata_store import MetadataStore
from piclib.services.transcoder import FfmpegTranscoder

logger = logging.getLogger(__name__)
T = TypeVar("T")
HEARTBEAT_TTL_SECONDS = max(10, int(settings.worker_heartbeat_ttl_seconds or 30))


def build_processor(queue: RedisJobQueue) -> JobProcessor:
    metadata = MetadataStore(SessionLocal)
    return JobProcessor(
        metadata,
        LocalBlobStore(settings.media_root),
        queue,
        FfmpegTranscoder(settings.ffmpeg_path),
        FolderStatsEngine(metadata),
    )


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(worker_id: str, *, in_flight: int) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "app_version": (settings.app_version or "").strip() or None,
        "in_flight": in_flight,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


def _write_heartbeat_file(payload: dict[str, object]) -> None:
    try:
        target = Path(settings.worker_heartbeat_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except Exception:
        logger.exception("job_worker_heartbeat_file_failed")


async def _publish_heartbeat(redis: Any, *, worker_id: str, in_flight: int = 0) -> None:
    payload = _heartbeat_payload(worker_id, in_flight=in_flight)
    _write_heartbeat_file(payload)
    if redis is None:
        return
    key = f"{settings.worker_heartbeat_prefix}:{worker_id}"
    await _await_if_needed(
        redis.set(key, json.dumps(payload, separators=(",", ":"), ensure_ascii=False), ex=HEARTBEAT_TTL_SECONDS)
    )


async def handle_delivery(queue: RedisJobQueue, processor: JobProcessor, delivery: Delivery) -> JobOutcome:
    """Process one delivery and settle it on the queue."""
    token = correlation_id_ctx_var.set(uuid4().hex[:12])
    try:
        outcome = await processor.handle(delivery.raw)
        if outcome is JobOutcome.ACK:
            await queue.ack(delivery)
        else:
            await queue.reject(delivery, requeue=True)
        return outcome
    finally:
        correlation_id_ctx_var.reset(token)


class JobWorker:
    """Consumes the jobs queue with at most ``prefetch`` messages in flight."""

    def __init__(
        self,
        queue: RedisJobQueue,
        processor: JobProcessor,
        *,
        prefetch: int | None = None,
        poll_timeout: float | None = None,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.prefetch = max(1, int(prefetch or settings.jobs_prefetch))
        self.poll_timeout = max(0.1, float(poll_timeout or settings.jobs_poll_timeout_seconds))
        self._slots = asyncio.Semaphore(self.prefetch)
        self._tasks: set[asyncio.Task[JobOutcome]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _run_delivery(self, delivery: Delivery) -> JobOutcome:
        try:
            return await handle_delivery(self.queue, self.processor, delivery)
        finally:
            self._slots.release()

    def _on_task_done(self, task: asyncio.Task[JobOutcome]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Settling on the queue failed; the message stays in the
            # processing list and is recovered on the next start.
            logger.error("job_worker_settle_failed", exc_info=exc)

    async def poll_once(self) -> bool:
        """Wait for a free slot and start at most one delivery.

        Returns ``False`` when the queue had nothing within the poll timeout.
        """
        await self._slots.acquire()
        try:
            delivery = await self.queue.consume(self.poll_timeout)
        except BaseException:
            self._slots.release()
            raise
        if delivery is None:
            self._slots.release()
            return False
        task = asyncio.create_task(self._run_delivery(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return True

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self) -> int:
        """Process messages until the queue stays empty for one poll timeout."""
        started = 0
        while await self.poll_once():
            started += 1
        await self.wait_idle()
        # Handlers publish follow-up jobs; keep going until nothing is left.
        if await self.queue.depth() > 0:
            started += await self.drain()
        return started


async def _run_worker_loop(*, redis: Any, worker: JobWorker, worker_id: str, heartbeat_interval: float) -> None:
    logger.info(
        "job_worker_started",
        extra={"worker_id": worker_id, "queue": worker.queue.queue_key, "prefetch": worker.prefetch},
    )
    await worker.queue.recover_inflight()
    last_heartbeat = 0.0
    try:
        while True:
            try:
                now = time.monotonic()
                if now - last_heartbeat >= heartbeat_interval:
                    await _publish_heartbeat(redis, worker_id=worker_id, in_flight=worker.in_flight)
                    last_heartbeat = now
                await worker.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("job_worker_loop_error", extra={"worker_id": worker_id})
                await asyncio.sleep(max(0.5, worker.poll_timeout))
    finally:
        await worker.cancel_all()


async def run_job_worker() -> None:
    redis = get_redis()
    if redis is None:
        raise SystemExit("REDIS_URL is required to run the job worker")
    queue = build_job_queue(redis)
    worker = JobWorker(queue, build_processor(queue))
    heartbeat_interval = max(5.0, float(HEARTBEAT_TTL_SECONDS) / 2.0)
    try:
        await _run_worker_loop(redis=redis, worker=worker, worker_id=_worker_id(), heartbeat_interval=heartbeat_interval)
    finally:
        await close_redis()


async def drain_queue() -> int:
    redis = get_redis()
    if redis is None:
        raise SystemExit("REDIS_URL is required to drain the job queue")
    queue = build_job_queue(redis)
    try:
        await queue.recover_inflight()
        processed = await JobWorker(queue, build_processor(queue)).drain()
        logger.info("job_queue_drained", extra={"processed_count": processed})
        return processed
    finally:
        await close_redis()


async def _await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def main() -> None:  # pragma: no cover
    configure_logging(json_logs=settings.log_json)
    init_sentry(with_fastapi=False)
    try:
        asyncio.run(run_job_worker())
    except KeyboardInterrupt:
        logger.info("job_worker_stopped")


if __name__ == "__main__":  # pragma: no cover
    main()
