import asyncio
import os
import tempfile
from collections.abc import AsyncIterator
from io import BytesIO
from pathlib import Path

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="piclib-test-media-"))
os.environ.setdefault("WORKER_HEARTBEAT_FILE", os.path.join(tempfile.gettempdir(), "piclib-test-heartbeat.json"))

from PIL import Image
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from piclib.core import metrics
from piclib.db.base import Base
from piclib.services.blob_store import LocalBlobStore
from piclib.services.folder_stats import FolderStatsEngine
from piclib.services.ingestion import IngestionCoordinator
from piclib.services.job_processor import JobProcessor
from piclib.services.job_queue import RedisJobQueue
from piclib.services.media_probe import ProbeResult, probe_picture
from piclib.services.metadata_store import MetadataStore
from piclib.workers.job_worker import JobWorker

import piclib.models  # noqa: F401


class RedisStub:
    """In-memory subset of the redis.asyncio client used by the job queue."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, int]] = {}
        self.values: dict[str, str] = {}
        self.fail_writes = False

    def _list(self, key: str) -> list[str]:
        return self.lists.setdefault(key, [])

    async def rpush(self, key: str, *values: str) -> int:
        if self.fail_writes:
            raise RedisConnectionError("redis is down")
        self._list(key).extend(values)
        return len(self._list(key))

    async def lmove(self, src_key: str, dest_key: str, src: str = "LEFT", dest: str = "RIGHT") -> str | None:
        source = self._list(src_key)
        if not source:
            return None
        value = source.pop(0 if src == "LEFT" else -1)
        target = self._list(dest_key)
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, src_key: str, dest_key: str, timeout: float, src: str = "LEFT", dest: str = "RIGHT") -> str | None:
        value = await self.lmove(src_key, dest_key, src, dest)
        if value is None:
            # Stand in for the blocking wait so polling loops yield.
            await asyncio.sleep(min(float(timeout), 0.01))
        return value

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._list(key)
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def llen(self, key: str) -> int:
        return len(self._list(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = bucket.get(field, 0) + amount
        return bucket[field]

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.setdefault(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        return True

    def pipeline(self, transaction: bool = True) -> "_PipelineStub":
        return _PipelineStub(self)


class _PipelineStub:
    def __init__(self, redis: RedisStub) -> None:
        self._redis = redis
        self._calls: list[tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        def _queue(*args):
            self._calls.append((name, args))
            return self

        return _queue

    async def execute(self) -> list:
        results = []
        for name, args in self._calls:
            results.append(await getattr(self._redis, name)(*args))
        self._calls.clear()
        return results


class ProberStub:
    """Real Pillow probing for pictures; fixed dimensions for videos."""

    def __init__(self) -> None:
        self.calls: list[tuple[Path, str]] = []

    async def probe(self, path: Path, kind: str) -> ProbeResult:
        self.calls.append((path, kind))
        if kind == "picture":
            return probe_picture(path)
        return ProbeResult(width=640, height=360, format="mov")


class TranscoderStub:
    def __init__(self, converted_size: int = 4096) -> None:
        self.converted_size = converted_size
        self.frames = 0
        self.transcodes = 0

    async def extract_frame(self, source: Path, dest_dir: Path, *, offset: str = "00:00:02") -> Path:
        self.frames += 1
        target = dest_dir / "frame.jpg"
        Image.new("RGB", (640, 360), (20, 120, 200)).save(target, format="JPEG")
        return target

    async def transcode(self, source: Path, dest_dir: Path, *, target_format: str = "mp4") -> Path:
        self.transcodes += 1
        target = dest_dir / f"converted.{target_format}"
        target.write_bytes(b"\x00" * self.converted_size)
        return target


def make_jpeg(size: tuple[int, int] = (100, 100), color: tuple[int, int, int] = (200, 40, 40), exif=None) -> bytes:
    buffer = BytesIO()
    img = Image.new("RGB", size, color)
    if exif is not None:
        img.save(buffer, format="JPEG", exif=exif)
    else:
        img.save(buffer, format="JPEG")
    return buffer.getvalue()


def write_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'piclib.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def metadata(session_factory) -> MetadataStore:
    return MetadataStore(session_factory)


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def redis_stub() -> RedisStub:
    return RedisStub()


@pytest.fixture
def queue(redis_stub: RedisStub) -> RedisJobQueue:
    return RedisJobQueue(redis_stub, queue_key="test:jobs", consumer_name="tester", max_deliveries=3)


@pytest.fixture
def prober() -> ProberStub:
    return ProberStub()


@pytest.fixture
def transcoder() -> TranscoderStub:
    return TranscoderStub()


@pytest.fixture
def coordinator(metadata, blobs, queue, prober) -> IngestionCoordinator:
    return IngestionCoordinator(metadata, blobs, queue, prober)


@pytest.fixture
def processor(metadata, blobs, queue, transcoder) -> JobProcessor:
    return JobProcessor(metadata, blobs, queue, transcoder, FolderStatsEngine(metadata))


@pytest.fixture
def worker(queue, processor) -> JobWorker:
    return JobWorker(queue, processor, prefetch=4, poll_timeout=0.1)
