from __future__ import annotations

from fastapi import Depends

from piclib.core.config import settings
from piclib.core.redis_client import get_redis
from piclib.db.session import SessionLocal
from piclib.services.blob_store import LocalBlobStore
from piclib.services.ingestion import IngestionCoordinator
from piclib.services.job_queue import RedisJobQueue, build_job_queue
from piclib.services.media_probe import MediaProber
from piclib.services.metadata_store import MetadataStore


def get_metadata_store() -> MetadataStore:
    return MetadataStore(SessionLocal)


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.media_root)


def get_job_queue() -> RedisJobQueue:
    return build_job_queue(get_redis())


def get_coordinator(
    metadata: MetadataStore = Depends(get_metadata_store),
    blobs: LocalBlobStore = Depends(get_blob_store),
    queue: RedisJobQueue = Depends(get_job_queue),
) -> IngestionCoordinator:
    return IngestionCoordinator(metadata, blobs, queue, MediaProber(settings.ffprobe_path))
