from __future__ import annotations

import asyncio
import enum
import logging
import os
from pathlib import Path
from uuid import UUID

import anyio
from pydantic import ValidationError as MessageValidationError

from piclib.core import metrics
from piclib.core.config import settings
from piclib.core.errors import BlobNotFoundError, NotFoundError, StoreInconsistency
from piclib.models.library import File, Folder
from piclib.schemas.messages import (
    JobMessage,
    ProcessPictureMessage,
    ProcessVideoMessage,
    RecalculateFolderMessage,
    parse_message,
)
from piclib.services.blob_store import (
    THUMBNAIL_SIZES,
    BlobStore,
    converted_key,
    local_copy,
    original_key,
    scratch_dir,
    thumbnail_key,
)
from piclib.services.compensation import Compensations
from piclib.services.folder_stats import FolderStatsEngine
from piclib.services.ingestion import JobPublisher, expected_job_count
from piclib.services.metadata_store import MetadataStore
from piclib.services.thumbnails import render_thumbnail
from piclib.services.transcoder import FfmpegTranscoder

logger = logging.getLogger(__name__)


class JobOutcome(str, enum.Enum):
    ACK = "ack"
    REJECT = "reject"


class JobProcessor:
    """Runs one queue message to completion.

    ``handle`` returns ``ACK`` only once every store mutation the message
    implies has committed. Any failure yields ``REJECT`` so the message is
    delivered again; handlers are written so a redelivery converges to the
    same state instead of double counting.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        blobs: BlobStore,
        queue: JobPublisher,
        transcoder: FfmpegTranscoder,
        stats: FolderStatsEngine,
        *,
        frame_offset: str | None = None,
    ) -> None:
        self.metadata = metadata
        self.blobs = blobs
        self.queue = queue
        self.transcoder = transcoder
        self.stats = stats
        self.frame_offset = frame_offset or settings.video_frame_offset

    async def handle(self, raw: str | bytes) -> JobOutcome:
        try:
            message = parse_message(raw)
        except MessageValidationError:
            # Redelivering a malformed payload can never succeed.
            logger.error("job_poison_message", extra={"payload": str(raw)[:512]})
            return JobOutcome.ACK

        log_extra = {"job_type": message.type, "library_id": str(message.library_id)}
        try:
            await self.dispatch(message)
        except BlobNotFoundError as exc:
            if not await self._target_exists(message):
                logger.info("job_obsolete", extra={**log_extra, "detail": exc.detail})
                metrics.record_job_acked(message.type)
                return JobOutcome.ACK
            self._record_inconsistency(StoreInconsistency(exc.detail, job_type=message.type, **exc.context))
            metrics.record_job_rejected(message.type)
            return JobOutcome.REJECT
        except NotFoundError as exc:
            logger.info("job_obsolete", extra={**log_extra, "detail": exc.detail})
            metrics.record_job_acked(message.type)
            return JobOutcome.ACK
        except Exception:
            logger.exception("job_rejected", extra=log_extra)
            metrics.record_job_rejected(message.type)
            return JobOutcome.REJECT
        metrics.record_job_acked(message.type)
        logger.info("job_acked", extra=log_extra)
        return JobOutcome.ACK

    async def dispatch(self, message: JobMessage) -> None:
        if isinstance(message, ProcessPictureMessage):
            await self.process_picture(message.library_id, message.file_id)
        elif isinstance(message, ProcessVideoMessage):
            await self.process_video(message.library_id, message.file_id, convert_to_mp4=message.convert_to_mp4)
        elif isinstance(message, RecalculateFolderMessage):
            await self.recalculate_folder(message.library_id, message.folder_id)
        else:  # pragma: no cover
            raise TypeError(f"Unhandled job message: {type(message).__name__}")

    async def _target_exists(self, message: JobMessage) -> bool:
        if isinstance(message, RecalculateFolderMessage):
            return True
        try:
            await self.metadata.get_file(message.library_id, message.file_id)
        except NotFoundError:
            return False
        return True

    async def process_picture(self, library_id: UUID, file_id: UUID) -> None:
        file, folder = await self.metadata.get_file_with_folder(library_id, file_id)
        await self.metadata.begin_processing(library_id, file_id, expected_job_count(False, False))
        suffix = os.path.splitext(file.name)[1].lower()
        async with local_copy(self.blobs, original_key(library_id, folder.path, file.id), suffix=suffix) as source:
            await self._render_thumbnails(file, folder, source)

    async def process_video(self, library_id: UUID, file_id: UUID, *, convert_to_mp4: bool) -> None:
        file, folder = await self.metadata.get_file_with_folder(library_id, file_id)
        await self.metadata.begin_processing(library_id, file_id, expected_job_count(True, convert_to_mp4))
        suffix = os.path.splitext(file.name)[1].lower()
        async with local_copy(self.blobs, original_key(library_id, folder.path, file.id), suffix=suffix) as source:
            async with scratch_dir("piclib-frame-") as frame_dir:
                frame = await self.transcoder.extract_frame(source, frame_dir, offset=self.frame_offset)
                await self._render_thumbnails(file, folder, frame)
            if convert_to_mp4:
                async with scratch_dir("piclib-cnv-") as convert_dir:
                    converted = await self.transcoder.transcode(source, convert_dir, target_format="mp4")
                    size = (await anyio.Path(converted).stat()).st_size
                    key = converted_key(library_id, folder.path, file.id)
                    async with Compensations("process_video", file_id=file.id, key=key) as undo:
                        await self.blobs.put(key, converted)
                        undo.push("delete_converted", lambda: self.blobs.delete(key))
                        await self.metadata.set_converted_bytes(library_id, file.id, size)
                await self._complete_job(file, folder)

    async def recalculate_folder(self, library_id: UUID, folder_id: UUID) -> None:
        result = await self.stats.recalculate(library_id, folder_id)
        if result.parent_id is not None:
            await self.queue.publish(RecalculateFolderMessage(library_id=library_id, folder_id=result.parent_id))

    async def _render_thumbnails(self, file: File, folder: Folder, source: Path) -> None:
        results = await asyncio.gather(
            *(self._render_thumbnail(file, folder, source, size) for size in THUMBNAIL_SIZES),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _render_thumbnail(self, file: File, folder: Folder, source: Path, size: str) -> None:
        data = await anyio.to_thread.run_sync(render_thumbnail, source, size)
        key = thumbnail_key(file.library_id, folder.path, file.id, size)
        # A row deleted meanwhile takes the blob with it.
        async with Compensations("process_picture", file_id=file.id, key=key) as undo:
            await self.blobs.put(key, data)
            undo.push("delete_thumbnail", lambda: self.blobs.delete(key))
            await self.metadata.set_thumbnail_bytes(file.library_id, file.id, size, len(data))
        await self._complete_job(file, folder)

    async def _complete_job(self, file: File, folder: Folder) -> None:
        remaining = await self.metadata.complete_outstanding_job(file.library_id, file.id)
        if remaining == 0:
            logger.info("file_processed", extra={"library_id": str(file.library_id), "file_id": str(file.id)})
            await self.queue.publish(RecalculateFolderMessage(library_id=file.library_id, folder_id=folder.id))

    @staticmethod
    def _record_inconsistency(error: StoreInconsistency) -> None:
        metrics.record_store_inconsistency()
        logger.error(
            "store_inconsistency",
            extra={"detail": error.detail, **{key: str(value) for key, value in error.context.items()}},
        )
