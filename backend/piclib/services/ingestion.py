from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from uuid import UUID, uuid4

import anyio
from sqlalchemy.exc import IntegrityError

from piclib.core import metrics
from piclib.core.errors import StoreInconsistency, TransientInfrastructureError, UnsupportedFormat, ValidationError
from piclib.models.library import File, Folder, Library
from piclib.schemas.library import (
    FileUpdate,
    FolderAdd,
    FolderUpdate,
    LibraryAdd,
    LibraryUpdate,
    StatisticsRead,
)
from piclib.schemas.messages import (
    JobMessage,
    ProcessPictureMessage,
    ProcessVideoMessage,
    RecalculateFolderMessage,
)
from piclib.services.blob_store import (
    THUMBNAIL_SIZES,
    BlobStore,
    artifact_keys,
    converted_key,
    folder_prefix,
    original_key,
    thumbnail_key,
)
from piclib.services.compensation import Compensations
from piclib.services.media_probe import MediaKind, MediaProber
from piclib.services.metadata_store import MetadataStore, name_key

logger = logging.getLogger(__name__)

PICTURE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".tif", ".tiff"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".wmv", ".avi"})
PICTURE_JOB_COUNT = len(THUMBNAIL_SIZES)
MAX_NAME_ATTEMPTS = 5

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".avi": "video/x-msvideo",
}


class JobPublisher(Protocol):
    async def publish(self, message: JobMessage) -> None: ...


@dataclass(slots=True)
class BlobContent:
    stream: AsyncIterator[bytes]
    media_type: str
    filename: str


def media_kind(filename: str) -> MediaKind:
    ext = os.path.splitext(filename)[1].lower()
    if ext in PICTURE_EXTENSIONS:
        return "picture"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    raise UnsupportedFormat(f"Unsupported file type: {ext or filename}", filename=filename)


def needs_conversion(filename: str) -> bool:
    return os.path.splitext(filename)[1].lower() != ".mp4"


def expected_job_count(is_video: bool, convert_to_mp4: bool) -> int:
    return PICTURE_JOB_COUNT + (1 if is_video and convert_to_mp4 else 0)


def unique_name(filename: str, taken: set[str]) -> str:
    """First of ``X.ext``, ``X(2).ext``, ``X(3).ext``... not in ``taken`` (case-insensitive)."""
    stem, ext = os.path.splitext(filename)
    candidate = filename
    counter = 2
    while name_key(candidate) in taken:
        candidate = f"{stem}({counter}){ext}"
        counter += 1
    return candidate


def _clean_filename(filename: str) -> str:
    name = Path(str(filename or "").replace("\\", "/")).name.strip()
    if not name:
        raise ValidationError("A file name is required")
    return name


class IngestionCoordinator:
    """Entry point for every change to libraries, folders and files.

    Multi-store operations run their steps in sequence; when a later step
    fails the earlier ones are undone and the caller sees the original
    error.
    """

    def __init__(self, metadata: MetadataStore, blobs: BlobStore, queue: JobPublisher, prober: MediaProber) -> None:
        self.metadata = metadata
        self.blobs = blobs
        self.queue = queue
        self.prober = prober

    # Files

    async def import_file(
        self,
        library_id: UUID,
        folder_id: UUID,
        local_path: Path,
        filename: str,
        mime_type: str | None = None,
        size_bytes: int | None = None,
    ) -> File:
        filename = _clean_filename(filename)
        kind = media_kind(filename)
        probe = await self.prober.probe(local_path, kind)
        folder = await self.metadata.get_folder(library_id, folder_id)

        file_id = uuid4()
        is_video = kind == "video"
        convert = is_video and needs_conversion(filename)
        if size_bytes is None:
            size_bytes = (await anyio.Path(local_path).stat()).st_size
        ext = os.path.splitext(filename)[1].lower()
        key = original_key(library_id, folder.path, file_id)

        await self.blobs.put(key, local_path)
        async with Compensations("import_file", library_id=library_id, file_id=file_id) as undo:
            undo.push("delete_original", lambda: self.blobs.delete(key))
            meta = probe.metadata
            file = await self._insert_with_unique_name(
                folder,
                filename,
                id=file_id,
                library_id=library_id,
                folder_id=folder.id,
                mime_type=mime_type or _MIME_TYPES.get(ext, "application/octet-stream"),
                is_video=is_video,
                width=probe.width,
                height=probe.height,
                original_bytes=int(size_bytes),
                is_processing=True,
                outstanding_jobs=expected_job_count(is_video, convert),
                title=meta.title,
                comments=meta.comments,
                tags=list(meta.tags),
                camera_make=meta.camera_make,
                camera_model=meta.camera_model,
                latitude=meta.latitude,
                longitude=meta.longitude,
                altitude=meta.altitude,
                captured_at=meta.captured_at,
            )
        metrics.record_file_imported()
        logger.info(
            "file_imported",
            extra={"library_id": str(library_id), "folder_id": str(folder.id), "file_id": str(file_id), "file_name": file.name},
        )

        message: JobMessage
        if is_video:
            message = ProcessVideoMessage(library_id=library_id, file_id=file_id, convert_to_mp4=convert)
        else:
            message = ProcessPictureMessage(library_id=library_id, file_id=file_id)
        await self._publish_after_commit(message, operation="import_file", file_id=file_id)
        return file

    async def _insert_with_unique_name(self, folder: Folder, filename: str, **values: Any) -> File:
        attempt = 1
        while True:
            taken = await self.metadata.get_sibling_name_keys(folder.id)
            name = unique_name(filename, taken)
            try:
                return await self.metadata.add_file(name=name, **values)
            except IntegrityError:
                if attempt >= MAX_NAME_ATTEMPTS:
                    raise
                logger.info(
                    "file_name_conflict_retry",
                    extra={"folder_id": str(folder.id), "file_name": name, "attempt": attempt},
                )
            attempt += 1

    async def get_files(self, library_id: UUID, folder_id: UUID) -> list[File]:
        await self.metadata.get_folder(library_id, folder_id)
        return await self.metadata.get_files(library_id, folder_id)

    async def get_file(self, library_id: UUID, file_id: UUID) -> File:
        return await self.metadata.get_file(library_id, file_id)

    async def update_file(self, library_id: UUID, file_id: UUID, payload: FileUpdate) -> File:
        file = await self.metadata.get_file(library_id, file_id)
        fields = payload.model_dump(exclude_unset=True)
        if fields.get("tags", []) is None:
            fields["tags"] = []
        new_name = fields.pop("name", None)
        if new_name is not None:
            new_name = _clean_filename(new_name)
            old_ext = os.path.splitext(file.name)[1].lower()
            new_ext = os.path.splitext(new_name)[1].lower()
            if old_ext != new_ext:
                raise ValidationError(
                    "Renaming a file cannot change its extension", file_id=str(file_id), extension=old_ext
                )
            if name_key(new_name) != file.name_key:
                taken = await self.metadata.get_sibling_name_keys(file.folder_id)
                if name_key(new_name) in taken:
                    raise ValidationError("A file with this name already exists", file_name=new_name)
            fields["name"] = new_name
        if not fields:
            return file
        try:
            return await self.metadata.update_file_fields(library_id, file_id, fields)
        except IntegrityError as exc:
            raise ValidationError("A file with this name already exists", file_name=new_name) from exc

    async def delete_file(self, library_id: UUID, file_id: UUID) -> None:
        file, folder = await self.metadata.get_file_with_folder(library_id, file_id)
        await self.metadata.delete_file(library_id, file_id)
        for key in artifact_keys(library_id, folder.path, file.id):
            await self._delete_blob_logged(key, operation="delete_file", file_id=file_id)
        logger.info("file_deleted", extra={"library_id": str(library_id), "file_id": str(file_id)})
        await self._publish_after_commit(
            RecalculateFolderMessage(library_id=library_id, folder_id=folder.id),
            operation="delete_file",
            file_id=file_id,
        )

    async def get_file_contents(self, library_id: UUID, file_id: UUID) -> BlobContent:
        file, folder = await self.metadata.get_file_with_folder(library_id, file_id)
        if file.is_video and needs_conversion(file.name) and file.converted_bytes > 0:
            stem = os.path.splitext(file.name)[0]
            stream = await self.blobs.get(converted_key(library_id, folder.path, file.id))
            return BlobContent(stream=stream, media_type="video/mp4", filename=f"{stem}.mp4")
        stream = await self.blobs.get(original_key(library_id, folder.path, file.id))
        return BlobContent(stream=stream, media_type=file.mime_type, filename=file.name)

    async def get_file_thumbnail(self, library_id: UUID, file_id: UUID, size: str) -> BlobContent:
        if size not in THUMBNAIL_SIZES:
            raise ValidationError(f"Unknown thumbnail size: {size}", size=size)
        file, folder = await self.metadata.get_file_with_folder(library_id, file_id)
        stream = await self.blobs.get(thumbnail_key(library_id, folder.path, file.id, size))
        stem = os.path.splitext(file.name)[0]
        return BlobContent(stream=stream, media_type="image/jpeg", filename=f"{stem}_{size}.jpg")

    # Libraries

    async def get_libraries(self) -> list[Library]:
        return await self.metadata.get_libraries()

    async def get_library(self, library_id: UUID) -> Library:
        return await self.metadata.get_library(library_id)

    async def add_library(self, payload: LibraryAdd) -> Library:
        library_id = uuid4()
        prefix = folder_prefix(library_id, "")
        await self.blobs.ensure_prefix(prefix)
        async with Compensations("add_library", library_id=library_id) as undo:
            undo.push("delete_prefix", lambda: self.blobs.delete_prefix(prefix))
            library = await self.metadata.add_library(
                library_id,
                name=payload.name,
                description=payload.description,
                time_zone=payload.time_zone,
                root_folder_id=uuid4(),
            )
        logger.info("library_created", extra={"library_id": str(library_id)})
        return library

    async def update_library(self, library_id: UUID, payload: LibraryUpdate) -> Library:
        fields = payload.model_dump(exclude_unset=True)
        # Explicit nulls only clear the optional description.
        fields = {key: value for key, value in fields.items() if value is not None or key == "description"}
        if not fields:
            return await self.metadata.get_library(library_id)
        return await self.metadata.update_library(library_id, fields)

    async def delete_library(self, library_id: UUID) -> None:
        await self.metadata.delete_library(library_id)
        logger.info("library_deleted", extra={"library_id": str(library_id)})
        await self._delete_prefix_logged(folder_prefix(library_id, ""), operation="delete_library")

    # Folders

    async def get_folders(self, library_id: UUID, parent_id: UUID | None = None) -> list[Folder]:
        await self.metadata.get_library(library_id)
        return await self.metadata.get_folders(library_id, parent_id)

    async def get_folder(self, library_id: UUID, folder_id: UUID) -> Folder:
        return await self.metadata.get_folder(library_id, folder_id)

    async def add_folder(self, library_id: UUID, payload: FolderAdd) -> Folder:
        parent = await self.metadata.get_folder(library_id, payload.parent_id)
        folder_id = uuid4()
        path = f"{parent.path}/{folder_id}" if parent.path else str(folder_id)
        prefix = folder_prefix(library_id, path)
        await self.blobs.ensure_prefix(prefix)
        async with Compensations("add_folder", library_id=library_id, folder_id=folder_id) as undo:
            undo.push("delete_prefix", lambda: self.blobs.delete_prefix(prefix))
            folder = await self.metadata.add_folder(library_id, folder_id, parent=parent, name=payload.name, path=path)
        logger.info("folder_created", extra={"library_id": str(library_id), "folder_id": str(folder_id)})
        return folder

    async def update_folder(self, library_id: UUID, folder_id: UUID, payload: FolderUpdate) -> Folder:
        return await self.metadata.rename_folder(library_id, folder_id, payload.name)

    async def delete_folder(self, library_id: UUID, folder_id: UUID) -> None:
        folder = await self.metadata.get_folder(library_id, folder_id)
        if folder.is_root:
            raise ValidationError("The root folder cannot be deleted", folder_id=str(folder_id))
        await self.metadata.delete_folder_tree(library_id, folder)
        logger.info("folder_deleted", extra={"library_id": str(library_id), "folder_id": str(folder_id)})
        await self._delete_prefix_logged(folder_prefix(library_id, folder.path), operation="delete_folder")
        await self._publish_after_commit(
            RecalculateFolderMessage(library_id=library_id, folder_id=folder.parent_id),
            operation="delete_folder",
            folder_id=folder_id,
        )

    # Service

    async def get_statistics(self) -> StatisticsRead:
        return await self.metadata.get_statistics()

    async def _publish_after_commit(self, message: JobMessage, *, operation: str, **context: Any) -> None:
        try:
            await self.queue.publish(message)
        except TransientInfrastructureError:
            self._record_inconsistency(
                StoreInconsistency(f"{message.type} was not enqueued", operation=operation, **context)
            )
            raise

    async def _delete_blob_logged(self, key: str, *, operation: str, **context: Any) -> None:
        try:
            await self.blobs.delete(key)
        except Exception as exc:
            self._record_inconsistency(
                StoreInconsistency(f"Blob left behind: {key}", operation=operation, key=key, **context), exc
            )

    async def _delete_prefix_logged(self, prefix: str, *, operation: str) -> None:
        try:
            await self.blobs.delete_prefix(prefix)
        except Exception as exc:
            self._record_inconsistency(
                StoreInconsistency(f"Blob prefix left behind: {prefix}", operation=operation, prefix=prefix), exc
            )

    @staticmethod
    def _record_inconsistency(error: StoreInconsistency, cause: BaseException | None = None) -> None:
        metrics.record_store_inconsistency()
        logger.error(
            "store_inconsistency",
            extra={"detail": error.detail, **{key: str(value) for key, value in error.context.items()}},
            exc_info=cause,
        )
