from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol
from uuid import UUID, uuid4

import anyio

from piclib.core.config import settings
from piclib.core.errors import BlobNotFoundError

logger = logging.getLogger(__name__)

THUMBNAIL_SIZES = ("sm", "md", "lg")
CHUNK_SIZE = 64 * 1024


def library_path(library_id: UUID | str, folder_path: str, item: str) -> str:
    # Items of the library's root folder live directly under the library prefix.
    folder_path = (folder_path or "").strip("/")
    if folder_path:
        return f"{library_id}/{folder_path}/{item}"
    return f"{library_id}/{item}"


def folder_prefix(library_id: UUID | str, folder_path: str) -> str:
    folder_path = (folder_path or "").strip("/")
    if folder_path:
        return f"{library_id}/{folder_path}"
    return str(library_id)


def original_key(library_id: UUID | str, folder_path: str, file_id: UUID | str) -> str:
    return library_path(library_id, folder_path, str(file_id))


def thumbnail_key(library_id: UUID | str, folder_path: str, file_id: UUID | str, size: str) -> str:
    return library_path(library_id, folder_path, f"tn_{size}/{file_id}")


def converted_key(library_id: UUID | str, folder_path: str, file_id: UUID | str) -> str:
    return library_path(library_id, folder_path, f"cnv/{file_id}")


def artifact_keys(library_id: UUID | str, folder_path: str, file_id: UUID | str) -> list[str]:
    """Every blob key a file may own: original, thumbnails and converted video."""
    keys = [original_key(library_id, folder_path, file_id)]
    keys.extend(thumbnail_key(library_id, folder_path, file_id, size) for size in THUMBNAIL_SIZES)
    keys.append(converted_key(library_id, folder_path, file_id))
    return keys


class BlobStore(Protocol):
    """Key-addressed binary storage. No atomicity across keys."""

    async def put(self, key: str, source: bytes | Path) -> str: ...

    async def get(self, key: str) -> AsyncIterator[bytes]: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ensure_prefix(self, prefix: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> None: ...

    def local_path(self, key: str) -> Path | None: ...


class LocalBlobStore:
    """Blob store backed by a directory tree on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / str(key or "").lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Blob key escapes the storage root: {key}")
        return path

    async def put(self, key: str, source: bytes | Path) -> str:
        target = self._path(key)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            temp = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
            try:
                if isinstance(source, Path):
                    shutil.copyfile(source, temp)
                else:
                    temp.write_bytes(source)
                temp.replace(target)
            finally:
                temp.unlink(missing_ok=True)

        await anyio.to_thread.run_sync(_write)
        return key

    async def get(self, key: str) -> AsyncIterator[bytes]:
        path = self._path(key)
        if not await anyio.to_thread.run_sync(path.is_file):
            raise BlobNotFoundError(f"Blob not found: {key}", key=key)
        return self._iter_file(path)

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        async with await anyio.open_file(path, "rb") as fh:
            while True:
                chunk = await fh.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await anyio.to_thread.run_sync(lambda: path.unlink(missing_ok=True))

    async def exists(self, key: str) -> bool:
        return await anyio.to_thread.run_sync(self._path(key).is_file)

    async def ensure_prefix(self, prefix: str) -> None:
        path = self._path(prefix)
        await anyio.to_thread.run_sync(lambda: path.mkdir(parents=True, exist_ok=True))

    async def delete_prefix(self, prefix: str) -> None:
        path = self._path(prefix)
        if path == self.root:
            raise ValueError("Refusing to delete the storage root")

        def _remove() -> None:
            if path.is_dir():
                shutil.rmtree(path)

        await anyio.to_thread.run_sync(_remove)

    def local_path(self, key: str) -> Path:
        return self._path(key)


def _temp_root() -> str | None:
    root = settings.temp_root
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    return root


@asynccontextmanager
async def scratch_dir(prefix: str) -> AsyncIterator[Path]:
    """Temporary directory removed on exit whatever the outcome."""
    path = Path(await anyio.to_thread.run_sync(lambda: tempfile.mkdtemp(prefix=prefix, dir=_temp_root())))
    try:
        yield path
    finally:
        try:
            await anyio.to_thread.run_sync(shutil.rmtree, path)
        except OSError:
            logger.warning("scratch_dir_cleanup_failed", extra={"path": str(path)}, exc_info=True)


@asynccontextmanager
async def local_copy(blobs: BlobStore, key: str, *, suffix: str = "") -> AsyncIterator[Path]:
    """Yield a local filesystem path holding the blob's bytes.

    Local drivers hand out the stored file itself. Other drivers download
    into a scratch directory that is removed when the block exits.
    """
    direct = blobs.local_path(key)
    if direct is not None:
        if not await anyio.to_thread.run_sync(direct.is_file):
            raise BlobNotFoundError(f"Blob not found: {key}", key=key)
        yield direct
        return
    async with scratch_dir("piclib-src-") as workdir:
        target = workdir / f"source{suffix}"
        stream = await blobs.get(key)
        async with await anyio.open_file(target, "wb") as fh:
            async for chunk in stream:
                await fh.write(chunk)
        yield target
