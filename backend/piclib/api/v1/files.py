from __future__ import annotations

from urllib.parse import quote
from uuid import UUID

import anyio
from fastapi import APIRouter, Depends, File, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from piclib.api.deps import get_coordinator
from piclib.schemas.library import FileRead, FileUpdate, ThumbnailSizeLiteral
from piclib.services.blob_store import CHUNK_SIZE, scratch_dir
from piclib.services.ingestion import BlobContent, IngestionCoordinator

router = APIRouter(prefix="/libraries/{library_id}", tags=["files"])


def _stream_response(content: BlobContent) -> StreamingResponse:
    headers = {"Content-Disposition": f"inline; filename*=UTF-8''{quote(content.filename)}"}
    return StreamingResponse(content.stream, media_type=content.media_type, headers=headers)


@router.get("/folders/{folder_id}/files", response_model=list[FileRead])
async def list_files(
    library_id: UUID, folder_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> list[FileRead]:
    rows = await coordinator.get_files(library_id, folder_id)
    return [FileRead.model_validate(row) for row in rows]


@router.post("/folders/{folder_id}/files", response_model=FileRead, status_code=status.HTTP_201_CREATED)
async def upload_file(
    library_id: UUID,
    folder_id: UUID,
    file: UploadFile = File(...),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> FileRead:
    filename = file.filename or ""
    async with scratch_dir("piclib-upload-") as workdir:
        target = workdir / "upload"
        size = 0
        async with await anyio.open_file(target, "wb") as fh:
            while chunk := await file.read(CHUNK_SIZE):
                size += len(chunk)
                await fh.write(chunk)
        imported = await coordinator.import_file(
            library_id,
            folder_id,
            target,
            filename,
            mime_type=file.content_type if file.content_type != "application/octet-stream" else None,
            size_bytes=size,
        )
    return FileRead.model_validate(imported)


@router.get("/files/{file_id}", response_model=FileRead)
async def get_file(library_id: UUID, file_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)) -> FileRead:
    return FileRead.model_validate(await coordinator.get_file(library_id, file_id))


@router.patch("/files/{file_id}", response_model=FileRead)
async def update_file(
    library_id: UUID,
    file_id: UUID,
    payload: FileUpdate,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> FileRead:
    return FileRead.model_validate(await coordinator.update_file(library_id, file_id, payload))


@router.delete("/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(library_id: UUID, file_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)) -> Response:
    await coordinator.delete_file(library_id, file_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/files/{file_id}/contents", response_class=StreamingResponse)
async def get_file_contents(
    library_id: UUID, file_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> StreamingResponse:
    return _stream_response(await coordinator.get_file_contents(library_id, file_id))


@router.get("/files/{file_id}/thumbnail/{size}", response_class=StreamingResponse)
async def get_file_thumbnail(
    library_id: UUID,
    file_id: UUID,
    size: ThumbnailSizeLiteral,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> StreamingResponse:
    return _stream_response(await coordinator.get_file_thumbnail(library_id, file_id, size))
