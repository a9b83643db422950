from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from piclib.api.deps import get_coordinator
from piclib.schemas.library import FolderAdd, FolderRead, FolderUpdate
from piclib.services.ingestion import IngestionCoordinator

router = APIRouter(prefix="/libraries/{library_id}/folders", tags=["folders"])


@router.get("", response_model=list[FolderRead])
async def list_folders(
    library_id: UUID,
    parent_id: UUID | None = Query(default=None, description="Omit to list the library's root folder"),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> list[FolderRead]:
    rows = await coordinator.get_folders(library_id, parent_id)
    return [FolderRead.model_validate(row) for row in rows]


@router.post("", response_model=FolderRead, status_code=status.HTTP_201_CREATED)
async def create_folder(
    library_id: UUID, payload: FolderAdd, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> FolderRead:
    return FolderRead.model_validate(await coordinator.add_folder(library_id, payload))


@router.get("/{folder_id}", response_model=FolderRead)
async def get_folder(
    library_id: UUID, folder_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> FolderRead:
    return FolderRead.model_validate(await coordinator.get_folder(library_id, folder_id))


@router.patch("/{folder_id}", response_model=FolderRead)
async def update_folder(
    library_id: UUID,
    folder_id: UUID,
    payload: FolderUpdate,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> FolderRead:
    return FolderRead.model_validate(await coordinator.update_folder(library_id, folder_id, payload))


@router.delete("/{folder_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_folder(
    library_id: UUID, folder_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> Response:
    await coordinator.delete_folder(library_id, folder_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
