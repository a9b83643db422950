from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from piclib.api.deps import get_coordinator
from piclib.schemas.library import LibraryAdd, LibraryRead, LibraryUpdate
from piclib.services.ingestion import IngestionCoordinator

router = APIRouter(prefix="/libraries", tags=["libraries"])


@router.get("", response_model=list[LibraryRead])
async def list_libraries(coordinator: IngestionCoordinator = Depends(get_coordinator)) -> list[LibraryRead]:
    rows = await coordinator.get_libraries()
    return [LibraryRead.model_validate(row) for row in rows]


@router.post("", response_model=LibraryRead, status_code=status.HTTP_201_CREATED)
async def create_library(
    payload: LibraryAdd, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> LibraryRead:
    library = await coordinator.add_library(payload)
    return LibraryRead.model_validate(library)


@router.get("/{library_id}", response_model=LibraryRead)
async def get_library(library_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)) -> LibraryRead:
    return LibraryRead.model_validate(await coordinator.get_library(library_id))


@router.patch("/{library_id}", response_model=LibraryRead)
async def update_library(
    library_id: UUID, payload: LibraryUpdate, coordinator: IngestionCoordinator = Depends(get_coordinator)
) -> LibraryRead:
    return LibraryRead.model_validate(await coordinator.update_library(library_id, payload))


@router.delete("/{library_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_library(library_id: UUID, coordinator: IngestionCoordinator = Depends(get_coordinator)) -> Response:
    await coordinator.delete_library(library_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
