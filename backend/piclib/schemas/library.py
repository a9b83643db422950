from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ThumbnailSizeLiteral = Literal["sm", "md", "lg"]


class LibraryAdd(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    time_zone: str = "UTC"


class LibraryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    time_zone: str | None = None


class LibraryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    time_zone: str
    created_at: datetime
    updated_at: datetime


class FolderAdd(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    parent_id: UUID


class FolderUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class FolderStats(BaseModel):
    """Aggregate statistics of a folder, including its whole subtree."""

    model_config = ConfigDict(from_attributes=True)

    file_count: int = 0
    total_bytes: int = 0
    thumbnail_sm_bytes: int = 0
    thumbnail_md_bytes: int = 0
    thumbnail_lg_bytes: int = 0
    converted_bytes: int = 0

    def __add__(self, other: FolderStats) -> FolderStats:
        return FolderStats(
            file_count=self.file_count + other.file_count,
            total_bytes=self.total_bytes + other.total_bytes,
            thumbnail_sm_bytes=self.thumbnail_sm_bytes + other.thumbnail_sm_bytes,
            thumbnail_md_bytes=self.thumbnail_md_bytes + other.thumbnail_md_bytes,
            thumbnail_lg_bytes=self.thumbnail_lg_bytes + other.thumbnail_lg_bytes,
            converted_bytes=self.converted_bytes + other.converted_bytes,
        )


class RecalculatedFolder(FolderStats):
    folder_id: UUID
    library_id: UUID
    parent_id: UUID | None = None


class FolderRead(FolderStats):
    id: UUID
    library_id: UUID
    parent_id: UUID | None = None
    name: str
    path: str
    created_at: datetime
    updated_at: datetime


class FileUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    title: str | None = None
    comments: str | None = None
    tags: list[str] | None = None
    captured_at: datetime | None = None
    camera_make: str | None = None
    camera_model: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None


class FileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    library_id: UUID
    folder_id: UUID
    name: str
    mime_type: str
    is_video: bool
    width: int
    height: int
    original_bytes: int
    converted_bytes: int
    thumbnail_sm_bytes: int
    thumbnail_md_bytes: int
    thumbnail_lg_bytes: int
    is_processing: bool
    title: str | None = None
    comments: str | None = None
    tags: list[str] = Field(default_factory=list)
    camera_make: str | None = None
    camera_model: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None
    captured_at: datetime | None = None
    imported_at: datetime
    updated_at: datetime


class StatisticsRead(BaseModel):
    library_count: int
    folder_count: int
    file_count: int
