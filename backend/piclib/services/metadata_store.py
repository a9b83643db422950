from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from piclib.core.errors import NotFoundError
from piclib.models.library import File, Folder, Library
from piclib.schemas.library import FolderStats, StatisticsRead


ROOT_FOLDER_NAME = "All Pictures"

_THUMBNAIL_COLUMNS = {
    "sm": File.thumbnail_sm_bytes,
    "md": File.thumbnail_md_bytes,
    "lg": File.thumbnail_lg_bytes,
}


def name_key(name: str) -> str:
    return name.casefold()


class MetadataStore:
    """Transactional store for library, folder and file rows.

    Every public method runs in its own session and commits before it
    returns, so a successful call means the change is durable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # Libraries

    async def get_libraries(self) -> list[Library]:
        async with self._session_factory() as session:
            rows = await session.execute(select(Library).order_by(Library.created_at.asc(), Library.name.asc()))
            return list(rows.scalars().all())

    async def get_library(self, library_id: UUID) -> Library:
        async with self._session_factory() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise NotFoundError("Library not found", library_id=str(library_id))
            return library

    async def add_library(
        self,
        library_id: UUID,
        *,
        name: str,
        description: str | None,
        time_zone: str,
        root_folder_id: UUID,
    ) -> Library:
        async with self._session_factory() as session:
            library = Library(id=library_id, name=name, description=description, time_zone=time_zone)
            session.add(library)
            await session.flush()
            session.add(Folder(id=root_folder_id, library_id=library_id, parent_id=None, name=ROOT_FOLDER_NAME, path=""))
            await session.commit()
            await session.refresh(library)
            return library

    async def update_library(self, library_id: UUID, fields: dict[str, Any]) -> Library:
        async with self._session_factory() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise NotFoundError("Library not found", library_id=str(library_id))
            for key, value in fields.items():
                setattr(library, key, value)
            await session.commit()
            await session.refresh(library)
            return library

    async def delete_library(self, library_id: UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(File).where(File.library_id == library_id))
            await session.execute(delete(Folder).where(Folder.library_id == library_id))
            result = await session.execute(delete(Library).where(Library.id == library_id))
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("Library not found", library_id=str(library_id))
            await session.commit()

    # Folders

    async def get_root_folder(self, library_id: UUID) -> Folder:
        async with self._session_factory() as session:
            folder = await session.scalar(
                select(Folder).where(Folder.library_id == library_id, Folder.parent_id.is_(None))
            )
            if folder is None:
                raise NotFoundError("Library not found", library_id=str(library_id))
            return folder

    async def get_folders(self, library_id: UUID, parent_id: UUID | None) -> list[Folder]:
        async with self._session_factory() as session:
            stmt = select(Folder).where(Folder.library_id == library_id)
            if parent_id is None:
                stmt = stmt.where(Folder.parent_id.is_(None))
            else:
                stmt = stmt.where(Folder.parent_id == parent_id)
            rows = await session.execute(stmt.order_by(Folder.name.asc()))
            return list(rows.scalars().all())

    async def get_folder(self, library_id: UUID, folder_id: UUID) -> Folder:
        async with self._session_factory() as session:
            folder = await session.scalar(
                select(Folder).where(Folder.id == folder_id, Folder.library_id == library_id)
            )
            if folder is None:
                raise NotFoundError("Folder not found", library_id=str(library_id), folder_id=str(folder_id))
            return folder

    async def add_folder(self, library_id: UUID, folder_id: UUID, *, parent: Folder, name: str, path: str) -> Folder:
        async with self._session_factory() as session:
            folder = Folder(id=folder_id, library_id=library_id, parent_id=parent.id, name=name, path=path)
            session.add(folder)
            await session.commit()
            await session.refresh(folder)
            return folder

    async def rename_folder(self, library_id: UUID, folder_id: UUID, name: str) -> Folder:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Folder)
                .where(Folder.id == folder_id, Folder.library_id == library_id)
                .values(name=name, updated_at=func.now())
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("Folder not found", library_id=str(library_id), folder_id=str(folder_id))
            await session.commit()
        return await self.get_folder(library_id, folder_id)

    async def delete_folder_tree(self, library_id: UUID, folder: Folder) -> None:
        """Delete a folder, its descendant folders and every file below them."""
        descendant_prefix = f"{folder.path}/"
        in_tree = or_(Folder.id == folder.id, Folder.path.startswith(descendant_prefix, autoescape=True))
        async with self._session_factory() as session:
            folder_ids = select(Folder.id).where(Folder.library_id == library_id, in_tree)
            await session.execute(
                delete(File).where(File.library_id == library_id, File.folder_id.in_(folder_ids))
            )
            # Deepest folders first; paths grow by one segment per level.
            rows = await session.execute(
                select(Folder.id).where(Folder.library_id == library_id, in_tree).order_by(func.length(Folder.path).desc())
            )
            for child_id in rows.scalars().all():
                await session.execute(delete(Folder).where(Folder.id == child_id))
            await session.commit()

    async def sum_direct_files(self, library_id: UUID, folder_id: UUID) -> FolderStats:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(File.id),
                        func.coalesce(func.sum(File.original_bytes), 0),
                        func.coalesce(func.sum(File.thumbnail_sm_bytes), 0),
                        func.coalesce(func.sum(File.thumbnail_md_bytes), 0),
                        func.coalesce(func.sum(File.thumbnail_lg_bytes), 0),
                        func.coalesce(func.sum(File.converted_bytes), 0),
                    ).where(File.library_id == library_id, File.folder_id == folder_id)
                )
            ).one()
        return _stats_from_row(row)

    async def sum_child_folders(self, library_id: UUID, folder_id: UUID) -> FolderStats:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(Folder.file_count), 0),
                        func.coalesce(func.sum(Folder.total_bytes), 0),
                        func.coalesce(func.sum(Folder.thumbnail_sm_bytes), 0),
                        func.coalesce(func.sum(Folder.thumbnail_md_bytes), 0),
                        func.coalesce(func.sum(Folder.thumbnail_lg_bytes), 0),
                        func.coalesce(func.sum(Folder.converted_bytes), 0),
                    ).where(Folder.library_id == library_id, Folder.parent_id == folder_id)
                )
            ).one()
        return _stats_from_row(row)

    async def update_folder_stats(self, library_id: UUID, folder_id: UUID, stats: FolderStats) -> Folder:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Folder)
                .where(Folder.id == folder_id, Folder.library_id == library_id)
                .values(**stats.model_dump(), updated_at=func.now())
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("Folder not found", library_id=str(library_id), folder_id=str(folder_id))
            await session.commit()
        return await self.get_folder(library_id, folder_id)

    # Files

    async def get_files(self, library_id: UUID, folder_id: UUID) -> list[File]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(File)
                .where(File.library_id == library_id, File.folder_id == folder_id)
                .order_by(File.name_key.asc())
            )
            return list(rows.scalars().all())

    async def get_file(self, library_id: UUID, file_id: UUID) -> File:
        async with self._session_factory() as session:
            file = await session.scalar(select(File).where(File.id == file_id, File.library_id == library_id))
            if file is None:
                raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
            return file

    async def get_file_with_folder(self, library_id: UUID, file_id: UUID) -> tuple[File, Folder]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(File, Folder)
                    .join(Folder, Folder.id == File.folder_id)
                    .where(File.id == file_id, File.library_id == library_id)
                )
            ).first()
            if row is None:
                raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
            return row[0], row[1]

    async def get_sibling_name_keys(self, folder_id: UUID) -> set[str]:
        async with self._session_factory() as session:
            rows = await session.execute(select(File.name_key).where(File.folder_id == folder_id))
            return set(rows.scalars().all())

    async def add_file(self, **values: Any) -> File:
        """Insert a file row. Raises ``IntegrityError`` on a name collision."""
        file = File(**values, name_key=name_key(values["name"]))
        async with self._session_factory() as session:
            session.add(file)
            await session.commit()
            await session.refresh(file)
            return file

    async def update_file_fields(self, library_id: UUID, file_id: UUID, fields: dict[str, Any]) -> File:
        values = dict(fields)
        if "name" in values:
            values["name_key"] = name_key(values["name"])
        async with self._session_factory() as session:
            result = await session.execute(
                update(File)
                .where(File.id == file_id, File.library_id == library_id)
                .values(**values, updated_at=func.now())
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
            await session.commit()
        return await self.get_file(library_id, file_id)

    async def set_thumbnail_bytes(self, library_id: UUID, file_id: UUID, size: str, byte_count: int) -> None:
        column = _THUMBNAIL_COLUMNS[size]
        await self._update_file_column(library_id, file_id, {column.key: int(byte_count)})

    async def set_converted_bytes(self, library_id: UUID, file_id: UUID, byte_count: int) -> None:
        await self._update_file_column(library_id, file_id, {File.converted_bytes.key: int(byte_count)})

    async def _update_file_column(self, library_id: UUID, file_id: UUID, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(File).where(File.id == file_id, File.library_id == library_id).values(**values)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
            await session.commit()

    async def begin_processing(self, library_id: UUID, file_id: UUID, outstanding_jobs: int) -> None:
        """Reset the outstanding-job counter at the start of a processing attempt."""
        await self._update_file_column(
            library_id,
            file_id,
            {File.outstanding_jobs.key: int(outstanding_jobs), File.is_processing.key: outstanding_jobs > 0},
        )

    async def complete_outstanding_job(self, library_id: UUID, file_id: UUID) -> int | None:
        """Atomically decrement the outstanding-job counter.

        ``is_processing`` is cleared by the same statement that takes the
        counter to zero. Returns the remaining count, or ``None`` when the
        counter was already zero and nothing changed.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(File)
                .where(File.id == file_id, File.library_id == library_id, File.outstanding_jobs > 0)
                .values(
                    outstanding_jobs=File.outstanding_jobs - 1,
                    is_processing=case((File.outstanding_jobs > 1, True), else_=False),
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                exists = await session.scalar(
                    select(func.count(File.id)).where(File.id == file_id, File.library_id == library_id)
                )
                if not exists:
                    raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
                return None
            remaining = await session.scalar(select(File.outstanding_jobs).where(File.id == file_id))
            await session.commit()
            return int(remaining or 0)

    async def delete_file(self, library_id: UUID, file_id: UUID) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(File).where(File.id == file_id, File.library_id == library_id))
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("File not found", library_id=str(library_id), file_id=str(file_id))
            await session.commit()

    # Service

    async def get_statistics(self) -> StatisticsRead:
        async with self._session_factory() as session:
            library_count = await session.scalar(select(func.count(Library.id)))
            folder_count = await session.scalar(select(func.count(Folder.id)))
            file_count = await session.scalar(select(func.count(File.id)))
        return StatisticsRead(
            library_count=int(library_count or 0),
            folder_count=int(folder_count or 0),
            file_count=int(file_count or 0),
        )


def _stats_from_row(row: Any) -> FolderStats:
    file_count, total, sm, md, lg, converted = (int(value or 0) for value in row)
    return FolderStats(
        file_count=file_count,
        total_bytes=total,
        thumbnail_sm_bytes=sm,
        thumbnail_md_bytes=md,
        thumbnail_lg_bytes=lg,
        converted_bytes=converted,
    )
