from __future__ import annotations

import logging
from uuid import UUID

from piclib.core import metrics
from piclib.schemas.library import RecalculatedFolder
from piclib.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class FolderStatsEngine:
    """Recomputes the aggregate statistics of one folder.

    Aggregates are the direct files' sizes plus the stored aggregates of
    the direct child folders. Only one level is recomputed per call; the
    caller propagates to the parent.
    """

    def __init__(self, metadata: MetadataStore) -> None:
        self.metadata = metadata

    async def recalculate(self, library_id: UUID, folder_id: UUID) -> RecalculatedFolder:
        folder = await self.metadata.get_folder(library_id, folder_id)
        direct = await self.metadata.sum_direct_files(library_id, folder_id)
        children = await self.metadata.sum_child_folders(library_id, folder_id)
        totals = direct + children
        await self.metadata.update_folder_stats(library_id, folder_id, totals)
        metrics.record_folder_recalculated()
        logger.info(
            "folder_recalculated",
            extra={
                "library_id": str(library_id),
                "folder_id": str(folder_id),
                "file_count": totals.file_count,
                "total_bytes": totals.total_bytes,
            },
        )
        return RecalculatedFolder(
            **totals.model_dump(),
            folder_id=folder_id,
            library_id=library_id,
            parent_id=folder.parent_id,
        )
