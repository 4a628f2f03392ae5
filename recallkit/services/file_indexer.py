"""File indexer — metadata indexing followed by content ingestion."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from recallkit.core.errors import ValidationError
from recallkit.core.protocols import FileMetadata, IndexResult
from recallkit.core.tasks import BackgroundTask, TaskTracker
from recallkit.services.ingest_service import FileContentIngestor
from recallkit.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class FileIndexer:
    def __init__(
        self,
        store: StorageService,
        ingestor: FileContentIngestor,
        tasks: Optional[TaskTracker] = None,
    ):
        self._store = store
        self._ingestor = ingestor
        self._tasks = tasks or TaskTracker()
        self.last_ingest: Optional[BackgroundTask] = None

    async def index_files(self, files: Sequence[FileMetadata], workspace_id: str) -> IndexResult:
        """Index metadata now; content ingestion continues as a background task."""
        if not workspace_id:
            raise ValidationError("user_id is required")
        if not files:
            raise ValidationError("files must be a non-empty list")

        # Decide what changed before the metadata write records new fingerprints
        changed = [f for f in files if not self._store.is_file_unchanged(f, workspace_id)]
        result = self._store.index_files(files, workspace_id)

        if changed:
            self.last_ingest = self._tasks.spawn(
                f"ingest-{workspace_id}",
                self._ingest(changed, workspace_id),
            )
        else:
            logger.info("All %d files unchanged; skipping content ingestion", len(files))
        return result

    async def _ingest(self, files: Sequence[FileMetadata], workspace_id: str) -> None:
        background = await self._ingestor.ingest(files, workspace_id, skip_unchanged=False)
        if background is not None:
            await background.wait()
