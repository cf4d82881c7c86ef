import logging
from typing import List, Optional, Sequence

from pyqvault.clients.redis_client import ListingCache
from pyqvault.errors import NotFoundError, StorageError
from pyqvault.models.document import Upload
from pyqvault.models.paper import Paper, normalize_semester, normalize_subject
from pyqvault.pipelines.ingest_pipeline import IngestionPipeline, IngestionResult
from pyqvault.services.database_service import PaperDatabase
from pyqvault.services.storage_service import StorageUploader
from pyqvault.services.visibility_service import filter_papers

logger = logging.getLogger(__name__)

LISTING_CACHE_PATTERN = "papers:*"


def listing_cache_key(subject: Optional[str], semester: Optional[str]) -> str:
    return f"papers:{normalize_subject(subject)}:{normalize_semester(semester)}"


class PaperService:
    """Read, write and delete papers; the only path from clients to the pipeline"""

    def __init__(
        self,
        database: PaperDatabase,
        pipeline: IngestionPipeline,
        uploader: StorageUploader,
        cache: Optional[ListingCache] = None,
    ):
        self.database = database
        self.pipeline = pipeline
        self.uploader = uploader
        self.cache = cache

    def _invalidate(self):
        if self.cache:
            self.cache.invalidate_pattern(LISTING_CACHE_PATTERN)

    async def submit(
        self,
        uploads: Sequence[Upload],
        subject: str,
        semester: str,
        description: Optional[str] = "",
    ) -> IngestionResult:
        result = await self.pipeline.submit(uploads, subject, semester, description)
        self._invalidate()
        return result

    async def list_visible(self, subject: Optional[str] = None, semester: Optional[str] = None) -> List[Paper]:
        """Reader listing: visibility filter applied, newest first"""
        cache_key = listing_cache_key(subject, semester)
        if self.cache:
            cached = self.cache.cache_get(cache_key)
            if cached is not None:
                return [Paper.model_validate(p) for p in cached]

        papers = filter_papers(await self.database.list_papers(subject, semester))

        if self.cache:
            self.cache.cache_set(cache_key, [p.model_dump(mode="json") for p in papers])
        return papers

    async def list_all(self) -> List[Paper]:
        """Admin listing: every paper and every file, hidden or not"""
        return await self.database.list_papers()

    async def delete(self, paper_id: str) -> Paper:
        """
        Delete a paper together with its stored files.

        Stored files go first. When any of them cannot be removed the record
        is kept, so a retry can finish the job and nothing is left orphaned.
        Files already removed are flagged and drop out of reader listings.
        """
        paper = await self.database.get_paper(paper_id)
        if paper is None:
            raise NotFoundError("Paper not found")

        failed = []
        removed = []
        for file in paper.files:
            try:
                await self.uploader.delete(file.key)
                removed.append(file.key)
            except StorageError as e:
                logger.error("Could not delete %s of paper %s: %s", file.key, paper_id, e.message)
                failed.append(file.key)

        if failed:
            if removed:
                await self.database.mark_files_removed(paper_id, removed)
                self._invalidate()
            raise StorageError(
                f"Failed to delete {len(failed)} of {len(paper.files)} files; "
                "the paper was kept with the removed files hidden, retry the delete."
            )

        await self.database.delete_paper(paper_id)
        self._invalidate()
        logger.info("Deleted paper %s and %d files", paper_id, len(paper.files))
        return paper
