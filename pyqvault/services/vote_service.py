import logging
from typing import Optional

from pyqvault.clients.redis_client import ListingCache
from pyqvault.models.paper import PaperFile
from pyqvault.services.database_service import PaperDatabase
from pyqvault.services.paper_service import LISTING_CACHE_PATTERN

logger = logging.getLogger(__name__)


class VoteLedger:
    """Upvote and downvote individual files of a paper"""

    def __init__(self, database: PaperDatabase, cache: Optional[ListingCache] = None):
        self.database = database
        self.cache = cache

    async def _vote(self, paper_id: str, file_index: int, field: str) -> PaperFile:
        file = await self.database.increment_file_counter(paper_id, file_index, field)
        logger.info(
            "Paper %s file %d %s -> up=%d down=%d",
            paper_id, file_index, field, file.upvotes, file.downvotes
        )
        # Visibility depends on downvotes, cached listings are stale now
        if self.cache:
            self.cache.invalidate_pattern(LISTING_CACHE_PATTERN)
        return file

    async def upvote(self, paper_id: str, file_index: int) -> PaperFile:
        return await self._vote(paper_id, file_index, "upvotes")

    async def downvote(self, paper_id: str, file_index: int) -> PaperFile:
        return await self._vote(paper_id, file_index, "downvotes")
