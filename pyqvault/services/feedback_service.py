import logging
from typing import List, Optional

from pyqvault.errors import ValidationError
from pyqvault.models.feedback import Feedback, Subject
from pyqvault.services.database_service import PaperDatabase

logger = logging.getLogger(__name__)


class FeedbackService:
    def __init__(self, database: PaperDatabase):
        self.database = database

    async def submit(self, message: Optional[str], email: Optional[str] = None) -> Feedback:
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message is required")

        feedback = await self.database.insert_feedback(
            Feedback(message=message, email=(email or "").strip())
        )
        logger.info("Stored feedback %s", feedback.id)
        return feedback


class SubjectService:
    """The list of subjects offered to uploaders"""

    def __init__(self, database: PaperDatabase):
        self.database = database

    async def list(self) -> List[Subject]:
        return await self.database.list_subjects()

    async def add(self, name: Optional[str]) -> Subject:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Subject name is required")
        return await self.database.insert_subject(Subject(name=name))
