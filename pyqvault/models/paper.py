import uuid
from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from pyqvault.models.document import FileKind


def normalize_subject(subject: Optional[str]) -> str:
    """Subjects are stored and queried trimmed and lowercased"""
    return (subject or "").strip().lower()


def normalize_semester(semester) -> str:
    return "" if semester is None else str(semester).strip()


class PaperFile(BaseModel):
    url: str
    key: str
    index: int = Field(..., ge=0)
    kind: FileKind = FileKind.OTHER
    media_type: str = "application/octet-stream"
    size: int = Field(0, ge=0)
    upvotes: int = Field(0, ge=0)
    downvotes: int = Field(0, ge=0)
    removed: bool = False


class Paper(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject: str
    semester: str
    description: str = ""
    files: List[PaperFile] = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("subject", mode="before")
    @classmethod
    def _normalize_subject(cls, value):
        return normalize_subject(value)

    @field_validator("semester", mode="before")
    @classmethod
    def _normalize_semester(cls, value):
        return normalize_semester(value)
