import uuid
from datetime import datetime, timezone
from pydantic import BaseModel, Field


class Feedback(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message: str = Field(..., min_length=1)
    email: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Subject(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1)
