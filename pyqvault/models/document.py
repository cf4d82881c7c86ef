from enum import Enum
from typing import Optional
from pydantic import BaseModel


class FileKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    OTHER = "other"


class Upload(BaseModel):
    """One submitted file as received from the client"""
    filename: str
    media_type: Optional[str] = None
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)
