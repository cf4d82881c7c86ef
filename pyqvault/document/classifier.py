import os
from typing import Optional

from pyqvault.models.document import FileKind

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif", ".tif", ".tiff"}
PDF_EXTENSIONS = {".pdf"}

EXTENSION_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".gif": "image/gif",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".pdf": "application/pdf",
}

MEDIA_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/gif": ".gif",
    "image/tiff": ".tiff",
    "application/pdf": ".pdf",
}

DEFAULT_MEDIA_TYPE = "application/octet-stream"


def _extension(filename: Optional[str]) -> str:
    return os.path.splitext(filename or "")[1].lower()


def _base_media_type(media_type: Optional[str]) -> str:
    return (media_type or "").split(";")[0].strip().lower()


def classify_file(filename: Optional[str], media_type: Optional[str]) -> FileKind:
    """
    Classify a submitted file as image, pdf or other.

    The filename extension wins; the declared media type is only consulted
    when the extension is missing or unrecognized. Anything else is OTHER and
    passes through the pipeline untouched.
    """
    ext = _extension(filename)
    if ext in IMAGE_EXTENSIONS:
        return FileKind.IMAGE
    if ext in PDF_EXTENSIONS:
        return FileKind.PDF

    base = _base_media_type(media_type)
    if base.startswith("image/"):
        return FileKind.IMAGE
    if base == "application/pdf":
        return FileKind.PDF
    return FileKind.OTHER


def resolve_media_type(filename: Optional[str], media_type: Optional[str]) -> str:
    """Best media type for storing a payload"""
    base = _base_media_type(media_type)
    if base and base != DEFAULT_MEDIA_TYPE:
        return base
    return EXTENSION_MEDIA_TYPES.get(_extension(filename), DEFAULT_MEDIA_TYPE)


def extension_for(filename: Optional[str], media_type: str) -> str:
    """File extension matching the media type of the bytes actually stored"""
    ext = MEDIA_TYPE_EXTENSIONS.get(media_type)
    if ext:
        if ext == ".jpg" and _extension(filename) == ".jpeg":
            return ".jpeg"
        return ext
    return _extension(filename) or ".bin"
