import os
import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^a-z0-9._-]+")


def ensure_directory(path: str):
    """Ensure directory exists"""
    Path(path).mkdir(parents=True, exist_ok=True)


def release_payload(path: str):
    """Remove a partially written file; already-removed files are fine"""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def safe_filename(filename: str, default: str = "file") -> str:
    name = os.path.basename(filename or "").strip().lower()
    name = _UNSAFE_CHARS.sub("-", name).strip("-.")
    return name[:80] or default


def slugify(value: str, default: str = "general") -> str:
    slug = _UNSAFE_CHARS.sub("-", (value or "").strip().lower()).strip("-.")
    return slug or default
