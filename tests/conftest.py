import io
import os
from typing import Iterable, Optional

import pytest
import PyPDF2
from PIL import Image

from pyqvault.config import Config
from pyqvault.document.compressor import CompressionService
from pyqvault.errors import StorageError, StorageUnavailableError
from pyqvault.models.document import Upload
from pyqvault.pipelines.ingest_pipeline import IngestionPipeline
from pyqvault.services.database_service import MemoryDatabase
from pyqvault.services.moderation_service import ContentClassifier, ModerationGate
from pyqvault.services.storage_service import LocalDiskBackend, StorageUploader


def make_image(width: int = 1600, height: int = 1000, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    """Noisy image; noise keeps PNG large so re-encoding always wins"""
    image = Image.effect_noise((width, height), 80).convert(mode)
    out = io.BytesIO()
    image.save(out, format=fmt)
    return out.getvalue()


def make_pdf(pages: int = 2) -> bytes:
    writer = PyPDF2.PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=595, height=842)
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


class FakeClassifier(ContentClassifier):
    """Scores flagged payloads as explicit and everything else as safe"""

    def __init__(self, flagged: Iterable[bytes] = (), score: float = 0.95):
        self.flagged = set(flagged)
        self.score = score
        self.calls = 0

    def explicitness(self, data: bytes, media_type: str) -> float:
        self.calls += 1
        return self.score if data in self.flagged else 0.05


class BrokenClassifier(ContentClassifier):
    def explicitness(self, data: bytes, media_type: str) -> float:
        raise RuntimeError("classifier offline")


class FlakyBackend(LocalDiskBackend):
    """Local backend that fails uploads whose key contains a marker"""

    def __init__(self, root: str, fail_marker: Optional[str] = None, unavailable_marker: Optional[str] = None):
        super().__init__(root)
        self.fail_marker = fail_marker
        self.unavailable_marker = unavailable_marker
        self.put_calls = []

    def put(self, key: str, data: bytes, media_type: str) -> None:
        self.put_calls.append(key)
        if self.unavailable_marker and self.unavailable_marker in key:
            raise StorageUnavailableError("connection refused")
        if self.fail_marker and self.fail_marker in key:
            raise StorageError(f"rejected {key}")
        super().put(key, data, media_type)


def stored_files(root) -> list:
    found = []
    for dirpath, _, filenames in os.walk(root):
        found.extend(os.path.join(dirpath, name) for name in filenames)
    return found


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def config(upload_dir):
    return Config({
        "UPLOAD_DIR": str(upload_dir),
        "ADMIN_USERNAME": "admin",
        "ADMIN_PASSWORD": "secret",
        "STORAGE_RETRIES": "0",
    }).validate()


@pytest.fixture
def backend(upload_dir):
    return LocalDiskBackend(str(upload_dir))


@pytest.fixture
def uploader(backend):
    return StorageUploader(backend, timeout=5, retries=0, backoff=0)


@pytest.fixture
def database():
    return MemoryDatabase()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def make_pipeline(config, uploader, database, classifier):
    def _make(**overrides) -> IngestionPipeline:
        options = {
            "moderation": ModerationGate(classifier, threshold=0.6, timeout=5),
            "compression": CompressionService.from_config(config),
            "uploader": uploader,
            "database": database,
            "max_upload_bytes": config.MAX_UPLOAD_BYTES,
            "concurrency": 4,
            "moderation_fail_open": False,
        }
        options.update(overrides)
        return IngestionPipeline(**options)
    return _make


@pytest.fixture
def pdf_upload():
    return Upload(filename="midsem.pdf", media_type="application/pdf", data=make_pdf())


@pytest.fixture
def image_upload():
    return Upload(filename="page1.png", media_type="image/png", data=make_image(800, 600))
