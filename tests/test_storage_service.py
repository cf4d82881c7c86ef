import asyncio
import time
from unittest.mock import MagicMock

import httpx
import pytest

from pyqvault.config import Config
from pyqvault.errors import StorageError, StorageUnavailableError
from pyqvault.models.document import FileKind
from pyqvault.services.storage_service import (
    LocalDiskBackend, StorageBackend, StorageUploader, SupabaseBackend,
    create_storage_backend, create_storage_uploader,
)


class CountingBackend(StorageBackend):
    name = "counting"

    def __init__(self, failures: int = 0, error: Exception = None, delay: float = 0.0):
        self.failures = failures
        self.error = error or StorageError("temporary glitch")
        self.delay = delay
        self.calls = 0
        self.objects = {}

    def put(self, key, data, media_type):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.calls <= self.failures:
            raise self.error
        self.objects[key] = data

    def delete(self, key):
        self.objects.pop(key, None)

    def exists(self, key):
        return key in self.objects

    def read(self, key):
        return self.objects[key]

    def public_url(self, key):
        return f"https://cdn.example/{key}"


def test_local_backend_round_trip(backend):
    backend.put("pyq_papers/math/a.pdf", b"%PDF", "application/pdf")

    assert backend.exists("pyq_papers/math/a.pdf")
    assert backend.read("pyq_papers/math/a.pdf") == b"%PDF"
    assert backend.public_url("pyq_papers/math/a.pdf") == "/uploads/pyq_papers/math/a.pdf"


def test_local_backend_delete_is_idempotent(backend):
    backend.put("k/a.bin", b"x", "application/octet-stream")

    backend.delete("k/a.bin")
    backend.delete("k/a.bin")

    assert not backend.exists("k/a.bin")


def test_local_backend_rejects_escaping_keys(backend):
    with pytest.raises(StorageError):
        backend.put("../outside.bin", b"x", "application/octet-stream")


def test_local_backend_write_failure_is_a_storage_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_bytes(b"")
    backend = LocalDiskBackend(str(blocker))

    with pytest.raises(StorageError):
        backend.put("a/b.bin", b"x", "application/octet-stream")


def test_build_key_is_scoped_and_unique():
    first = StorageUploader.build_key("pyq_papers/math", "Mid Sem.PNG", b"data", "image/jpeg")
    second = StorageUploader.build_key("pyq_papers/math", "Mid Sem.PNG", b"data", "image/jpeg")

    assert first.startswith("pyq_papers/math/")
    assert first.endswith("-mid-sem.jpg")
    assert first != second


def test_folder_for_slugifies_subject():
    uploader = StorageUploader(CountingBackend(), folder="pyq_papers")
    assert uploader.folder_for("data structures") == "pyq_papers/data-structures"
    assert uploader.folder_for("") == "pyq_papers/general"


@pytest.mark.asyncio
async def test_store_returns_url_and_payload_is_retrievable(uploader, backend):
    stored = await uploader.store(b"%PDF-1.4 body", FileKind.PDF, "pyq_papers/math", "paper.pdf", "application/pdf")

    assert stored.url == f"/uploads/{stored.key}"
    assert stored.size == len(b"%PDF-1.4 body")
    assert await uploader.read(stored.key) == b"%PDF-1.4 body"
    assert await uploader.exists(stored.key) is True


@pytest.mark.asyncio
async def test_store_retries_transient_errors():
    backend = CountingBackend(failures=2)
    uploader = StorageUploader(backend, retries=2, backoff=0)

    stored = await uploader.store(b"x", FileKind.OTHER, "f", "a.txt", "text/plain")

    assert backend.calls == 3
    assert backend.exists(stored.key)


@pytest.mark.asyncio
async def test_store_gives_up_after_bounded_retries():
    backend = CountingBackend(failures=10)
    uploader = StorageUploader(backend, retries=1, backoff=0)

    with pytest.raises(StorageError):
        await uploader.store(b"x", FileKind.OTHER, "f", "a.txt", "text/plain")
    assert backend.calls == 2


@pytest.mark.asyncio
async def test_unavailable_backend_error_is_preserved():
    backend = CountingBackend(failures=10, error=StorageUnavailableError("connection refused"))
    uploader = StorageUploader(backend, retries=1, backoff=0)

    with pytest.raises(StorageUnavailableError):
        await uploader.store(b"x", FileKind.OTHER, "f", "a.txt", "text/plain")


@pytest.mark.asyncio
async def test_store_is_bounded_by_timeout():
    backend = CountingBackend(delay=0.3)
    uploader = StorageUploader(backend, timeout=0.05, retries=0)

    with pytest.raises(StorageError, match="timed out"):
        await uploader.store(b"x", FileKind.OTHER, "f", "a.txt", "text/plain")
    await asyncio.sleep(0.4)

    assert backend.calls == 1
    assert backend.objects == {}


@pytest.mark.asyncio
async def test_every_timed_out_attempt_is_cleaned_up():
    backend = CountingBackend(delay=0.2)
    uploader = StorageUploader(backend, timeout=0.05, retries=1, backoff=0)

    with pytest.raises(StorageError):
        await uploader.store(b"x", FileKind.OTHER, "f", "a.txt", "text/plain")

    assert backend.calls == 2
    assert backend.objects == {}


def test_supabase_backend_uploads_with_upsert():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.return_value = "https://proj.supabase.co/storage/v1/object/public/papers/k/a.pdf?"

    backend = SupabaseBackend(client, "papers")
    backend.put("k/a.pdf", b"%PDF", "application/pdf")

    client.storage.from_.assert_called_with("papers")
    bucket.upload.assert_called_once_with(
        path="k/a.pdf",
        file=b"%PDF",
        file_options={"content-type": "application/pdf", "upsert": "true"},
    )
    assert backend.public_url("k/a.pdf").endswith("/papers/k/a.pdf")


def test_supabase_connection_errors_are_unavailable():
    client = MagicMock()
    client.storage.from_.return_value.upload.side_effect = httpx.ConnectError("refused")

    with pytest.raises(StorageUnavailableError):
        SupabaseBackend(client, "papers").put("k/a.pdf", b"%PDF", "application/pdf")


def test_supabase_other_errors_fail_one_object():
    client = MagicMock()
    client.storage.from_.return_value.upload.side_effect = RuntimeError("Payload too large")

    with pytest.raises(StorageError) as excinfo:
        SupabaseBackend(client, "papers").put("k/a.pdf", b"%PDF", "application/pdf")
    assert not isinstance(excinfo.value, StorageUnavailableError)


def test_supabase_exists_and_delete():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.list.return_value = [{"name": "a.pdf"}]
    backend = SupabaseBackend(client, "papers")

    assert backend.exists("k/a.pdf") is True
    bucket.list.assert_called_once_with("k", {"search": "a.pdf"})

    bucket.list.return_value = []
    assert backend.exists("k/a.pdf") is False

    backend.delete("k/a.pdf")
    bucket.remove.assert_called_once_with(["k/a.pdf"])


def test_factory_defaults_to_local_disk(upload_dir):
    config = Config({"UPLOAD_DIR": str(upload_dir / "nested")})

    backend = create_storage_backend(config)
    uploader = create_storage_uploader(config, backend)

    assert isinstance(backend, LocalDiskBackend)
    assert (upload_dir / "nested").is_dir()
    assert uploader.folder == "pyq_papers"
    assert uploader.retries == config.STORAGE_RETRIES
