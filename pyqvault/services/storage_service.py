"""
Durable object storage.

A StorageBackend is a small blocking interface over one kind of store (local
disk or a Supabase Storage bucket). StorageUploader wraps the configured
backend for the event loop: every call runs in a worker thread, bounded by a
timeout and retried with backoff. Object keys are unique per upload and
writes are upserts, so re-invoking a failed upload is safe.
"""
import asyncio
import errno
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import httpx

from pyqvault.config import Config
from pyqvault.document.classifier import extension_for
from pyqvault.errors import StorageError, StorageUnavailableError
from pyqvault.models.document import FileKind
from pyqvault.utils.file_utils import ensure_directory, release_payload, safe_filename, slugify
from pyqvault.utils.hashing import compute_sha256

logger = logging.getLogger(__name__)

# Disk errors that affect every write, not just one object
_FATAL_ERRNOS = {
    getattr(errno, name) for name in ("ENOSPC", "EROFS", "EDQUOT", "EACCES", "EPERM") if hasattr(errno, name)
}


def _retrieve_result(future: asyncio.Future):
    # Abandoned attempts finish with nobody awaiting them
    if not future.cancelled():
        future.exception()


class StorageBackend:
    name = "abstract"

    def put(self, key: str, data: bytes, media_type: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """Remove an object. Removing a missing object is not an error."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def read(self, key: str) -> bytes:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


class LocalDiskBackend(StorageBackend):
    """Objects as files under a root directory, served by the API at base_url"""

    name = "local"

    def __init__(self, root: str, base_url: str = "/uploads"):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root:
            raise StorageError(f"Object key escapes the upload directory: {key}")
        return path

    def put(self, key: str, data: bytes, media_type: str) -> None:
        path = self._path(key)
        partial = f"{path}.{uuid.uuid4().hex[:8]}.part"
        try:
            ensure_directory(os.path.dirname(path))
            with open(partial, "wb") as f:
                f.write(data)
            os.replace(partial, path)
        except OSError as e:
            release_payload(partial)
            if e.errno in _FATAL_ERRNOS:
                raise StorageUnavailableError(f"Upload directory is not writable: {e}") from e
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def read(self, key: str) -> bytes:
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class SupabaseBackend(StorageBackend):
    """Objects in a public Supabase Storage bucket"""

    name = "supabase"

    def __init__(self, client: Any, bucket: str):
        self.client = client
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    @staticmethod
    def _translate(action: str, key: str, error: Exception) -> StorageError:
        if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout)):
            return StorageUnavailableError(f"Storage backend unreachable during {action}: {error}")
        return StorageError(f"Failed to {action} {key}: {error}")

    def put(self, key: str, data: bytes, media_type: str) -> None:
        try:
            self._bucket().upload(
                path=key,
                file=data,
                file_options={"content-type": media_type, "upsert": "true"},
            )
        except Exception as e:
            raise self._translate("upload", key, e) from e

    def delete(self, key: str) -> None:
        try:
            self._bucket().remove([key])
        except Exception as e:
            raise self._translate("delete", key, e) from e

    def exists(self, key: str) -> bool:
        folder, _, name = key.rpartition("/")
        try:
            entries = self._bucket().list(folder, {"search": name})
        except Exception as e:
            raise self._translate("list", key, e) from e
        return any(entry.get("name") == name for entry in entries or [])

    def read(self, key: str) -> bytes:
        try:
            return self._bucket().download(key)
        except Exception as e:
            raise self._translate("download", key, e) from e

    def public_url(self, key: str) -> str:
        return self._bucket().get_public_url(key).rstrip("?")


@dataclass
class StoredObject:
    key: str
    url: str
    size: int


class StorageUploader:
    def __init__(
        self,
        backend: StorageBackend,
        folder: str = "pyq_papers",
        timeout: float = 30.0,
        retries: int = 2,
        backoff: float = 0.5,
    ):
        self.backend = backend
        self.folder = folder.strip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    def folder_for(self, subject: str) -> str:
        """Logical folder for a subject"""
        return f"{self.folder}/{slugify(subject)}"

    @staticmethod
    def build_key(folder: str, filename: str, data: bytes, media_type: str) -> str:
        stem = os.path.splitext(safe_filename(filename))[0]
        ext = extension_for(filename, media_type)
        return f"{folder}/{compute_sha256(data)[:16]}-{uuid.uuid4().hex[:8]}-{stem}{ext}"

    async def _call(self, description: str, fn: Callable, *args, abandoned: Optional[List[asyncio.Future]] = None):
        """
        Run a blocking backend call with a timeout and bounded retries.

        A thread cannot be stopped, so an attempt that times out (or is
        cancelled) keeps running; it is added to `abandoned` when given.
        """
        last_error: StorageError = StorageError(f"{description} was not attempted")

        for attempt in range(self.retries + 1):
            work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
            work.add_done_callback(_retrieve_result)
            try:
                return await asyncio.wait_for(asyncio.shield(work), timeout=self.timeout)
            except asyncio.TimeoutError:
                if abandoned is not None:
                    abandoned.append(work)
                last_error = StorageError(f"{description} timed out after {self.timeout:.0f}s")
            except asyncio.CancelledError:
                if abandoned is not None:
                    abandoned.append(work)
                raise
            except StorageError as e:
                last_error = e

            if attempt < self.retries:
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "%s failed (%s). Retrying in %.2fs... (Attempt %d/%d)",
                    description, last_error.message, delay, attempt + 1, self.retries + 1
                )
                await asyncio.sleep(delay)

        raise last_error

    async def store(self, data: bytes, kind: FileKind, folder: str, filename: str, media_type: str) -> StoredObject:
        """
        Upload final bytes under folder and return where they can be fetched.

        Raises:
            StorageError: this object could not be stored
            StorageUnavailableError: the backend is unreachable
        """
        key = self.build_key(folder, filename, data, media_type)
        abandoned: List[asyncio.Future] = []
        try:
            await self._call(f"Upload of {key}", self.backend.put, key, data, media_type, abandoned=abandoned)
        except BaseException:
            if abandoned:
                await asyncio.shield(self._remove_late_upload(key, abandoned))
            raise
        url = self.backend.public_url(key)
        logger.info("Stored %s %s (%d bytes) on %s", kind.value, key, len(data), self.backend.name)
        return StoredObject(key=key, url=url, size=len(data))

    async def _remove_late_upload(self, key: str, abandoned: List[asyncio.Future]):
        """Let timed-out uploads finish, then delete whatever they wrote"""
        await asyncio.gather(*abandoned, return_exceptions=True)
        try:
            await asyncio.to_thread(self.backend.delete, key)
            logger.info("Removed late upload %s", key)
        except StorageError as e:
            logger.error("Could not remove late upload %s: %s", key, e.message)

    async def delete(self, key: str) -> None:
        await self._call(f"Delete of {key}", self.backend.delete, key)

    async def exists(self, key: str) -> bool:
        return await self._call(f"Existence check of {key}", self.backend.exists, key)

    async def read(self, key: str) -> bytes:
        return await self._call(f"Read of {key}", self.backend.read, key)


def create_storage_backend(config: Config) -> StorageBackend:
    if config.STORAGE_BACKEND == "supabase":
        from pyqvault.clients.supabase_client import create_supabase_client
        return SupabaseBackend(create_supabase_client(config), config.SUPABASE_BUCKET)

    ensure_directory(config.UPLOAD_DIR)
    return LocalDiskBackend(config.UPLOAD_DIR, config.PUBLIC_BASE_URL)


def create_storage_uploader(config: Config, backend: StorageBackend = None) -> StorageUploader:
    return StorageUploader(
        backend or create_storage_backend(config),
        folder=config.STORAGE_FOLDER,
        timeout=config.STORAGE_TIMEOUT,
        retries=config.STORAGE_RETRIES,
    )
