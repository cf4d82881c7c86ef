import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from pyqvault.document.classifier import classify_file, resolve_media_type
from pyqvault.document.compressor import CompressionService
from pyqvault.errors import (
    ExternalServiceFailure, ModerationRejected, PersistenceError, StorageError,
    StorageUnavailableError, ValidationError,
)
from pyqvault.models.document import FileKind, Upload
from pyqvault.models.paper import Paper, PaperFile, normalize_semester, normalize_subject
from pyqvault.services.database_service import PaperDatabase
from pyqvault.services.moderation_service import ModerationGate
from pyqvault.services.storage_service import StorageUploader, StoredObject

logger = logging.getLogger(__name__)

# Discard reasons reported back to the client
REASON_MODERATION_REJECTED = ModerationRejected.kind
REASON_MODERATION_UNAVAILABLE = "moderation_unavailable"
REASON_STORAGE_FAILED = StorageError.kind
REASON_ABORTED = "aborted"


class FileState(str, Enum):
    RECEIVED = "received"
    CLASSIFIED = "classified"
    PASSED = "passed"
    REJECTED = "rejected"
    COMPRESSED = "compressed"
    STORED = "stored"
    ACCEPTED = "accepted"
    DISCARDED = "discarded"


@dataclass
class FileOutcome:
    index: int
    filename: str
    state: FileState = FileState.RECEIVED
    kind: Optional[FileKind] = None
    media_type: Optional[str] = None
    stored: Optional[StoredObject] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.state is FileState.ACCEPTED


@dataclass
class IngestionResult:
    paper: Paper
    outcomes: List[FileOutcome]

    @property
    def discarded(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if not o.accepted]


class IngestionPipeline:
    """
    Turn one submission into a Paper.

    Each file goes classify -> moderate (images only) -> compress -> store.
    Files run concurrently; their outcomes keep submission order. A file that
    is rejected by moderation, or whose moderation or upload fails, is
    dropped on its own. An unreachable storage backend, an unexpected error,
    a failed database write or a cancelled request fails the whole
    submission, and every object already uploaded for it is deleted again.
    """

    def __init__(
        self,
        moderation: ModerationGate,
        compression: CompressionService,
        uploader: StorageUploader,
        database: PaperDatabase,
        max_upload_bytes: int = 20 * 1024 * 1024,
        concurrency: int = 4,
        moderation_fail_open: bool = False,
    ):
        self.moderation = moderation
        self.compression = compression
        self.uploader = uploader
        self.database = database
        self.max_upload_bytes = max_upload_bytes
        self.concurrency = concurrency
        self.moderation_fail_open = moderation_fail_open

    def validate_submission(self, uploads: Sequence[Upload], subject: Optional[str], semester: Optional[str]):
        if not uploads:
            raise ValidationError("No files uploaded.")
        if not normalize_subject(subject):
            raise ValidationError("Subject is required.")
        if not normalize_semester(semester):
            raise ValidationError("Semester is required.")
        for upload in uploads:
            if upload.size == 0:
                raise ValidationError(f"{upload.filename or 'A file'} is empty.")
            if upload.size > self.max_upload_bytes:
                raise ValidationError(
                    f"{upload.filename} is larger than the {self.max_upload_bytes // (1024 * 1024)} MB limit."
                )

    async def submit(
        self,
        uploads: Sequence[Upload],
        subject: str,
        semester: str,
        description: Optional[str] = "",
    ) -> IngestionResult:
        """
        Run the pipeline for one submission and persist the resulting Paper.

        Raises:
            ValidationError: bad input, or moderation rejected every file
            ExternalServiceFailure: no file survived because services failed
            StorageUnavailableError: the storage backend is down
            PersistenceError: the paper could not be saved
        """
        self.validate_submission(uploads, subject, semester)
        subject = normalize_subject(subject)
        semester = normalize_semester(semester)
        folder = self.uploader.folder_for(subject)

        stored: List[StoredObject] = []
        logger.info("Starting ingestion of %d files for %s / %s", len(uploads), subject, semester)

        try:
            outcomes = await self._process_all(uploads, folder, stored)

            accepted = [o for o in outcomes if o.accepted]
            if not accepted:
                raise self._empty_submission_error(outcomes)

            paper = Paper(
                subject=subject,
                semester=semester,
                description=(description or "").strip(),
                files=[
                    PaperFile(
                        url=o.stored.url,
                        key=o.stored.key,
                        index=position,
                        kind=o.kind,
                        media_type=o.media_type,
                        size=o.stored.size,
                    )
                    for position, o in enumerate(accepted)
                ],
            )
            await self._persist(paper, stored)

        except BaseException:
            if stored:
                await asyncio.shield(self._rollback(stored))
            raise

        logger.info(
            "Created paper %s with %d files (%d discarded)",
            paper.id, len(paper.files), len(outcomes) - len(accepted)
        )
        return IngestionResult(paper=paper, outcomes=outcomes)

    async def _process_all(
        self,
        uploads: Sequence[Upload],
        folder: str,
        stored: List[StoredObject],
    ) -> List[FileOutcome]:
        semaphore = asyncio.Semaphore(self.concurrency)
        abort = asyncio.Event()

        results = await asyncio.gather(
            *(
                self._process_file(index, upload, folder, stored, semaphore, abort)
                for index, upload in enumerate(uploads)
            ),
            return_exceptions=True,
        )

        # gather keeps argument order, so outcomes line up with submission order
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _process_file(
        self,
        index: int,
        upload: Upload,
        folder: str,
        stored: List[StoredObject],
        semaphore: asyncio.Semaphore,
        abort: asyncio.Event,
    ) -> FileOutcome:
        outcome = FileOutcome(index=index, filename=upload.filename)

        async with semaphore:
            if abort.is_set():
                return self._discard(outcome, REASON_ABORTED, "submission aborted")

            outcome.kind = classify_file(upload.filename, upload.media_type)
            outcome.media_type = resolve_media_type(upload.filename, upload.media_type)
            self._transition(outcome, FileState.CLASSIFIED)

            if outcome.kind is FileKind.IMAGE:
                if not await self._moderate(outcome, upload.data):
                    return outcome

            payload = await self.compression.compress(
                upload.data, outcome.kind, outcome.media_type, label=upload.filename
            )
            outcome.media_type = payload.media_type
            self._transition(outcome, FileState.COMPRESSED)

            if abort.is_set():
                return self._discard(outcome, REASON_ABORTED, "submission aborted")

            try:
                stored_object = await self.uploader.store(
                    payload.data, outcome.kind, folder, upload.filename, payload.media_type
                )
            except StorageUnavailableError:
                abort.set()
                raise
            except StorageError as e:
                return self._discard(outcome, REASON_STORAGE_FAILED, e.message)

            stored.append(stored_object)
            outcome.stored = stored_object
            self._transition(outcome, FileState.STORED)
            self._transition(outcome, FileState.ACCEPTED)
            logger.info("Accepted %s as %s", upload.filename, stored_object.url)
            return outcome

    async def _moderate(self, outcome: FileOutcome, data: bytes) -> bool:
        """Return True when the image may continue through the pipeline"""
        try:
            verdict = await self.moderation.assess(data, outcome.media_type)
        except ExternalServiceFailure as e:
            if self.moderation_fail_open:
                logger.warning("Moderation unavailable for %s, passing it through: %s", outcome.filename, e.message)
                self._transition(outcome, FileState.PASSED)
                return True
            self._discard(outcome, REASON_MODERATION_UNAVAILABLE, e.message)
            return False

        if verdict.reject:
            self._transition(outcome, FileState.REJECTED)
            self._discard(outcome, REASON_MODERATION_REJECTED, f"explicitness score {verdict.score:.2f}")
            return False

        self._transition(outcome, FileState.PASSED)
        return True

    @staticmethod
    def _transition(outcome: FileOutcome, state: FileState):
        logger.debug("File %d (%s): %s -> %s", outcome.index, outcome.filename, outcome.state.value, state.value)
        outcome.state = state

    def _discard(self, outcome: FileOutcome, reason: str, detail: str) -> FileOutcome:
        self._transition(outcome, FileState.DISCARDED)
        outcome.reason = reason
        outcome.detail = detail
        logger.info("Discarded %s (%s: %s)", outcome.filename, reason, detail)
        return outcome

    @staticmethod
    def _empty_submission_error(outcomes: List[FileOutcome]) -> Exception:
        reasons = {o.reason for o in outcomes}
        if reasons == {REASON_MODERATION_REJECTED}:
            return ValidationError("All files were rejected by content moderation.")
        details = "; ".join(f"{o.filename}: {o.detail}" for o in outcomes)
        return ExternalServiceFailure(f"None of the submitted files could be stored ({details}).")

    async def _persist(self, paper: Paper, stored: List[StoredObject]):
        """
        Save the paper. After a failed write the store is asked whether the
        row landed anyway: if it did the submission stands, and if the store
        cannot answer the stored files are kept instead of rolled back.
        """
        try:
            await self.database.insert_paper(paper)
        except Exception as e:
            saved = await self._was_saved(paper.id)
            if saved:
                logger.warning("Paper %s was saved despite a failed write: %s", paper.id, e)
                return
            if saved is None:
                logger.error("Keeping %d stored files of paper %s", len(stored), paper.id)
                stored.clear()
            if isinstance(e, PersistenceError):
                raise
            logger.exception("Saving paper %s failed", paper.id)
            raise PersistenceError("Failed to save the paper.") from e

    async def _was_saved(self, paper_id: str) -> Optional[bool]:
        """True or False once known, None when the store cannot answer"""
        try:
            return await self.database.get_paper(paper_id) is not None
        except Exception as e:
            logger.error("Could not check whether paper %s was saved: %s", paper_id, e)
            return None

    async def _rollback(self, stored: List[StoredObject]):
        """Best-effort removal of objects that no paper will reference"""
        logger.error("Rolling back %d stored files", len(stored))
        for stored_object in list(stored):
            try:
                await self.uploader.delete(stored_object.key)
            except StorageError as e:
                logger.error("Rollback could not delete %s: %s", stored_object.key, e.message)
        stored.clear()
