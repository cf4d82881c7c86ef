"""
Document persistence for papers, feedback and subjects.

Papers embed their files (a JSONB array on PostgreSQL) so a paper and its
files are always written and deleted as one unit. Vote counters are bumped
inside the store with a single atomic statement; nothing reads a counter,
adds one in Python and writes it back.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from pyqvault.config import Config
from pyqvault.errors import NotFoundError, PersistenceError, ValidationError
from pyqvault.models.feedback import Feedback, Subject
from pyqvault.models.paper import Paper, PaperFile, normalize_semester, normalize_subject

logger = logging.getLogger(__name__)

VOTE_FIELDS = ("upvotes", "downvotes")

SCHEMA = """
CREATE TABLE IF NOT EXISTS papers (
    id TEXT PRIMARY KEY,
    subject TEXT NOT NULL,
    semester TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    files JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS papers_subject_semester_idx ON papers (subject, semester, created_at DESC);
CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    message TEXT NOT NULL,
    email TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS subjects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
"""


def _check_vote_field(field: str):
    if field not in VOTE_FIELDS:
        raise ValueError(f"Unknown vote counter: {field}")


class PaperDatabase:
    async def init_schema(self):
        pass

    async def insert_paper(self, paper: Paper) -> Paper:
        raise NotImplementedError

    async def get_paper(self, paper_id: str) -> Optional[Paper]:
        raise NotImplementedError

    async def list_papers(self, subject: Optional[str] = None, semester: Optional[str] = None) -> List[Paper]:
        """All papers matching the filters, newest first"""
        raise NotImplementedError

    async def delete_paper(self, paper_id: str) -> bool:
        raise NotImplementedError

    async def mark_files_removed(self, paper_id: str, keys: List[str]) -> None:
        """Flag files whose payloads are already gone so listings stop serving them"""
        raise NotImplementedError

    async def increment_file_counter(self, paper_id: str, index: int, field: str) -> PaperFile:
        """
        Atomically add one to a file's vote counter.

        Raises:
            NotFoundError: unknown paper or file index
        """
        raise NotImplementedError

    async def insert_feedback(self, feedback: Feedback) -> Feedback:
        raise NotImplementedError

    async def list_subjects(self) -> List[Subject]:
        raise NotImplementedError

    async def insert_subject(self, subject: Subject) -> Subject:
        raise NotImplementedError


class MemoryDatabase(PaperDatabase):
    """In-process store used when no DATABASE_URL is configured"""

    def __init__(self):
        self._papers: Dict[str, Paper] = {}
        self._feedback: Dict[str, Feedback] = {}
        self._subjects: Dict[str, Subject] = {}
        self._lock = asyncio.Lock()

    async def insert_paper(self, paper: Paper) -> Paper:
        async with self._lock:
            self._papers[paper.id] = paper.model_copy(deep=True)
        return paper

    async def get_paper(self, paper_id: str) -> Optional[Paper]:
        paper = self._papers.get(paper_id)
        return paper.model_copy(deep=True) if paper else None

    async def list_papers(self, subject: Optional[str] = None, semester: Optional[str] = None) -> List[Paper]:
        papers = list(self._papers.values())
        if subject:
            papers = [p for p in papers if p.subject == normalize_subject(subject)]
        if semester:
            papers = [p for p in papers if p.semester == normalize_semester(semester)]
        papers.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in papers]

    async def delete_paper(self, paper_id: str) -> bool:
        async with self._lock:
            return self._papers.pop(paper_id, None) is not None

    async def mark_files_removed(self, paper_id: str, keys: List[str]) -> None:
        async with self._lock:
            paper = self._papers.get(paper_id)
            for file in paper.files if paper else []:
                if file.key in keys:
                    file.removed = True

    async def increment_file_counter(self, paper_id: str, index: int, field: str) -> PaperFile:
        _check_vote_field(field)
        async with self._lock:
            paper = self._papers.get(paper_id)
            if paper is None:
                raise NotFoundError("Paper not found")
            if index < 0 or index >= len(paper.files):
                raise NotFoundError("File not found")
            file = paper.files[index]
            setattr(file, field, getattr(file, field) + 1)
            return file.model_copy()

    async def insert_feedback(self, feedback: Feedback) -> Feedback:
        self._feedback[feedback.id] = feedback.model_copy()
        return feedback

    async def list_subjects(self) -> List[Subject]:
        return sorted(self._subjects.values(), key=lambda s: s.name)

    async def insert_subject(self, subject: Subject) -> Subject:
        async with self._lock:
            if any(s.name == subject.name for s in self._subjects.values()):
                raise ValidationError("Subject already exists")
            self._subjects[subject.id] = subject.model_copy()
        return subject


class PostgresDatabase(PaperDatabase):
    def __init__(self, database_url: str, timeout: float = 10.0, call_timeout: Optional[float] = None):
        self.database_url = database_url
        self.timeout = timeout
        # Worst case of one call: connect_timeout plus statement_timeout
        self.call_timeout = call_timeout if call_timeout is not None else 2 * timeout + 1

    def get_db_connection(self):
        """Get PostgreSQL connection"""
        return psycopg2.connect(
            self.database_url,
            cursor_factory=RealDictCursor,
            connect_timeout=max(1, int(self.timeout)),
            options=f"-c statement_timeout={int(self.timeout * 1000)}",
        )

    async def _run(self, description: str, fn: Callable, *args) -> Any:
        """Run a blocking query in a worker thread, bounded by the timeout"""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Database {description} timed out") from e
        except psycopg2.Error as e:
            logger.error("Database %s failed: %s", description, e)
            raise PersistenceError(f"Database {description} failed") from e

    def _execute(self, query: str, params=None, fetch: str = "none"):
        conn = self.get_db_connection()
        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    if fetch == "one":
                        return cur.fetchone()
                    if fetch == "all":
                        return cur.fetchall()
                    return cur.rowcount
        finally:
            conn.close()

    @staticmethod
    def _row_to_paper(row: Dict[str, Any]) -> Paper:
        return Paper(**dict(row))

    async def init_schema(self):
        await self._run("schema setup", self._execute, SCHEMA)
        logger.info("Database schema ready")

    async def insert_paper(self, paper: Paper) -> Paper:
        """
        Insert a paper. When the wait gives up, the worker thread is left to
        finish and whatever it committed is deleted again before raising, so
        a failed insert never leaves a row behind.
        """
        work = asyncio.ensure_future(asyncio.to_thread(
            self._execute,
            """
            INSERT INTO papers (id, subject, semester, description, files, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                paper.id,
                paper.subject,
                paper.semester,
                paper.description,
                Json([f.model_dump(mode="json") for f in paper.files]),
                paper.created_at,
            ),
        ))
        try:
            await asyncio.wait_for(asyncio.shield(work), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Paper insert for %s timed out, undoing it once it settles", paper.id)
            await self._undo_insert(work, paper.id)
            raise PersistenceError("Database paper insert timed out") from e
        except asyncio.CancelledError:
            await asyncio.shield(self._undo_insert(work, paper.id))
            raise
        except psycopg2.Error as e:
            logger.error("Database paper insert failed: %s", e)
            raise PersistenceError("Database paper insert failed") from e
        return paper

    async def _undo_insert(self, work: asyncio.Future, paper_id: str):
        try:
            await work
        except psycopg2.Error:
            # Never committed
            return
        await self._run(
            "paper insert undo",
            self._execute,
            "DELETE FROM papers WHERE id = %s",
            (paper_id,),
        )

    async def get_paper(self, paper_id: str) -> Optional[Paper]:
        row = await self._run(
            "paper lookup",
            self._execute,
            "SELECT * FROM papers WHERE id = %s",
            (paper_id,),
            "one",
        )
        return self._row_to_paper(row) if row else None

    async def list_papers(self, subject: Optional[str] = None, semester: Optional[str] = None) -> List[Paper]:
        clauses = []
        params: List[Any] = []
        if subject:
            clauses.append("subject = %s")
            params.append(normalize_subject(subject))
        if semester:
            clauses.append("semester = %s")
            params.append(normalize_semester(semester))

        query = "SELECT * FROM papers"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        rows = await self._run("paper listing", self._execute, query, tuple(params), "all")
        return [self._row_to_paper(row) for row in rows]

    async def delete_paper(self, paper_id: str) -> bool:
        deleted = await self._run(
            "paper delete",
            self._execute,
            "DELETE FROM papers WHERE id = %s",
            (paper_id,),
        )
        return deleted > 0

    async def mark_files_removed(self, paper_id: str, keys: List[str]) -> None:
        await self._run(
            "file removal flag",
            self._execute,
            """
            UPDATE papers
            SET files = (
                SELECT jsonb_agg(
                    CASE WHEN f ->> 'key' = ANY(%(keys)s) THEN f || '{"removed": true}'::jsonb ELSE f END
                    ORDER BY position
                )
                FROM jsonb_array_elements(files) WITH ORDINALITY AS t(f, position)
            )
            WHERE id = %(paper_id)s
            """,
            {"paper_id": paper_id, "keys": list(keys)},
        )

    def _increment_sync(self, paper_id: str, index: int, field: str) -> Dict[str, Any]:
        conn = self.get_db_connection()
        try:
            with conn:
                with conn.cursor() as cur:
                    # Single statement: the row lock serializes concurrent votes
                    cur.execute(
                        """
                        UPDATE papers
                        SET files = jsonb_set(
                            files,
                            ARRAY[%(index)s::text, %(field)s::text],
                            to_jsonb(COALESCE((files -> %(index)s ->> %(field)s)::int, 0) + 1)
                        )
                        WHERE id = %(paper_id)s AND jsonb_array_length(files) > %(index)s
                        RETURNING files -> %(index)s AS file
                        """,
                        {"paper_id": paper_id, "index": index, "field": field},
                    )
                    row = cur.fetchone()
                    if row:
                        return row["file"]

                    cur.execute("SELECT jsonb_array_length(files) AS file_count FROM papers WHERE id = %s", (paper_id,))
                    if cur.fetchone() is None:
                        raise NotFoundError("Paper not found")
                    raise NotFoundError("File not found")
        finally:
            conn.close()

    async def increment_file_counter(self, paper_id: str, index: int, field: str) -> PaperFile:
        _check_vote_field(field)
        if index < 0:
            raise NotFoundError("File not found")
        file = await self._run("vote", self._increment_sync, paper_id, index, field)
        return PaperFile(**file)

    async def insert_feedback(self, feedback: Feedback) -> Feedback:
        await self._run(
            "feedback insert",
            self._execute,
            "INSERT INTO feedback (id, message, email, created_at) VALUES (%s, %s, %s, %s)",
            (feedback.id, feedback.message, feedback.email, feedback.created_at),
        )
        return feedback

    async def list_subjects(self) -> List[Subject]:
        rows = await self._run("subject listing", self._execute, "SELECT * FROM subjects ORDER BY name", None, "all")
        return [Subject(**dict(row)) for row in rows]

    async def insert_subject(self, subject: Subject) -> Subject:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self._execute,
                    "INSERT INTO subjects (id, name) VALUES (%s, %s)",
                    (subject.id, subject.name),
                ),
                timeout=self.call_timeout,
            )
        except psycopg2.IntegrityError as e:
            raise ValidationError("Subject already exists") from e
        except asyncio.TimeoutError as e:
            raise PersistenceError("Database subject insert timed out") from e
        except psycopg2.Error as e:
            logger.error("Database subject insert failed: %s", e)
            raise PersistenceError("Database subject insert failed") from e
        return subject


def create_database(config: Config) -> PaperDatabase:
    if not config.DATABASE_URL:
        logger.warning("DATABASE_URL not set, using the in-process store (data is lost on restart)")
        return MemoryDatabase()
    return PostgresDatabase(config.DATABASE_URL, timeout=config.DB_TIMEOUT)
