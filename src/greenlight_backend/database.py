"""
SQLite document store for submissions and email signups.

Each submission row keeps its analysis as a JSON document. Status changes go
through compare-and-swap updates so that two workers can never both move the
same submission into ``processing``.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from .models import LEGACY_STATUS_ALIASES, STATUS_RANK, SubmissionStatus, coerce_status
from .utils import ensure_directory

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/greenlight.db")

SUBMISSION_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

IMMUTABLE_FIELDS = frozenset({"id", "created_at", "file_name", "file_size"})
MUTABLE_FIELDS = frozenset({"synopsis", "text", "status", "analysis", "error", "completed_at"})


class StoreError(RuntimeError):
    pass


class StoreUnavailable(StoreError):
    """The database could not be reached or is locked past the busy timeout."""


class InvalidTransition(StoreError):
    pass


class InvalidSubmissionId(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


def is_valid_submission_id(submission_id: Any) -> bool:
    return isinstance(submission_id, str) and bool(SUBMISSION_ID_PATTERN.match(submission_id))


def _require_valid_id(submission_id: Any) -> None:
    if not is_valid_submission_id(submission_id):
        raise InvalidSubmissionId("Invalid submission ID format")


def _stored_tags(statuses: Iterable[SubmissionStatus]) -> List[str]:
    """Status values as stored, including legacy aliases of each status."""
    tags = []
    for status in statuses:
        tags.append(status.value)
        tags.extend(alias for alias, canonical in LEGACY_STATUS_ALIASES.items() if canonical is status)
    return tags


def _prepare_status_fields(to_status: SubmissionStatus, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the analysis/error invariants for a move into ``to_status``."""
    prepared = dict(fields)
    if to_status is SubmissionStatus.COMPLETED:
        if prepared.get("analysis") is None:
            raise InvalidTransition("A completed submission requires an analysis")
        prepared["error"] = None
    elif to_status is SubmissionStatus.ERROR:
        if not prepared.get("error"):
            raise InvalidTransition("A failed submission requires an error message")
        prepared["analysis"] = None
    else:
        if prepared.get("analysis") is not None or prepared.get("error") is not None:
            raise InvalidTransition(f"Status {to_status.value} cannot carry an analysis or error")
    if to_status.is_terminal:
        prepared.setdefault("completed_at", _utcnow())
    return prepared


def _encode_value(key: str, value: Any) -> Any:
    if key == "analysis":
        if value is None:
            return None
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return json.dumps(value)
    if key == "status":
        return SubmissionStatus(value).value
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    return value


class SubmissionDatabase:
    """
    SQLite database for submission persistence.

    Every call opens its own short-lived connection, so one instance is safe
    to share between request handlers and background workers.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            conn.close()
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    synopsis TEXT NOT NULL,
                    text TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    analysis TEXT,
                    error TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_submissions_status_updated
                ON submissions(status, updated_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS email_signups (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    submission_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

    def ping(self) -> None:
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()

    def insert(self, fields: Dict[str, Any]) -> str:
        """
        Create a submission in the ``uploaded`` state.

        Args:
            fields: synopsis, text, file_name and file_size

        Returns:
            The generated submission id
        """
        submission_id = uuid4().hex
        now = _serialize_datetime(_utcnow())
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO submissions (
                    id, synopsis, text, file_name, file_size,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                submission_id,
                fields["synopsis"],
                fields["text"],
                fields["file_name"],
                int(fields["file_size"]),
                SubmissionStatus.UPLOADED.value,
                now,
                now,
            ))
        logger.info(f"Submission {submission_id} stored ({len(fields['text'])} characters)")
        return submission_id

    def get(self, submission_id: str) -> Optional[Dict[str, Any]]:
        _require_valid_id(submission_id)
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM submissions WHERE id = ?", (submission_id,)
            ).fetchone()
            return self._row_to_dict(row) if row else None

    def update(self, submission_id: str, **fields: Any) -> bool:
        """
        Merge fields into a submission and stamp ``updated_at``.

        Returns:
            True if the submission exists, False otherwise

        Raises:
            ValueError: An immutable or unknown field was given
            InvalidTransition: The status would move backwards or the
                analysis/error invariants would break
        """
        _require_valid_id(submission_id)
        protected = IMMUTABLE_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Cannot modify immutable fields: {', '.join(sorted(protected))}")
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown submission fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(submission_id) is not None

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT status FROM submissions WHERE id = ?", (submission_id,)
            ).fetchone()
            if not row:
                return False

            current = coerce_status(row["status"])
            if "status" in fields:
                target = SubmissionStatus(fields["status"])
                if STATUS_RANK[target] < STATUS_RANK[current] or (current.is_terminal and target is not current):
                    raise InvalidTransition(f"Cannot move submission from {current.value} to {target.value}")
                fields = _prepare_status_fields(target, fields)
            elif fields.get("analysis") is not None or fields.get("error") is not None:
                raise InvalidTransition("analysis and error can only be set together with a terminal status")

            self._apply(conn, submission_id, fields)
            return True

    def transition(
        self,
        submission_id: str,
        from_statuses: Iterable[SubmissionStatus],
        to_status: SubmissionStatus,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a submission to ``to_status`` if it is currently in
        one of ``from_statuses``.

        Returns:
            True if this call performed the transition, False if the record
            was missing or in another state
        """
        _require_valid_id(submission_id)
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown or "status" in fields:
            raise ValueError(f"Invalid transition fields: {', '.join(sorted(unknown or {'status'}))}")
        sources = list(from_statuses)
        for source in sources:
            if STATUS_RANK[to_status] < STATUS_RANK[source] or source.is_terminal:
                raise InvalidTransition(f"Cannot move submission from {source.value} to {to_status.value}")
        fields = _prepare_status_fields(to_status, fields)

        tags = _stored_tags(sources)
        with self._get_connection() as conn:
            cursor = self._apply(
                conn,
                submission_id,
                {**fields, "status": to_status},
                where=f"status IN ({', '.join('?' for _ in tags)})",
                where_values=tags,
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info(f"Submission {submission_id} -> {to_status.value}")
        return changed

    def claim_stale(self, submission_id: str, status: SubmissionStatus, older_than: datetime) -> bool:
        """Refresh ``updated_at`` on a record idle in ``status`` since before ``older_than``."""
        _require_valid_id(submission_id)
        tags = _stored_tags([status])
        with self._get_connection() as conn:
            cursor = self._apply(
                conn,
                submission_id,
                {},
                where=f"status IN ({', '.join('?' for _ in tags)}) AND updated_at < ?",
                where_values=[*tags, _serialize_datetime(older_than)],
            )
            return cursor.rowcount > 0

    def list_stale(self, statuses: Iterable[SubmissionStatus], older_than: datetime) -> List[Dict[str, Any]]:
        """Submissions in ``statuses`` not updated since ``older_than``, oldest first."""
        tags = _stored_tags(statuses)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT id, status FROM submissions WHERE status IN ({', '.join('?' for _ in tags)}) "
                "AND updated_at < ? ORDER BY created_at",
                [*tags, _serialize_datetime(older_than)],
            ).fetchall()
            return [{"id": row["id"], "status": coerce_status(row["status"])} for row in rows]

    def insert_signup(self, email: str, submission_id: str) -> str:
        signup_id = uuid4().hex
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO email_signups (id, email, submission_id, created_at) VALUES (?, ?, ?, ?)",
                (signup_id, email, submission_id, _serialize_datetime(_utcnow())),
            )
        return signup_id

    def get_signup(self, signup_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM email_signups WHERE id = ?", (signup_id,)).fetchone()
            if not row:
                return None
            return {
                "id": row["id"],
                "email": row["email"],
                "submission_id": row["submission_id"],
                "created_at": _deserialize_datetime(row["created_at"]),
            }

    def _apply(
        self,
        conn: sqlite3.Connection,
        submission_id: str,
        fields: Dict[str, Any],
        where: Optional[str] = None,
        where_values: Iterable[Any] = (),
    ) -> sqlite3.Cursor:
        updates = ["updated_at = ?"]
        values: List[Any] = [_serialize_datetime(_utcnow())]
        for key, value in fields.items():
            updates.append(f"{key} = ?")
            values.append(_encode_value(key, value))

        clause = "id = ?"
        values.append(submission_id)
        if where:
            clause = f"{clause} AND {where}"
            values.extend(where_values)

        return conn.execute(f"UPDATE submissions SET {', '.join(updates)} WHERE {clause}", values)

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a submission dictionary."""
        return {
            "id": row["id"],
            "synopsis": row["synopsis"],
            "text": row["text"],
            "file_name": row["file_name"],
            "file_size": row["file_size"],
            "status": coerce_status(row["status"]),
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "completed_at": _deserialize_datetime(row["completed_at"]),
            "analysis": json.loads(row["analysis"]) if row["analysis"] else None,
            "error": row["error"],
        }
