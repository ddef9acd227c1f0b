from __future__ import annotations

import itertools
import os
import re
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.errors import NotFound, ValidationError
from app.models import (
    COMPLAINT_STATUSES,
    DESCRIPTION_MAX_LENGTH,
    RESPONSE_MAX_LENGTH,
    STATUS_PENDING,
    TITLE_MAX_LENGTH,
    Complaint,
    Mutation,
    Subject,
    new_complaint_id,
    utcnow,
)

AfterWrite = Callable[[Complaint, Complaint], None]


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _bounded_text(value: str, *, field_name: str, max_length: int) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} must not be empty")
    if len(text) > max_length:
        raise ValidationError(f"{field_name} exceeds {max_length} characters")
    return text


def _check_mutation(mutation: Mutation) -> None:
    if mutation.is_empty:
        raise ValidationError("update must set status or response")
    if mutation.touches_status and mutation.status not in COMPLAINT_STATUSES:
        raise ValidationError(f"unsupported status: {mutation.status}")
    if mutation.touches_response and mutation.response is not None:
        if len(mutation.response) > RESPONSE_MAX_LENGTH:
            raise ValidationError(f"response exceeds {RESPONSE_MAX_LENGTH} characters")


def _next_updated_at(previous: datetime) -> datetime:
    now = utcnow()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class _KeyedLocks:
    """One lock per record id; the guard is only held to look a lock up."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


class InMemoryComplaintStore:
    """Complaint records keyed by id with a per-id read-modify-write primitive.

    Subclasses swap the storage hooks (``_insert``, ``_load``, ``_load_many``,
    ``_write``) and inherit validation, role scoping and per-id serialization.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._row_locks = _KeyedLocks()
        self._complaints: dict[str, Complaint] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count(1)

    def _insert(self, complaint: Complaint) -> None:
        with self._lock:
            self._complaints[complaint.id] = complaint
            self._sequence[complaint.id] = next(self._counter)

    def _load(self, complaint_id: str) -> Complaint | None:
        with self._lock:
            return self._complaints.get(complaint_id)

    def _load_many(self, *, owner_id: str | None, status: str | None) -> list[Complaint]:
        with self._lock:
            rows = [
                (complaint, self._sequence.get(complaint.id, 0))
                for complaint in self._complaints.values()
                if (owner_id is None or complaint.owner_id == owner_id)
                and (status is None or complaint.status == status)
            ]
        rows.sort(key=lambda pair: (pair[0].created_at, pair[1]), reverse=True)
        return [complaint for complaint, _seq in rows]

    def _write(self, complaint: Complaint) -> None:
        with self._lock:
            self._complaints[complaint.id] = complaint

    def create(
        self,
        *,
        owner_id: str,
        title: str,
        description: str,
        image_ref: str | None = None,
    ) -> Complaint:
        if not str(owner_id or "").strip():
            raise ValidationError("owner_id must not be empty")
        now = utcnow()
        complaint = Complaint(
            id=new_complaint_id(),
            owner_id=owner_id,
            title=_bounded_text(title, field_name="title", max_length=TITLE_MAX_LENGTH),
            description=_bounded_text(description, field_name="description", max_length=DESCRIPTION_MAX_LENGTH),
            image_ref=(str(image_ref).strip() or None) if image_ref is not None else None,
            status=STATUS_PENDING,
            response=None,
            created_at=now,
            updated_at=now,
        )
        self._insert(complaint)
        return complaint

    def get(self, complaint_id: str) -> Complaint:
        complaint = self._load(complaint_id)
        if complaint is None:
            raise NotFound(f"complaint not found: {complaint_id}")
        return complaint

    def list_for(self, subject: Subject, *, status: str | None = None) -> list[Complaint]:
        if status is not None and status not in COMPLAINT_STATUSES:
            raise ValidationError(f"unsupported status: {status}")
        owner_id = None if subject.is_reviewer else subject.id
        return self._load_many(owner_id=owner_id, status=status)

    def status_counts(self, subject: Subject) -> dict[str, int]:
        counts = {status: 0 for status in COMPLAINT_STATUSES}
        for complaint in self.list_for(subject):
            counts[complaint.status] = counts.get(complaint.status, 0) + 1
        return counts

    def apply_mutation(
        self,
        complaint_id: str,
        mutation: Mutation,
        *,
        after_write: AfterWrite | None = None,
    ) -> tuple[Complaint, Complaint]:
        """Atomically apply ``mutation`` and return ``(previous, current)``.

        ``after_write`` runs once the write is stored, still under the per-id
        lock, so callbacks for one complaint observe writes in order.
        """
        _check_mutation(mutation)
        with self._row_locks.hold(complaint_id):
            previous = self.get(complaint_id)
            current = mutation.apply(previous, updated_at=_next_updated_at(previous.updated_at))
            self._write(current)
            if after_write is not None:
                after_write(previous, current)
        return previous, current

    def reset(self) -> None:
        with self._lock:
            self._complaints.clear()
            self._sequence.clear()
        self._row_locks.clear()


_COLUMNS = "id, owner_id, title, description, image_ref, status, response, created_at, updated_at"


def _row_to_complaint(row: Any) -> Complaint:
    return Complaint.from_dict(
        {
            "id": row[0],
            "owner_id": row[1],
            "title": row[2],
            "description": row[3],
            "image_ref": row[4],
            "status": row[5],
            "response": row[6],
            "created_at": row[7],
            "updated_at": row[8],
        }
    )


class SqliteComplaintStore(InMemoryComplaintStore):
    """Durable store on a local SQLite file; survives process restarts."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=5.0)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS complaints (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    image_ref TEXT,
                    status TEXT NOT NULL,
                    response TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_complaints_owner_created
                ON complaints(owner_id, created_at)
                """
            )

    def _insert(self, complaint: Complaint) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO complaints ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    complaint.id,
                    complaint.owner_id,
                    complaint.title,
                    complaint.description,
                    complaint.image_ref,
                    complaint.status,
                    complaint.response,
                    _iso(complaint.created_at),
                    _iso(complaint.updated_at),
                ),
            )

    def _load(self, complaint_id: str) -> Complaint | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM complaints WHERE id = ?", (complaint_id,)).fetchone()
        return _row_to_complaint(row) if row is not None else None

    def _load_many(self, *, owner_id: str | None, status: str | None) -> list[Complaint]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM complaints {where} ORDER BY created_at DESC, rowid DESC",
                tuple(params),
            ).fetchall()
        return [_row_to_complaint(row) for row in rows]

    def apply_mutation(
        self,
        complaint_id: str,
        mutation: Mutation,
        *,
        after_write: AfterWrite | None = None,
    ) -> tuple[Complaint, Complaint]:
        _check_mutation(mutation)
        with self._row_locks.hold(complaint_id):
            with self._connect() as conn:
                # Reserve the write lock before reading so other processes serialize too.
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(f"SELECT {_COLUMNS} FROM complaints WHERE id = ?", (complaint_id,)).fetchone()
                if row is None:
                    raise NotFound(f"complaint not found: {complaint_id}")
                previous = _row_to_complaint(row)
                current = mutation.apply(previous, updated_at=_next_updated_at(previous.updated_at))
                conn.execute(
                    "UPDATE complaints SET status = ?, response = ?, updated_at = ? WHERE id = ?",
                    (current.status, current.response, _iso(current.updated_at), complaint_id),
                )
            if after_write is not None:
                after_write(previous, current)
        return previous, current

    def reset(self) -> None:
        super().reset()
        with self._connect() as conn:
            conn.execute("DELETE FROM complaints")


class PostgresComplaintStore(InMemoryComplaintStore):
    """PostgreSQL store; row locks via SELECT ... FOR UPDATE serialize writers across processes."""

    backend_name = "postgres"

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "complaints",
        ensure_schema: bool = True,
    ) -> None:
        super().__init__()
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        if ensure_schema:
            self._ensure_schema()

    def _ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                image_ref TEXT,
                status TEXT NOT NULL,
                response TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(_op)

    def _insert(self, complaint: Complaint) -> None:
        sql = f"INSERT INTO {self._table_name} ({_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        complaint.id,
                        complaint.owner_id,
                        complaint.title,
                        complaint.description,
                        complaint.image_ref,
                        complaint.status,
                        complaint.response,
                        complaint.created_at,
                        complaint.updated_at,
                    ),
                )

        self._tx_runner.run_in_tx(_op)

    def _load(self, complaint_id: str) -> Complaint | None:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> Complaint | None:
            with conn.cursor() as cur:
                cur.execute(sql, (complaint_id,))
                row = cur.fetchone()
            return _row_to_complaint(row) if row is not None else None

        return self._tx_runner.run_in_tx(_op)

    def _load_many(self, *, owner_id: str | None, status: str | None) -> list[Complaint]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} {where} ORDER BY created_at DESC, seq DESC"

        def _op(conn: Any) -> list[Complaint]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [_row_to_complaint(row) for row in rows]

        return self._tx_runner.run_in_tx(_op)

    def apply_mutation(
        self,
        complaint_id: str,
        mutation: Mutation,
        *,
        after_write: AfterWrite | None = None,
    ) -> tuple[Complaint, Complaint]:
        _check_mutation(mutation)
        select_sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE id = %s FOR UPDATE"
        update_sql = f"UPDATE {self._table_name} SET status = %s, response = %s, updated_at = %s WHERE id = %s"

        def _op(conn: Any) -> tuple[Complaint, Complaint]:
            with conn.cursor() as cur:
                cur.execute(select_sql, (complaint_id,))
                row = cur.fetchone()
                if row is None:
                    raise NotFound(f"complaint not found: {complaint_id}")
                previous = _row_to_complaint(row)
                current = mutation.apply(previous, updated_at=_next_updated_at(previous.updated_at))
                cur.execute(update_sql, (current.status, current.response, current.updated_at, complaint_id))
            return previous, current

        with self._row_locks.hold(complaint_id):
            previous, current = self._tx_runner.run_in_tx(_op)
            if after_write is not None:
                after_write(previous, current)
        return previous, current

    def reset(self) -> None:
        super().reset()

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._table_name}")

        self._tx_runner.run_in_tx(_op)


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def durable_store_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return str(env.get("CDESK_REQUIRE_DURABLE_STORE", "false")).strip().lower() in {"1", "true", "yes", "on"}


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryComplaintStore:
    env = os.environ if environ is None else environ
    backend = env.get("CDESK_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend not in {"memory", "sqlite", "postgres"}:
        raise RuntimeError(f"unsupported store backend: {backend}")
    if durable_store_required(env) and backend == "memory":
        raise RuntimeError("CDESK_STORE_BACKEND must be sqlite or postgres when CDESK_REQUIRE_DURABLE_STORE=true")
    if backend == "sqlite":
        db_path = env.get("CDESK_STORE_SQLITE_PATH", ".local/complaints.sqlite3")
        return SqliteComplaintStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when CDESK_STORE_BACKEND=postgres")
        runner = PostgresTxRunner(
            dsn,
            statement_timeout_ms=_env_int(env, "POSTGRES_STATEMENT_TIMEOUT_MS", default=5000, minimum=1),
        )
        table_name = env.get("CDESK_STORE_POSTGRES_TABLE", "complaints")
        return PostgresComplaintStore(tx_runner=runner, table_name=table_name)
    return InMemoryComplaintStore()
