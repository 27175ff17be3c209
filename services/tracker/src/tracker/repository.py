from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from common.utils import now_utc_iso

from tracker.models import (
    REASON_EDIT,
    REASONS,
    ChangedFileRecord,
    ProcessedFileRecord,
    RecomputeRun,
    UserProfile,
)

LOGGER = logging.getLogger("assistant.tracker.repository")


class StorageError(RuntimeError):
    """Raised when the ledger database cannot be read or written."""


class LedgerRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            try:
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
                self._connection.row_factory = sqlite3.Row
                self._connection.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS changed_files (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        file_id INTEGER NOT NULL,
                        user_id TEXT NOT NULL,
                        reason TEXT NOT NULL,
                        changed_at TEXT NOT NULL,
                        UNIQUE (file_id, user_id, reason)
                    );

                    CREATE INDEX IF NOT EXISTS idx_changed_files_user
                        ON changed_files (user_id);

                    CREATE TABLE IF NOT EXISTS processed_files (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        file_id INTEGER NOT NULL,
                        domain TEXT NOT NULL,
                        processed_at TEXT NOT NULL,
                        keywords_json TEXT NOT NULL DEFAULT '{}',
                        UNIQUE (file_id, domain)
                    );

                    CREATE TABLE IF NOT EXISTS user_profiles (
                        user_id TEXT PRIMARY KEY,
                        keywords_json TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS recompute_runs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        trigger TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        finished_at TEXT NOT NULL,
                        drained INTEGER NOT NULL,
                        processed INTEGER NOT NULL,
                        skipped INTEGER NOT NULL,
                        failed INTEGER NOT NULL,
                        users INTEGER NOT NULL DEFAULT 0,
                        interrupted INTEGER NOT NULL DEFAULT 0
                    );
                    """
                )
                self._ensure_processed_files_columns()
                self._ensure_recompute_runs_columns()
                self._connection.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"Cannot open ledger at {self.database_path}: {exc}") from exc

    def _ensure_processed_files_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(processed_files)").fetchall()
        existing = {row["name"] for row in column_rows}
        required_definitions = {
            "processed_at": "TEXT NOT NULL DEFAULT ''",
            "keywords_json": "TEXT NOT NULL DEFAULT '{}'",
        }
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(
                f"ALTER TABLE processed_files ADD COLUMN {column_name} {definition}"
            )

    def _ensure_recompute_runs_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(recompute_runs)").fetchall()
        existing = {row["name"] for row in column_rows}
        required_definitions = {
            "users": "INTEGER NOT NULL DEFAULT 0",
            "interrupted": "INTEGER NOT NULL DEFAULT 0",
        }
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(
                f"ALTER TABLE recompute_runs ADD COLUMN {column_name} {definition}"
            )

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self.connection
            try:
                yield connection
                connection.commit()
            except sqlite3.Error as exc:
                connection.rollback()
                raise StorageError(str(exc)) from exc
            except Exception:
                connection.rollback()
                raise

    def upsert_changed(self, file_id: int, user_id: str, reason: str) -> ChangedFileRecord:
        if reason not in REASONS:
            raise ValueError(f"Unsupported change reason: {reason}")
        changed_at = now_utc_iso()
        with self.transaction() as connection:
            connection.execute(
                "DELETE FROM changed_files WHERE file_id = ? AND user_id = ? AND reason = ?",
                (file_id, user_id, reason),
            )
            connection.execute(
                """
                INSERT INTO changed_files (file_id, user_id, reason, changed_at)
                VALUES (?, ?, ?, ?)
                """,
                (file_id, user_id, reason, changed_at),
            )
        return ChangedFileRecord(
            file_id=file_id,
            user_id=user_id,
            reason=reason,  # type: ignore[arg-type]
            changed_at=changed_at,
        )

    def delete_changed(self, file_id: int, user_id: str, reason: str) -> bool:
        with self.transaction() as connection:
            cursor = connection.execute(
                "DELETE FROM changed_files WHERE file_id = ? AND user_id = ? AND reason = ?",
                (file_id, user_id, reason),
            )
            return cursor.rowcount > 0

    def clear_changed(self, record: ChangedFileRecord) -> bool:
        """Delete a drained record unless it was re-inserted after the snapshot."""
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                DELETE FROM changed_files
                WHERE file_id = ? AND user_id = ? AND reason = ? AND changed_at = ?
                """,
                (record.file_id, record.user_id, record.reason, record.changed_at),
            )
            return cursor.rowcount > 0

    def complete_changed(
        self,
        record: ChangedFileRecord,
        domain: str,
        keywords: dict[str, int],
        *,
        read_started_at: str,
    ) -> bool:
        """Cache extracted keywords and clear a drained record in one transaction.

        The keywords are only cached when no edit of the file was recorded
        since ``read_started_at``. The record is only cleared when it was not
        re-inserted after the snapshot. Returns whether the record was cleared.
        """
        with self.transaction() as connection:
            newer_edit = connection.execute(
                """
                SELECT 1 FROM changed_files
                WHERE file_id = ? AND reason = ? AND changed_at >= ?
                LIMIT 1
                """,
                (record.file_id, REASON_EDIT, read_started_at),
            ).fetchone()
            if newer_edit is None:
                connection.execute(
                    """
                    INSERT OR REPLACE INTO processed_files
                        (file_id, domain, processed_at, keywords_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (record.file_id, domain, now_utc_iso(), json.dumps(keywords, sort_keys=True)),
                )
            else:
                LOGGER.info(
                    "file=%s edited during extraction, not caching keywords", record.file_id
                )
            cursor = connection.execute(
                """
                DELETE FROM changed_files
                WHERE file_id = ? AND user_id = ? AND reason = ? AND changed_at = ?
                """,
                (record.file_id, record.user_id, record.reason, record.changed_at),
            )
            return cursor.rowcount > 0

    def list_changed(
        self,
        *,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[ChangedFileRecord]:
        query = "SELECT file_id, user_id, reason, changed_at FROM changed_files"
        params: list[object] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY user_id ASC, changed_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.transaction() as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [ChangedFileRecord(**dict(row)) for row in rows]

    def insert_processed(
        self,
        file_id: int,
        domain: str,
        keywords: dict[str, int] | None = None,
    ) -> ProcessedFileRecord:
        processed_at = now_utc_iso()
        resolved_keywords = dict(keywords or {})
        with self.transaction() as connection:
            connection.execute(
                """
                INSERT OR REPLACE INTO processed_files (file_id, domain, processed_at, keywords_json)
                VALUES (?, ?, ?, ?)
                """,
                (file_id, domain, processed_at, json.dumps(resolved_keywords, sort_keys=True)),
            )
        return ProcessedFileRecord(
            file_id=file_id,
            domain=domain,
            processed_at=processed_at,
            keywords=resolved_keywords,
        )

    def get_processed(self, file_id: int, domain: str) -> ProcessedFileRecord | None:
        with self.transaction() as connection:
            row = connection.execute(
                """
                SELECT file_id, domain, processed_at, keywords_json
                FROM processed_files
                WHERE file_id = ? AND domain = ?
                """,
                (file_id, domain),
            ).fetchone()
        if row is None:
            return None
        return self._to_processed(row)

    def delete_processed(self, file_id: int, domain: str) -> bool:
        with self.transaction() as connection:
            cursor = connection.execute(
                "DELETE FROM processed_files WHERE file_id = ? AND domain = ?",
                (file_id, domain),
            )
            return cursor.rowcount > 0

    def list_processed(self, domain: str | None = None) -> list[ProcessedFileRecord]:
        query = "SELECT file_id, domain, processed_at, keywords_json FROM processed_files"
        params: tuple[object, ...] = ()
        if domain is not None:
            query += " WHERE domain = ?"
            params = (domain,)
        query += " ORDER BY id ASC"
        with self.transaction() as connection:
            rows = connection.execute(query, params).fetchall()
        return [self._to_processed(row) for row in rows]

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        with self.transaction() as connection:
            row = connection.execute(
                "SELECT user_id, keywords_json, updated_at FROM user_profiles WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return UserProfile(
            user_id=row["user_id"],
            keywords=json.loads(row["keywords_json"]),
            updated_at=row["updated_at"],
        )

    def upsert_user_profile(self, user_id: str, keywords: dict[str, float]) -> UserProfile:
        updated_at = now_utc_iso()
        with self.transaction() as connection:
            connection.execute(
                """
                INSERT INTO user_profiles (user_id, keywords_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    keywords_json = excluded.keywords_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(keywords, sort_keys=True), updated_at),
            )
        return UserProfile(user_id=user_id, keywords=keywords, updated_at=updated_at)

    def record_recompute_run(self, run: RecomputeRun) -> RecomputeRun:
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT INTO recompute_runs (
                    trigger,
                    started_at,
                    finished_at,
                    drained,
                    processed,
                    skipped,
                    failed,
                    users,
                    interrupted
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.trigger,
                    run.started_at,
                    run.finished_at,
                    run.drained,
                    run.processed,
                    run.skipped,
                    run.failed,
                    run.users,
                    int(run.interrupted),
                ),
            )
            run_id = int(cursor.lastrowid)
        return run.model_copy(update={"run_id": run_id})

    def list_recompute_runs(self, limit: int) -> list[RecomputeRun]:
        with self.transaction() as connection:
            rows = connection.execute(
                """
                SELECT
                    id AS run_id,
                    trigger,
                    started_at,
                    finished_at,
                    drained,
                    processed,
                    skipped,
                    failed,
                    users,
                    interrupted
                FROM recompute_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            RecomputeRun(**{**dict(row), "interrupted": bool(row["interrupted"])})
            for row in rows
        ]

    def _to_processed(self, row: sqlite3.Row) -> ProcessedFileRecord:
        return ProcessedFileRecord(
            file_id=row["file_id"],
            domain=row["domain"],
            processed_at=row["processed_at"],
            keywords=json.loads(row["keywords_json"] or "{}"),
        )
