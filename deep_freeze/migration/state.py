"""SQLite-backed migration state.

One row per cataloged source file. Every transition is a single parameterized
``UPDATE ... WHERE source_id = ?`` so records can be updated independently from
concurrent workers.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Collection, Iterable, Iterator, List, Optional, Tuple

from ..utils.exceptions import StateStoreError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS paths (
    source_id TEXT PRIMARY KEY,
    source_path TEXT NOT NULL,
    source_size INTEGER NOT NULL,
    source_content_hash TEXT,
    status INTEGER NOT NULL DEFAULT -1,
    skip INTEGER NOT NULL DEFAULT 0,
    local_path TEXT,
    local_size INTEGER,
    destination_key TEXT,
    destination_size INTEGER
);
CREATE INDEX IF NOT EXISTS idx_paths_status_skip ON paths(status, skip);
"""

_COLUMNS = (
    "source_id, source_path, source_size, source_content_hash, status, skip, "
    "local_path, local_size, destination_key, destination_size"
)


class MigrationStatus(IntEnum):
    UNVERIFIED = -1
    NEEDS_TRANSFER = 0
    MIGRATED = 1


@dataclass(frozen=True)
class FileRecord:
    source_id: str
    source_path: str
    source_size: int
    source_content_hash: Optional[str] = None
    status: MigrationStatus = MigrationStatus.UNVERIFIED
    skip: bool = False
    local_path: Optional[str] = None
    local_size: Optional[int] = None
    destination_key: Optional[str] = None
    destination_size: Optional[int] = None


@dataclass
class StoreSummary:
    total: int = 0
    unverified: int = 0
    needs_transfer: int = 0
    migrated: int = 0
    skipped: int = 0
    unmigrated_bytes: int = 0

    @property
    def unmigrated(self) -> int:
        return self.total - self.migrated

    @property
    def percent_done(self) -> int:
        if self.total == 0:
            return 0
        return 100 * self.migrated // self.total


def _record_from_row(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        source_id=row["source_id"],
        source_path=row["source_path"],
        source_size=row["source_size"],
        source_content_hash=row["source_content_hash"],
        status=MigrationStatus(row["status"]),
        skip=bool(row["skip"]),
        local_path=row["local_path"],
        local_size=row["local_size"],
        destination_key=row["destination_key"],
        destination_size=row["destination_size"],
    )


class StateStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_database()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _init_database(self) -> None:
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.debug("State database ready at %s", self._db_path)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StateStoreError(
                f"Failed to open state database: {e}", db_path=str(self._db_path)
            ) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StateStoreError(
                f"State database error: {e}", db_path=str(self._db_path)
            ) from e
        finally:
            conn.close()

    def _execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount

    def _scalar(self, query: str, params: Tuple[Any, ...] = ()) -> Any:
        with self._get_connection() as conn:
            row = conn.execute(query, params).fetchone()
        return row[0] if row is not None else None

    def insert_records(
        self, entries: Iterable[Tuple[str, str, int, Optional[str]]]
    ) -> int:
        """Insert ``(source_id, source_path, size, content_hash)`` tuples.

        Existing ids are left untouched. Returns the number of new rows.
        """
        rows = list(entries)
        if not rows:
            return 0
        with self._lock:
            with self._get_connection() as conn:
                before = conn.total_changes
                conn.executemany(
                    "INSERT OR IGNORE INTO paths "
                    "(source_id, source_path, source_size, source_content_hash) "
                    "VALUES (?, ?, ?, ?)",
                    rows,
                )
                conn.commit()
                return conn.total_changes - before

    def count_rows(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM paths"))

    def get_record(self, source_id: str) -> Optional[FileRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM paths WHERE source_id = ?", (source_id,)
            ).fetchone()
        return _record_from_row(row) if row is not None else None

    def get_eligible_records(
        self, exclude_ids: Collection[str] = ()
    ) -> List[FileRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM paths WHERE status < ? AND skip = 0 "
                "ORDER BY source_path ASC, source_id ASC",
                (int(MigrationStatus.MIGRATED),),
            ).fetchall()
        excluded = set(exclude_ids)
        return [
            _record_from_row(row) for row in rows if row["source_id"] not in excluded
        ]

    def get_skipped_records(self) -> List[FileRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM paths WHERE skip = 1 ORDER BY source_path ASC"
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def set_migrated(
        self, source_id: str, destination_key: str, destination_size: int
    ) -> None:
        self._execute(
            "UPDATE paths SET status = ?, destination_key = ?, destination_size = ? "
            "WHERE source_id = ?",
            (
                int(MigrationStatus.MIGRATED),
                destination_key,
                destination_size,
                source_id,
            ),
        )
        logger.info("Migrated: %s", source_id)

    def set_needs_transfer(self, source_id: str) -> None:
        self._execute(
            "UPDATE paths SET status = ?, destination_key = NULL, "
            "destination_size = NULL WHERE source_id = ?",
            (int(MigrationStatus.NEEDS_TRANSFER), source_id),
        )
        logger.info("Not migrated: %s", source_id)

    def set_skip(self, source_id: str, skip: bool = True) -> None:
        self._execute(
            "UPDATE paths SET skip = ? WHERE source_id = ?",
            (1 if skip else 0, source_id),
        )
        if skip:
            logger.warning("Skipping %s for the rest of this run", source_id)

    def clear_skips(self, source_ids: Optional[Collection[str]] = None) -> int:
        if source_ids is None:
            return self._execute("UPDATE paths SET skip = 0 WHERE skip = 1")
        cleared = 0
        for source_id in source_ids:
            cleared += self._execute(
                "UPDATE paths SET skip = 0 WHERE source_id = ? AND skip = 1",
                (source_id,),
            )
        return cleared

    def set_local(
        self, source_id: str, local_path: Optional[str], local_size: Optional[int]
    ) -> None:
        self._execute(
            "UPDATE paths SET local_path = ?, local_size = ? WHERE source_id = ?",
            (local_path, local_size, source_id),
        )

    def get_summary(self) -> StoreSummary:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, skip, COUNT(*) AS n, COALESCE(SUM(source_size), 0) "
                "AS bytes FROM paths GROUP BY status, skip"
            ).fetchall()

        summary = StoreSummary()
        for row in rows:
            status = MigrationStatus(row["status"])
            count = row["n"]
            summary.total += count
            if row["skip"]:
                summary.skipped += count
            if status == MigrationStatus.MIGRATED:
                summary.migrated += count
                continue
            summary.unmigrated_bytes += row["bytes"]
            if status == MigrationStatus.NEEDS_TRANSFER:
                summary.needs_transfer += count
            else:
                summary.unverified += count
        return summary


def reset_database(db_path: Path) -> bool:
    """Delete the state database file. Returns whether a file was removed."""
    if not db_path.exists():
        return False
    db_path.unlink()
    logger.info("Deleted state database %s", db_path)
    return True
