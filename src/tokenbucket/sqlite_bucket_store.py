# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.sqlite_bucket_store",
#   "purpose": "Cross-process bucket store backed by a SQLite key/value table",
#   "sections": [
#     {
#       "id": "sqlite-file-lock",
#       "name": "sqlite_file_lock",
#       "anchor": "function-sqlite-file-lock",
#       "kind": "function"
#     },
#     {
#       "id": "sqlitebucketstore",
#       "name": "SQLiteBucketStore",
#       "anchor": "class-sqlitebucketstore",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Cross-process bucket store backed by a SQLite key/value table.

Key Design:
- One ``bucket_state`` table of ``(key, value, updated_at)`` rows
- Uses PRAGMA journal_mode=WAL for concurrent access safety
- Uses a file lock beside the database for cross-process write serialization
- A batch of keys is written in one transaction, so both scalars of a bucket
  change together

Typical Usage:
    from pathlib import Path
    from tokenbucket.sqlite_bucket_store import SQLiteBucketStore

    store = SQLiteBucketStore(Path("tmp/buckets.sqlite"))
    bucket = TokenBucket(size=10, persistence=BucketPersistence("api", store))
    bucket.save()
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ContextManager, Iterator, List

from filelock import FileLock

from tokenbucket.persistence import StoredValue

LOGGER = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────────
# Database Schema (DDL)
# ────────────────────────────────────────────────────────────────────────────────

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA busy_timeout=4000;
CREATE TABLE IF NOT EXISTS bucket_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,          -- decimal string, "inf" allowed
    updated_at REAL NOT NULL      -- wall-clock epoch seconds
);
"""


@contextlib.contextmanager
def sqlite_file_lock(db_path: Path, *, timeout: float = 10.0) -> Iterator[None]:
    """Hold ``<db_path>.lock`` for the duration of a write."""
    lock = FileLock(str(db_path) + ".lock", timeout=timeout)
    with lock:
        yield


# ────────────────────────────────────────────────────────────────────────────────
# SQLiteBucketStore
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class SQLiteBucketStore:
    """
    Bucket store backed by SQLite.

    Parameters
    ----------
    db_path : Path
        Path to SQLite database file. Directories are created if missing.
    lock_ctx : Callable[[Path], ContextManager]
        Context manager for file-level locking around writes.
    now_wall : Callable[[], float]
        Function returning current wall-clock time, stamped on each row.
    """

    db_path: Path
    lock_ctx: Callable[[Path], ContextManager] = sqlite_file_lock  # type: ignore[assignment]
    now_wall: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        """Initialize database connection and create schema if needed."""
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit; explicit BEGIN for batched writes
        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,
            check_same_thread=False,
        )
        cursor = self._conn.cursor()
        for stmt in _DDL.strip().split(";\n"):
            if stmt.strip():
                cursor.execute(stmt)
        LOGGER.debug("SQLite bucket store opened", extra={"db_path": str(self.db_path)})

    # ── BucketStore API (Protocol) ─────────────────────────────────────────

    def get_many(self, keys: Sequence[str]) -> List[StoredValue]:
        """Return the stored value for each key, ``None`` where absent."""
        keys = list(keys)
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        rows = self._conn.execute(
            f"SELECT key, value FROM bucket_state WHERE key IN ({placeholders})",
            keys,
        ).fetchall()
        found = {key: value for key, value in rows}
        return [found.get(key) for key in keys]

    def set_many(self, mapping: Mapping[str, str]) -> None:
        """Upsert every pair in one transaction."""
        now_w = self.now_wall()
        rows = [(key, str(value), now_w) for key, value in mapping.items()]
        with self.lock_ctx(self.db_path):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.executemany(
                    """
                    INSERT INTO bucket_state(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        updated_at=excluded.updated_at
                    """,
                    rows,
                )
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # ── Diagnostics ───────────────────────────────────────────────────────────

    def get_all(self) -> dict[str, str]:
        """Every stored key/value pair (for debugging)."""
        rows = self._conn.execute("SELECT key, value FROM bucket_state").fetchall()
        return {key: value for key, value in rows}


__all__ = ["SQLiteBucketStore", "sqlite_file_lock"]
