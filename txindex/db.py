"""Ordered, prefix-scannable key-value store backed by SQLite."""

from __future__ import annotations

import enum
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .errors import IndexerError

DB_VERSION = 1

_DB_FILE = "index.sqlite"
_BATCH = 256

log = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class DBRow:
    """A single key/value pair."""

    key: bytes
    value: bytes = b""


class DBFlush(enum.Enum):
    """Whether a batch write must reach stable storage before returning."""

    DISABLE = "disable"
    ENABLE = "enable"


class DB:
    """A sorted key-value store with forward and reverse prefix scans."""

    def __init__(self, conn: sqlite3.Connection, path: Path, auto_compaction: bool) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self.path = path
        self._auto_compaction = auto_compaction

    @classmethod
    def open(cls, path, light_mode=False, initial_sync_compaction=False) -> "DB":
        """Open (creating if missing) the store in directory ``path``."""
        path = Path(path)
        log.debug("opening DB at %s", path)
        path.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path / _DB_FILE), isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA auto_vacuum = INCREMENTAL")
        conn.execute("PRAGMA journal_mode = WAL").fetchall()
        conn.execute(
            "CREATE TABLE IF NOT EXISTS rows "
            "(key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
        )
        db = cls(conn, path, initial_sync_compaction)
        try:
            db._verify_compatibility(light_mode)
        except BaseException:
            db.close()
            raise
        return db

    def __enter__(self) -> "DB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def auto_compaction(self) -> bool:
        return self._auto_compaction

    def full_compaction(self) -> None:
        log.debug("starting full compaction on %s", self.path)
        with self._lock:
            self._conn.execute("VACUUM")
        log.debug("finished full compaction on %s", self.path)

    def enable_auto_compaction(self) -> None:
        self._auto_compaction = True

    def _scan(self, prefix: bytes, start: bytes, reverse: bool) -> Iterator[DBRow]:
        order = "DESC" if reverse else "ASC"
        first_op, next_op = ("<=", "<") if reverse else (">=", ">")
        op, bound = first_op, start
        while True:
            with self._lock:
                batch = self._conn.execute(
                    f"SELECT key, value FROM rows WHERE key {op} ? "
                    f"ORDER BY key {order} LIMIT ?",
                    (bound, _BATCH),
                ).fetchall()
            for key, value in batch:
                key = bytes(key)
                if not key.startswith(prefix):
                    return
                yield DBRow(key, bytes(value))
            if len(batch) < _BATCH:
                return
            op, bound = next_op, batch[-1][0]

    def iter_scan(self, prefix: bytes) -> Iterator[DBRow]:
        """Rows whose key starts with ``prefix``, in key order."""
        return self._scan(bytes(prefix), bytes(prefix), reverse=False)

    def iter_scan_from(self, prefix: bytes, start_at: bytes) -> Iterator[DBRow]:
        """Rows from ``start_at`` onwards while the key starts with ``prefix``."""
        return self._scan(bytes(prefix), bytes(start_at), reverse=False)

    def iter_scan_reverse(self, prefix: bytes, prefix_max: bytes) -> Iterator[DBRow]:
        """Rows at or before ``prefix_max``, backwards, while the key starts with ``prefix``."""
        return self._scan(bytes(prefix), bytes(prefix_max), reverse=True)

    def write(self, rows: Iterable[DBRow], flush: DBFlush) -> None:
        """Write a batch of rows atomically, sorted by key."""
        rows = sorted(rows, key=lambda row: row.key)
        sync = flush is DBFlush.ENABLE
        log.debug("writing %d rows to %s, flush=%s", len(rows), self.path, flush)
        with self._lock:
            self._conn.execute(f"PRAGMA synchronous = {'FULL' if sync else 'OFF'}")
            try:
                self._conn.execute("BEGIN")
                try:
                    self._conn.executemany(
                        "INSERT OR REPLACE INTO rows (key, value) VALUES (?, ?)",
                        [(bytes(row.key), bytes(row.value)) for row in rows],
                    )
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            finally:
                self._conn.execute("PRAGMA synchronous = NORMAL")
            if self._auto_compaction:
                self._conn.execute("PRAGMA incremental_vacuum").fetchall()

    def flush(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA wal_checkpoint(FULL)").fetchall()

    def put(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO rows (key, value) VALUES (?, ?)",
                (bytes(key), bytes(value)),
            )

    def put_sync(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._conn.execute("PRAGMA synchronous = FULL")
            try:
                self.put(key, value)
            finally:
                self._conn.execute("PRAGMA synchronous = NORMAL")

    def get(self, key: bytes) -> bytes | None:
        with self._lock:
            found = self._conn.execute(
                "SELECT value FROM rows WHERE key = ?", (bytes(key),)
            ).fetchone()
        return None if found is None else bytes(found[0])

    def multi_get(self, keys: Iterable[bytes]) -> list[bytes | None]:
        return [self.get(key) for key in keys]

    def _verify_compatibility(self, light_mode: bool) -> None:
        expected = DB_VERSION.to_bytes(4, "little")
        if light_mode:
            # Appended rather than versioned so non-light databases need no reindex.
            expected += b"\x01"
        found = self.get(b"V")
        if found is None:
            self.put(b"V", expected)
        elif found != expected:
            raise IndexerError("Incompatible database found. Please reindex.")