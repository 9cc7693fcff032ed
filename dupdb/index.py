"""Persistent bucket index stored in a single SQLite database file.

Every bucket is a logical table: rows of ``entries`` partitioned by their
``bucket`` column and registered in ``buckets``. Keys are absolute file paths,
values are raw 32 byte SHA-256 digests. Writers are serialised across
processes with a :mod:`filelock` lock next to the database file, acquired with
a bounded wait so a second writer fails fast with :class:`~dupdb.errors.Locked`.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Tuple, TypeVar, Union

from filelock import FileLock, Timeout

from .config import DEFAULT_LOCK_TIMEOUT, INDEX_FILENAME
from .errors import (
    BucketExists,
    BucketNotFound,
    CorruptIndex,
    InvalidChecksum,
    Locked,
    ReadOnly,
)
from .logs import LOGGER_NAME, log_event
from .models import DIGEST_SIZE, Bucket, IndexStatus

T = TypeVar("T")

PRIVATE_DIR = 0o700
BACKUP_TIME_FORMAT = "%Y%m%d-%H%M%S"
MODE_READ = "ro"
MODE_WRITE = "rw"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS buckets (
    name TEXT PRIMARY KEY
) WITHOUT ROWID;
CREATE TABLE IF NOT EXISTS entries (
    bucket TEXT NOT NULL REFERENCES buckets(name) ON DELETE CASCADE,
    path TEXT NOT NULL,
    digest BLOB NOT NULL CHECK (length(digest) = 32),
    PRIMARY KEY (bucket, path)
) WITHOUT ROWID;
"""


def backup_name(now: Optional[float] = None) -> str:
    stamp = time.strftime(BACKUP_TIME_FORMAT, time.localtime(now))
    stem, ext = os.path.splitext(INDEX_FILENAME)
    return f"{stem}-backup-{stamp}{ext}"


def _create(path: Path) -> None:
    with closing(sqlite3.connect(str(path))) as conn:
        conn.executescript(_SCHEMA)
        conn.commit()


class IndexTransaction:
    """Handle passed to work running inside one index transaction."""

    def __init__(self, conn: sqlite3.Connection, read_only: bool) -> None:
        self._conn = conn
        self.read_only = read_only

    def _writable(self) -> None:
        if self.read_only:
            raise ReadOnly("cannot modify the index in a read transaction")

    def _require(self, bucket: str) -> None:
        if not self.has_bucket(bucket):
            raise BucketNotFound(path=bucket)

    def has_bucket(self, bucket: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM buckets WHERE name = ?", (bucket,)).fetchone()
        return row is not None

    def buckets(self) -> List[Bucket]:
        rows = self._conn.execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [Bucket(row[0]) for row in rows]

    def create_bucket(self, bucket: str, *, exist_ok: bool = True) -> bool:
        self._writable()
        if self.has_bucket(bucket):
            if not exist_ok:
                raise BucketExists(path=bucket)
            return False
        self._conn.execute("INSERT INTO buckets (name) VALUES (?)", (bucket,))
        return True

    def delete_bucket(self, bucket: str) -> None:
        self._writable()
        self._require(bucket)
        self._conn.execute("DELETE FROM entries WHERE bucket = ?", (bucket,))
        self._conn.execute("DELETE FROM buckets WHERE name = ?", (bucket,))

    def get(self, bucket: str, path: str) -> Optional[bytes]:
        row = self._conn.execute(
            "SELECT digest FROM entries WHERE bucket = ? AND path = ?", (bucket, path)
        ).fetchone()
        return bytes(row[0]) if row else None

    def put(self, bucket: str, path: str, digest: bytes) -> None:
        self._writable()
        if len(digest) != DIGEST_SIZE:
            raise InvalidChecksum(f"digest must be {DIGEST_SIZE} bytes, got {len(digest)}")
        self._require(bucket)
        self._conn.execute(
            "INSERT OR REPLACE INTO entries (bucket, path, digest) VALUES (?, ?, ?)",
            (bucket, path, bytes(digest)),
        )

    def delete(self, bucket: str, path: str) -> bool:
        self._writable()
        cursor = self._conn.execute(
            "DELETE FROM entries WHERE bucket = ? AND path = ?", (bucket, path)
        )
        return cursor.rowcount > 0

    def items(self, bucket: str) -> Iterator[Tuple[str, bytes]]:
        self._require(bucket)
        cursor = self._conn.execute(
            "SELECT path, digest FROM entries WHERE bucket = ? ORDER BY path", (bucket,)
        )
        for path, digest in cursor:
            yield path, bytes(digest)

    def keys(self, bucket: str) -> Iterator[str]:
        for path, _ in self.items(bucket):
            yield path

    def count(self, bucket: str) -> int:
        self._require(bucket)
        row = self._conn.execute(
            "SELECT COUNT(*) FROM entries WHERE bucket = ?", (bucket,)
        ).fetchone()
        return int(row[0])

    def bucket_size(self, bucket: str) -> int:
        self._require(bucket)
        row = self._conn.execute(
            "SELECT COALESCE(SUM(LENGTH(CAST(path AS BLOB)) + LENGTH(digest)), 0) "
            "FROM entries WHERE bucket = ?",
            (bucket,),
        ).fetchone()
        return int(row[0])


class PersistentIndex:
    """On-disk index of bucket entries with atomic transactions."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        read_only: bool = False,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path).expanduser()
        self.read_only = read_only
        self.lock_timeout = lock_timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.status: Optional[IndexStatus] = None
        self._lock: Optional[FileLock] = None
        self._conn: Optional[sqlite3.Connection] = None

    @classmethod
    def open(
        cls,
        path: Union[str, Path],
        mode: str = MODE_WRITE,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> "PersistentIndex":
        if mode not in {MODE_READ, MODE_WRITE}:
            raise ValueError("mode must be 'ro' or 'rw'")
        index = cls(path, read_only=mode == MODE_READ, lock_timeout=lock_timeout, logger=logger)
        index._open()
        return index

    def _acquire(self) -> FileLock:
        lock = FileLock(f"{self.path}.lock", timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            log_event(
                self.logger,
                "index_locked",
                logging.ERROR,
                "Index write lock timed out",
                component="index",
                index=str(self.path),
                lock_timeout=self.lock_timeout,
            )
            raise Locked(path=str(self.path)) from exc
        return lock

    def _needs_repair(self) -> bool:
        try:
            return self.path.stat().st_size == 0
        except FileNotFoundError:
            return True

    def _open(self) -> None:
        """Open the database, creating or repairing it under the write lock.

        A read-only open holds the lock only while a missing or zero byte
        file is being recreated.
        """
        self.path.parent.mkdir(mode=PRIVATE_DIR, parents=True, exist_ok=True)
        if not self.read_only:
            self._lock = self._acquire()
        try:
            if self._lock is None and self._needs_repair():
                repair = self._acquire()
                try:
                    self.status = self.verify(self.path, logger=self.logger)
                finally:
                    repair.release()
            else:
                self.status = self.verify(self.path, logger=self.logger)
            self._connect()
        except BaseException:
            self._release()
            raise
        log_event(
            self.logger,
            "index_opened",
            logging.DEBUG,
            "Index opened",
            component="index",
            index=str(self.path),
            read_only=self.read_only,
            size=self.status.size,
        )

    def _connect(self) -> None:
        try:
            if self.read_only:
                uri = f"{self.path.resolve().as_uri()}?mode=ro"
                conn = sqlite3.connect(uri, uri=True, isolation_level=None, timeout=self.lock_timeout)
            else:
                conn = sqlite3.connect(str(self.path), isolation_level=None, timeout=self.lock_timeout)
                conn.executescript(_SCHEMA)
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.DatabaseError as exc:
            raise CorruptIndex(str(exc), path=str(self.path)) from exc
        self._conn = conn

    def _release(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._release()

    def __enter__(self) -> "PersistentIndex":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CorruptIndex("index is not open", path=str(self.path))
        return self._conn

    @contextmanager
    def transaction(self, read_only: bool = False) -> Iterator[IndexTransaction]:
        """Run the enclosed block in one read or write transaction.

        Any exception raised inside the block rolls the transaction back, so
        the database is left exactly as it was before the block started.
        """
        if not read_only and self.read_only:
            raise ReadOnly(path=str(self.path))
        conn = self._connection()
        try:
            conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc) or "busy" in str(exc):
                raise Locked(path=str(self.path)) from exc
            raise
        tx = IndexTransaction(conn, read_only)
        try:
            yield tx
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def with_transaction(self, fn: Callable[[IndexTransaction], T], read_only: bool = False) -> T:
        with self.transaction(read_only) as tx:
            return fn(tx)

    def list_buckets(self) -> List[Bucket]:
        with self.transaction(read_only=True) as tx:
            return tx.buckets()

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def compact(self) -> Tuple[int, int]:
        """Rewrite the database without free pages and swap it into place.

        Returns the file size before and after compaction.
        """
        if self.read_only:
            raise ReadOnly(path=str(self.path))
        conn = self._connection()
        before = self.size()
        tmp = self.path.with_name(f"{self.path.name}.compact-{os.getpid()}")
        if tmp.exists():
            tmp.unlink()
        conn.execute("VACUUM INTO ?", (str(tmp),))
        conn.close()
        self._conn = None
        try:
            os.replace(tmp, self.path)
        finally:
            self._connect()
        after = self.size()
        log_event(
            self.logger,
            "index_compacted",
            logging.INFO,
            "Index compacted",
            component="index",
            index=str(self.path),
            size_before=before,
            size_after=after,
        )
        return before, after

    def backup(self, dest_dir: Union[str, Path]) -> Tuple[Path, int]:
        """Copy the database to a timestamped file inside ``dest_dir``."""
        directory = Path(dest_dir).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / backup_name()
        with closing(sqlite3.connect(str(target))) as dest:
            self._connection().backup(dest)
        written = target.stat().st_size
        log_event(
            self.logger,
            "index_backup",
            logging.INFO,
            "Index backup written",
            component="index",
            index=str(self.path),
            backup=str(target),
            bytes_written=written,
        )
        return target, written

    @staticmethod
    def verify(path: Union[str, Path], *, logger: Optional[logging.Logger] = None) -> IndexStatus:
        """Return the existence and size of the index file, repairing empty files.

        A missing file is created with an empty schema. A zero byte file is
        deleted and recreated rather than opened. A non-empty file that is not
        a valid database raises :class:`CorruptIndex`.
        """
        target = Path(path).expanduser()
        log = logger or logging.getLogger(LOGGER_NAME)
        try:
            size = target.stat().st_size
        except FileNotFoundError:
            target.parent.mkdir(mode=PRIVATE_DIR, parents=True, exist_ok=True)
            _create(target)
            log_event(
                log,
                "index_created",
                logging.INFO,
                "Index created",
                component="index",
                index=str(target),
            )
            return IndexStatus(path=target, exists=False, size=target.stat().st_size, recreated=True)

        if size == 0:
            target.unlink()
            _create(target)
            log_event(
                log,
                "index_recreated",
                logging.WARNING,
                "Zero byte index discarded and recreated",
                component="index",
                index=str(target),
            )
            return IndexStatus(path=target, exists=True, size=target.stat().st_size, recreated=True)

        try:
            with closing(sqlite3.connect(str(target))) as conn:
                (result,) = conn.execute("PRAGMA quick_check").fetchone()
        except sqlite3.DatabaseError as exc:
            raise CorruptIndex(str(exc), path=str(target)) from exc
        if result != "ok":
            raise CorruptIndex(result, path=str(target))
        return IndexStatus(path=target, exists=True, size=size)
