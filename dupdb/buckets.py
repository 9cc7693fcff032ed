"""Bucket lifecycle: canonical names, creation, renames, removal and stale cleanup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import (
    BucketExists,
    BucketNotFound,
    DupdbError,
    IndexEmpty,
    PathIsFile,
    PathNotFound,
    SameName,
)
from .index import PersistentIndex
from .logs import LOGGER_NAME, log_event
from .models import Bucket, BucketStats, CleanReport, IndexStats

PROGRESS_STEP = 500


def canonicalize(name: Union[str, "os.PathLike[str]"]) -> Bucket:
    return Bucket.canonical(name)


def stale(path: str) -> bool:
    """Return True when the file recorded at ``path`` no longer exists.

    A key whose parent is a non-empty regular file is an archive member, or a
    bucket that has been shadowed by a file; neither is treated as stale.
    """
    try:
        os.stat(path)
        return False
    except OSError:
        pass
    try:
        parent = os.stat(os.path.dirname(path))
    except OSError:
        return True
    if not os.path.isdir(os.path.dirname(path)) and parent.st_size > 0:
        return False
    return True


class BucketManager:
    """Bucket operations layered over a :class:`PersistentIndex`."""

    def __init__(self, index: PersistentIndex, *, logger: Optional[logging.Logger] = None) -> None:
        self.index = index
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def _log(self, event: str, level: int, message: str, **fields) -> None:
        log_event(self.logger, event, level, message, component="buckets", **fields)

    def canonicalize(self, name: Union[str, "os.PathLike[str]"]) -> Bucket:
        return canonicalize(name)

    def exists(self, name: Union[str, Bucket]) -> bool:
        bucket = canonicalize(name)
        with self.index.transaction(read_only=True) as tx:
            return tx.has_bucket(bucket)

    def all(self) -> List[Bucket]:
        return self.index.list_buckets()

    def resolve(self, names: Sequence[Union[str, Bucket]] = ()) -> List[Bucket]:
        """Canonicalize ``names``, or return every bucket when none are given."""
        if names:
            resolved: List[Bucket] = []
            for name in names:
                bucket = canonicalize(name)
                if bucket not in resolved:
                    resolved.append(bucket)
            return resolved
        buckets = self.all()
        if not buckets:
            raise IndexEmpty()
        return buckets

    def add(self, name: Union[str, Bucket]) -> Bucket:
        """Register a directory as an empty bucket."""
        bucket = canonicalize(name)
        root = bucket.path
        if not root.exists():
            raise PathNotFound(path=str(bucket))
        if not root.is_dir():
            raise PathIsFile(path=str(bucket))
        with self.index.transaction() as tx:
            created = tx.create_bucket(bucket)
        if created:
            self._log("bucket_created", logging.INFO, "Bucket created", bucket=str(bucket))
        return bucket

    def count(self, name: Union[str, Bucket]) -> int:
        bucket = canonicalize(name)
        with self.index.transaction(read_only=True) as tx:
            return tx.count(bucket)

    def total(self, names: Iterable[Union[str, Bucket]]) -> int:
        buckets = [canonicalize(name) for name in names]
        with self.index.transaction(read_only=True) as tx:
            return sum(tx.count(bucket) for bucket in buckets)

    def list_entries(self, name: Union[str, Bucket]) -> Dict[str, bytes]:
        bucket = canonicalize(name)
        with self.index.transaction(read_only=True) as tx:
            return dict(tx.items(bucket))

    def rename(self, old: Union[str, Bucket], new: Union[str, Bucket]) -> Bucket:
        """Move every entry of ``old`` into a new bucket ``new`` atomically."""
        source = canonicalize(old)
        target = canonicalize(new)
        if source == target:
            raise SameName(path=str(source))
        with self.index.transaction() as tx:
            if not tx.has_bucket(source):
                raise BucketNotFound(path=str(source))
            if tx.has_bucket(target):
                raise BucketExists(path=str(target))
            tx.create_bucket(target, exist_ok=False)
            for path, digest in list(tx.items(source)):
                tx.put(target, path, digest)
            tx.delete_bucket(source)
        self._log(
            "bucket_renamed",
            logging.INFO,
            "Bucket renamed",
            bucket=str(source),
            target=str(target),
        )
        return target

    def remove(self, name: Union[str, Bucket]) -> Bucket:
        bucket = canonicalize(name)
        with self.index.transaction() as tx:
            tx.delete_bucket(bucket)
        self._log("bucket_removed", logging.INFO, "Bucket removed", bucket=str(bucket))
        return bucket

    def _check_root(self, bucket: Bucket) -> None:
        try:
            os.stat(bucket)
        except FileNotFoundError as exc:
            raise PathNotFound("bucket directory does not exist", path=str(bucket)) from exc
        if not Path(bucket).is_dir():
            raise PathIsFile("bucket points to a file, not a directory", path=str(bucket))

    def clean(self, *names: Union[str, Bucket]) -> CleanReport:
        """Delete entries whose files no longer exist on the file system.

        Buckets that cannot be cleaned are recorded in the report and skipped.
        """
        report = CleanReport()
        for bucket in self.resolve(names):
            try:
                self._check_root(bucket)
                removed, examined = self._clean_bucket(bucket)
            except (DupdbError, OSError) as exc:
                report.errors += 1
                report.failed_buckets.append((str(bucket), str(exc)))
                with self.index.transaction(read_only=True) as tx:
                    if tx.has_bucket(bucket):
                        report.items += tx.count(bucket)
                self._log(
                    "bucket_clean_failed",
                    logging.WARNING,
                    "Bucket could not be cleaned",
                    bucket=str(bucket),
                    exception_type=exc.__class__.__name__,
                    exception_msg=str(exc),
                )
                continue
            report.items += examined
            report.removed += removed
        self._log(
            "index_cleaned",
            logging.INFO,
            "Stale entries removed",
            items=report.items,
            removed=report.removed,
            errors=report.errors,
        )
        return report

    def _clean_bucket(self, bucket: Bucket) -> Tuple[int, int]:
        examined = 0
        missing: List[str] = []
        with self.index.transaction(read_only=True) as tx:
            for path in tx.keys(bucket):
                examined += 1
                if stale(path):
                    missing.append(path)
                if examined % PROGRESS_STEP == 0:
                    self._log(
                        "clean_progress",
                        logging.DEBUG,
                        "Clean progress",
                        bucket=str(bucket),
                        items=examined,
                    )
        if missing:
            with self.index.transaction() as tx:
                for path in missing:
                    tx.delete(bucket, path)
        return len(missing), examined

    def stats(self) -> IndexStats:
        path = self.index.path
        try:
            info = path.stat()
            size, modified = info.st_size, info.st_mtime
        except FileNotFoundError:
            size, modified = 0, None
        result = IndexStats(path=path, size=size, modified=modified, read_only=self.index.read_only)
        with self.index.transaction(read_only=True) as tx:
            for bucket in tx.buckets():
                result.buckets.append(
                    BucketStats(name=str(bucket), items=tx.count(bucket), size_bytes=tx.bucket_size(bucket))
                )
        return result
