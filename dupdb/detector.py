#!/usr/bin/env python3
"""Duplicate detector facade over the persistent bucket index, with NDJSON logging."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from . import compare, csv_io
from .archive import ArchiveInspector, FormatCache
from .buckets import BucketManager
from .config import Settings
from .errors import DupdbError
from .index import MODE_READ, MODE_WRITE, PersistentIndex
from .logs import setup_logger
from .models import (
    Bucket,
    CleanReport,
    ImportReport,
    IndexStats,
    Match,
    ScanContext,
    ScanReport,
    SearchHit,
)
from .walker import Walker

MODULE_VERSION = "1.0.0"

Names = Sequence[Union[str, Bucket]]


class DuplicateDetector:
    """Find duplicate files against a persistent index of bucket checksums."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        version: str = MODULE_VERSION,
        logger: Optional[logging.Logger] = None,
        log_to_files: bool = True,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.env = self.settings.environment
        self.version = version
        self.component = "library"
        self.format_cache = FormatCache()
        self.logger = logger or setup_logger(self.settings.log_dir, to_files=log_to_files)

    @property
    def index_path(self) -> Path:
        return self.settings.index_path

    def _build_log_context(
        self,
        scan_id: str,
        operation: str,
        buckets: Sequence[str] = (),
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scan_id": scan_id,
            "component": self.component,
            "version": self.version,
            "env": self.env,
            "operation": operation,
            "index": str(self.index_path),
            "buckets": [str(bucket) for bucket in buckets],
            "chunk_size": self.settings.chunk_size,
        }
        if extra:
            payload.update(extra)
        return payload

    def _log_event(
        self,
        event: str,
        level: int,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> None:
        payload: Dict[str, Any] = {"event": event, "message": message}
        if context:
            payload.update(context)
        else:
            payload.setdefault("component", self.component)
            payload.setdefault("version", self.version)
            payload.setdefault("env", self.env)
            payload.setdefault("index", str(self.index_path))
        payload.update(fields)
        self.logger.log(level, message, extra={"log_payload": payload})

    @staticmethod
    def _duration_ms(start_time: float) -> int:
        return max(0, int((time.perf_counter() - start_time) * 1000))

    @contextmanager
    def _index(self, mode: str = MODE_WRITE) -> Iterator[PersistentIndex]:
        index = PersistentIndex.open(
            self.index_path,
            mode,
            lock_timeout=self.settings.lock_timeout,
            logger=self.logger,
        )
        try:
            yield index
        finally:
            index.close()

    def _context(self, **fields: Any) -> ScanContext:
        return ScanContext(test_mode=self.env == "test", **fields)

    def _walker(self, index: PersistentIndex) -> Walker:
        inspector = ArchiveInspector(
            chunk_size=self.settings.chunk_size, cache=self.format_cache, logger=self.logger
        )
        return Walker(index, inspector=inspector, chunk_size=self.settings.chunk_size, logger=self.logger)

    def _failed(self, context: Dict[str, Any], start: float, exc: DupdbError) -> None:
        self._log_event(
            "operation_failed",
            logging.ERROR,
            "Operation failed",
            context,
            error_kind=exc.kind,
            exception_type=exc.__class__.__name__,
            exception_msg=str(exc),
            duration_ms=self._duration_ms(start),
        )

    def scan_bucket(
        self, bucket: Union[str, Bucket], *, rescan: bool = False, debug: bool = False, quiet: bool = False
    ) -> ScanReport:
        """Hash every new file under ``bucket`` into the index."""
        name = Bucket.canonical(bucket)
        ctx = self._context(buckets=[name], rescan=rescan, debug=debug, quiet=quiet)
        context = self._build_log_context(ctx.scan_id, "scan_bucket", ctx.buckets, {"rescan": rescan})
        self._log_event("scan_started", logging.INFO, "Scan started", context)
        try:
            with self._index() as index:
                report = self._walker(index).walk_bucket(name, ctx, context)
        except DupdbError as exc:
            self._failed(context, ctx.started, exc)
            raise
        self._log_event(
            "scan_finished",
            logging.INFO,
            "Scan finished",
            context,
            files_processed=report.hashed,
            files_skipped=report.skipped,
            errors=len(report.errors),
            duration_ms=ctx.duration_ms(),
        )
        return report

    def scan_buckets(self, buckets: Names = (), *, rescan: bool = False) -> Dict[Bucket, ScanReport]:
        """Walk the named buckets, or every bucket in the index when none are named."""
        ctx = self._context(rescan=rescan)
        context = self._build_log_context(ctx.scan_id, "scan_buckets", [str(b) for b in buckets], {"rescan": rescan})
        self._log_event("scan_started", logging.INFO, "Scan started", context)
        try:
            with self._index() as index:
                ctx.buckets = BucketManager(index, logger=self.logger).resolve(buckets)
                reports = self._walker(index).walk_buckets(ctx.buckets, ctx, context)
        except DupdbError as exc:
            self._failed(context, ctx.started, exc)
            raise
        self._log_event(
            "scan_finished",
            logging.INFO,
            "Scan finished",
            context,
            buckets_scanned=len(reports),
            files_processed=ctx.files,
            duration_ms=ctx.duration_ms(),
        )
        return reports

    def scan_archives(self, bucket: Union[str, Bucket], *, rescan: bool = False) -> ScanReport:
        """Record the members of every archive under ``bucket``."""
        name = Bucket.canonical(bucket)
        ctx = self._context(buckets=[name], rescan=rescan)
        context = self._build_log_context(ctx.scan_id, "scan_archives", ctx.buckets, {"rescan": rescan})
        self._log_event("scan_started", logging.INFO, "Scan started", context)
        try:
            with self._index() as index:
                report = self._walker(index).walk_archives(name, ctx, context)
        except DupdbError as exc:
            self._failed(context, ctx.started, exc)
            raise
        self._log_event(
            "scan_finished",
            logging.INFO,
            "Scan finished",
            context,
            archives=report.archives,
            members=report.members,
            errors=len(report.errors),
            duration_ms=ctx.duration_ms(),
        )
        return report

    def list_bucket(self, bucket: Union[str, Bucket]) -> List[Tuple[str, str]]:
        """Return ``(path, hex digest)`` pairs of a bucket sorted by path."""
        with self._index(MODE_READ) as index:
            entries = BucketManager(index, logger=self.logger).list_entries(bucket)
        return [(path, digest.hex()) for path, digest in sorted(entries.items())]

    def find_duplicates(
        self,
        sources: Sequence[Union[str, Path]],
        buckets: Names = (),
        *,
        update: bool = True,
        rescan: bool = False,
    ) -> List[Match]:
        """Match every source file against the digests stored for ``buckets``.

        With ``update`` the buckets are walked first so new files are
        indexed; otherwise only the stored digests are consulted.
        """
        ctx = self._context(rescan=rescan)
        ctx.set_sources(compare.expand_sources(sources))
        context = self._build_log_context(
            ctx.scan_id,
            "find_duplicates",
            [str(b) for b in buckets],
            {"sources": [str(source) for source in sources], "update": update},
        )
        self._log_event("dup_compare_started", logging.INFO, "Duplicate comparison started", context)
        try:
            with self._index(MODE_WRITE if update else MODE_READ) as index:
                manager = BucketManager(index, logger=self.logger)
                ctx.buckets = manager.resolve(buckets)
                if update:
                    self._walker(index).walk_buckets(ctx.buckets, ctx, context)
                else:
                    with index.transaction(read_only=True) as tx:
                        for bucket in ctx.buckets:
                            for path, digest in tx.items(bucket):
                                if not ctx.is_source(path):
                                    ctx.checksums.add(digest, path)
            comparator = compare.Comparator(chunk_size=self.settings.chunk_size, logger=self.logger)
            matches = comparator.compare(ctx.sources, ctx.checksums, context)
        except DupdbError as exc:
            self._failed(context, ctx.started, exc)
            raise
        self._log_event(
            "dup_compare_finished",
            logging.INFO,
            "Duplicate comparison finished",
            context,
            files_checked=len(ctx.sources),
            checksums=len(ctx.checksums),
            matches=len(matches),
            duration_ms=ctx.duration_ms(),
        )
        return matches

    def count_sources(self, sources: Sequence[Union[str, Path]], buckets: Names = ()) -> Tuple[int, int]:
        """Return the number of source files and of indexed items they are checked against."""
        files = compare.expand_sources(sources)
        with self._index(MODE_READ) as index:
            manager = BucketManager(index, logger=self.logger)
            items = manager.total(manager.resolve(buckets))
        return len(files), items

    def search(
        self,
        term: str,
        buckets: Names = (),
        *,
        exact: bool = False,
        filename_only: bool = False,
    ) -> List[SearchHit]:
        start = time.perf_counter()
        with self._index(MODE_READ) as index:
            hits = compare.search(index, term, buckets, exact=exact, filename_only=filename_only)
        self._log_event(
            "search_finished",
            logging.INFO,
            "Search finished",
            term=term,
            exact=exact,
            filename_only=filename_only,
            results=len(hits),
            duration_ms=self._duration_ms(start),
        )
        return hits

    def add_bucket(self, name: Union[str, Bucket]) -> Bucket:
        with self._index() as index:
            return BucketManager(index, logger=self.logger).add(name)

    def remove_bucket(self, name: Union[str, Bucket]) -> Bucket:
        with self._index() as index:
            return BucketManager(index, logger=self.logger).remove(name)

    def rename_bucket(self, old: Union[str, Bucket], new: Union[str, Bucket]) -> Bucket:
        with self._index() as index:
            return BucketManager(index, logger=self.logger).rename(old, new)

    def clean(self, *buckets: Union[str, Bucket]) -> CleanReport:
        with self._index() as index:
            return BucketManager(index, logger=self.logger).clean(*buckets)

    def stats(self) -> IndexStats:
        with self._index(MODE_READ) as index:
            return BucketManager(index, logger=self.logger).stats()

    def backup(self, dest_dir: Optional[Union[str, Path]] = None) -> Tuple[Path, int]:
        with self._index(MODE_READ) as index:
            return index.backup(dest_dir or self.settings.backup_dir)

    def compact(self) -> Tuple[int, int]:
        with self._index() as index:
            return index.compact()

    def export_bucket(
        self, bucket: Union[str, Bucket], dest_dir: Optional[Union[str, Path]] = None
    ) -> Tuple[Path, int]:
        with self._index(MODE_READ) as index:
            return csv_io.export_bucket(
                index, bucket, dest_dir or self.settings.backup_dir, logger=self.logger
            )

    def import_bucket(
        self, source: Union[str, Path], bucket: Optional[Union[str, Bucket]] = None
    ) -> ImportReport:
        with self._index() as index:
            return csv_io.import_csv(index, source, bucket=bucket, logger=self.logger)
