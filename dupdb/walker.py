"""Bucket walks: hash every regular file under a bucket root into the index."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from .archive import ArchiveInspector
from .checksum import digest_file
from .config import DEFAULT_CHUNK_SIZE
from .errors import PathIsFile, PathNotFound, PathUnreadable
from .index import PersistentIndex
from .logs import LOGGER_NAME, log_event
from .models import Bucket, ItemError, ScanContext, ScanReport
from .skip import walk_files

PROGRESS_STEP = 500


class Walker:
    """Walks bucket roots and keeps their index entries current."""

    def __init__(
        self,
        index: PersistentIndex,
        *,
        inspector: Optional[ArchiveInspector] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.index = index
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.inspector = inspector or ArchiveInspector(chunk_size=chunk_size, logger=self.logger)

    def _log(
        self,
        event: str,
        level: int,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> None:
        if context is None:
            fields.setdefault("component", "walker")
        log_event(self.logger, event, level, message, context, **fields)

    @staticmethod
    def check_root(bucket: Bucket) -> None:
        if not os.path.exists(bucket):
            raise PathNotFound("bucket directory does not exist", path=str(bucket))
        if not os.path.isdir(bucket):
            raise PathIsFile("bucket points to a file, not a directory", path=str(bucket))

    def _prepare(self, bucket: Bucket) -> Dict[str, bytes]:
        with self.index.transaction() as tx:
            tx.create_bucket(bucket)
            return dict(tx.items(bucket))

    @staticmethod
    def _files(bucket: Bucket, on_error) -> Iterator[str]:
        try:
            yield from walk_files(bucket, on_error=on_error)
        except OSError as exc:
            raise PathUnreadable(
                f"bucket directory cannot be read ({exc.strerror or exc})", path=str(bucket)
            ) from exc

    def _merge(self, bucket: Bucket, ctx: ScanContext) -> None:
        with self.index.transaction(read_only=True) as tx:
            for path, digest in tx.items(bucket):
                if not ctx.is_source(path):
                    ctx.checksums.add(digest, path)

    def _on_error(self, report: ScanReport, context: Optional[Dict[str, Any]]):
        def record(path: str, exc: OSError) -> None:
            report.errors.append(ItemError(path=path, kind="io", message=str(exc)))
            self._log(
                "file_skipped_permission" if isinstance(exc, PermissionError) else "directory_error",
                logging.WARNING,
                "Entry could not be read",
                context,
                file=path,
                exception_type=exc.__class__.__name__,
            )

        return record

    def walk_bucket(
        self,
        bucket: Union[str, Bucket],
        ctx: ScanContext,
        context: Optional[Dict[str, Any]] = None,
    ) -> ScanReport:
        """Hash the files of one bucket, recording each in its own transaction.

        Files whose path already has a digest are not re-read unless
        ``ctx.rescan`` is set. Every digest stored for the bucket ends up in
        ``ctx.checksums``.
        """
        bucket = Bucket.canonical(bucket)
        self.check_root(bucket)
        stored = self._prepare(bucket)
        report = ScanReport(bucket=bucket)
        debug = ctx.debug or self.logger.isEnabledFor(logging.DEBUG)
        self._log("bucket_walk_started", logging.INFO, "Bucket walk started", context, bucket=str(bucket))

        for path in self._files(bucket, self._on_error(report, context)):
            report.visited += 1
            if ctx.is_source(path):
                report.skipped += 1
                continue
            digest = stored.get(path)
            if digest is not None and not ctx.rescan:
                ctx.checksums.add(digest, path)
                report.skipped += 1
                continue
            try:
                digest = digest_file(path, self.chunk_size)
            except OSError as exc:
                self._on_error(report, context)(path, exc)
                continue
            with self.index.transaction() as tx:
                tx.put(bucket, path, digest)
            ctx.checksums.add(digest, path)
            ctx.files += 1
            report.hashed += 1

            if ctx.show_progress and report.hashed % PROGRESS_STEP == 0:
                self._log(
                    "directory_walk_progress",
                    logging.INFO,
                    "Directory walk progress",
                    context,
                    bucket=str(bucket),
                    files_processed=report.hashed,
                    duration_ms=ctx.duration_ms(),
                )
            if debug:
                self._log(
                    "hash_computed",
                    logging.DEBUG,
                    "Hash computed",
                    context,
                    file=path,
                    hash_prefix=digest.hex()[:12],
                )

        self._merge(bucket, ctx)
        self._log(
            "bucket_walk_finished",
            logging.INFO,
            "Bucket walk finished",
            context,
            bucket=str(bucket),
            files_visited=report.visited,
            files_hashed=report.hashed,
            files_skipped=report.skipped,
            errors=len(report.errors),
            duration_ms=ctx.duration_ms(),
        )
        return report

    def walk_buckets(
        self,
        buckets: Iterable[Union[str, Bucket]],
        ctx: ScanContext,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[Bucket, ScanReport]:
        """Walk several buckets; unknown buckets whose root vanished are skipped."""
        reports: Dict[Bucket, ScanReport] = {}
        for name in buckets:
            bucket = Bucket.canonical(name)
            try:
                reports[bucket] = self.walk_bucket(bucket, ctx, context)
            except PathNotFound:
                with self.index.transaction(read_only=True) as tx:
                    indexed = tx.has_bucket(bucket)
                if indexed:
                    raise
                self._log(
                    "bucket_missing",
                    logging.WARNING,
                    "Bucket directory does not exist",
                    context,
                    bucket=str(bucket),
                )
            except PathUnreadable as exc:
                report = ScanReport(bucket=bucket)
                report.errors.append(ItemError(path=str(bucket), kind=exc.kind, message=str(exc)))
                reports[bucket] = report
                self._log(
                    "bucket_walk_failed",
                    logging.WARNING,
                    "Bucket directory could not be read",
                    context,
                    bucket=str(bucket),
                    exception_msg=str(exc),
                )
        return reports

    def walk_archives(
        self,
        bucket: Union[str, Bucket],
        ctx: ScanContext,
        context: Optional[Dict[str, Any]] = None,
    ) -> ScanReport:
        """Record every archive under the bucket root together with its members."""
        bucket = Bucket.canonical(bucket)
        self.check_root(bucket)
        known = set(self._prepare(bucket))
        report = ScanReport(bucket=bucket)
        on_error = self._on_error(report, context)
        self._log("archive_walk_started", logging.INFO, "Archive walk started", context, bucket=str(bucket))

        for path in self._files(bucket, on_error):
            report.visited += 1
            if ctx.is_source(path):
                report.skipped += 1
                continue
            try:
                fmt = self.inspector.detect(path)
            except OSError as exc:
                on_error(path, exc)
                continue
            if fmt is None:
                continue
            report.archives += 1
            if path not in known or ctx.rescan:
                try:
                    digest = digest_file(path, self.chunk_size)
                except OSError as exc:
                    on_error(path, exc)
                    continue
                with self.index.transaction() as tx:
                    tx.put(bucket, path, digest)
                known.add(path)
                ctx.checksums.add(digest, path)
                report.hashed += 1
            result = self.inspector.scan_archive(self.index, bucket, path, ctx, known=known)
            report.members += result.members
            report.skipped += result.skipped
            report.errors.extend(result.errors)
            ctx.files += result.members

            if ctx.show_progress and report.archives % PROGRESS_STEP == 0:
                self._log(
                    "directory_walk_progress",
                    logging.INFO,
                    "Directory walk progress",
                    context,
                    bucket=str(bucket),
                    archives_processed=report.archives,
                    duration_ms=ctx.duration_ms(),
                )

        self._merge(bucket, ctx)
        self._log(
            "archive_walk_finished",
            logging.INFO,
            "Archive walk finished",
            context,
            bucket=str(bucket),
            archives=report.archives,
            members=report.members,
            members_skipped=report.skipped,
            errors=len(report.errors),
            duration_ms=ctx.duration_ms(),
        )
        return report
