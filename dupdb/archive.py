"""Archive detection and streaming member hashing."""

from __future__ import annotations

import bz2
import gzip
import logging
import lzma
import os
import posixpath
import re
import tarfile
import threading
import zipfile
import zlib
from contextlib import contextmanager
from typing import BinaryIO, Dict, Iterable, Iterator, Optional, Set, Tuple

from .checksum import digest_blocks
from .config import DEFAULT_CHUNK_SIZE
from .errors import DupdbError, PathTraversal, UnsupportedArchive
from .index import PersistentIndex
from .logs import LOGGER_NAME, log_event
from .models import ArchiveReport, Bucket, ItemError, ScanContext

TAR = "tar"
TAR_GZ = "tar.gz"
TAR_BZ2 = "tar.bz2"
TAR_XZ = "tar.xz"
ZIP = "zip"
SEVEN_ZIP = "7z"
RAR = "rar"
GZIP = "gz"
BZIP2 = "bz2"
XZ = "xz"
ZSTD = "zstd"
LZ4 = "lz4"
LZIP = "lzip"
CAB = "cab"
AR = "ar"
COMPRESS = "compress"

# Longest suffix first so that ".tar.gz" wins over ".gz".
EXTENSIONS: Tuple[Tuple[str, str], ...] = (
    (".tar.bz2", TAR_BZ2),
    (".tar.zst", ZSTD),
    (".tar.gz", TAR_GZ),
    (".tar.xz", TAR_XZ),
    (".tar.lz", LZIP),
    (".tbz2", TAR_BZ2),
    (".tar", TAR),
    (".tgz", TAR_GZ),
    (".txz", TAR_XZ),
    (".zip", ZIP),
    (".bz2", BZIP2),
    (".cab", CAB),
    (".lz4", LZ4),
    (".rar", RAR),
    (".zst", ZSTD),
    (".7z", SEVEN_ZIP),
    (".gz", GZIP),
    (".lz", LZIP),
    (".xz", XZ),
    (".z", COMPRESS),
)

SIGNATURES: Tuple[Tuple[int, bytes, str], ...] = (
    (0, b"7z\xbc\xaf\x27\x1c", SEVEN_ZIP),
    (0, b"Rar!\x1a\x07", RAR),
    (0, b"\xfd7zXZ\x00", XZ),
    (0, b"PK\x03\x04", ZIP),
    (0, b"PK\x05\x06", ZIP),
    (0, b"\x28\xb5\x2f\xfd", ZSTD),
    (0, b"\x04\x22\x4d\x18", LZ4),
    (0, b"!<arch>", AR),
    (0, b"MSCF", CAB),
    (0, b"LZIP", LZIP),
    (0, b"BZh", BZIP2),
    (0, b"\x1f\x8b", GZIP),
    (0, b"\x1f\x9d", COMPRESS),
    (257, b"ustar", TAR),
)
SIGNATURE_BYTES = 262

UNSUPPORTED_FORMATS = frozenset({ZSTD, LZ4, LZIP, CAB, AR, COMPRESS})
TAR_MODES = {TAR: "r:", TAR_GZ: "r:gz", TAR_BZ2: "r:bz2", TAR_XZ: "r:xz"}
COMPRESSORS = {GZIP: gzip.open, BZIP2: bz2.open, XZ: lzma.open}
COMPRESSOR_SUFFIXES = {GZIP: ".gz", BZIP2: ".bz2", XZ: ".xz"}

_DRIVE = re.compile(r"^[A-Za-z]:")

READER_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    OSError,
    NotImplementedError,
    RuntimeError,
    ValueError,
)

MemberBlocks = Tuple[str, Iterable[bytes]]


class ReadWriteLock:
    """Shared lock for readers, exclusive lock for writers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class FormatCache:
    """Detected formats keyed by ``(path, size, mtime_ns)``."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._formats: Dict[Tuple[str, int, int], Optional[str]] = {}

    def get(self, key: Tuple[str, int, int]) -> Tuple[bool, Optional[str]]:
        with self._lock.read():
            if key in self._formats:
                return True, self._formats[key]
            return False, None

    def put(self, key: Tuple[str, int, int], fmt: Optional[str]) -> None:
        with self._lock.write():
            self._formats[key] = fmt

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._formats)


def format_from_name(name: str) -> Optional[str]:
    lowered = name.lower()
    for suffix, fmt in EXTENSIONS:
        if lowered.endswith(suffix) and len(lowered) > len(suffix):
            return fmt
    return None


def format_from_signature(head: bytes) -> Optional[str]:
    for offset, magic, fmt in SIGNATURES:
        if head[offset:offset + len(magic)] == magic:
            return fmt
    return None


def safe_member_path(archive: str, member: str) -> str:
    """Return the index key of ``member`` inside ``archive``.

    Raises :class:`PathTraversal` for absolute names and for names that
    normalize to a location outside of the archive.
    """
    normalized = member.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE.match(normalized):
        raise PathTraversal(f"absolute member name {member!r}", path=archive)
    relative = posixpath.normpath(normalized)
    if relative in {"", "."}:
        raise PathTraversal(f"empty member name {member!r}", path=archive)
    if relative == ".." or relative.startswith("../"):
        raise PathTraversal(f"member {member!r} escapes the archive", path=archive)
    return os.path.join(archive, *relative.split("/"))


def _chunks(stream: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    while chunk := stream.read(chunk_size):
        yield chunk


def _guarded(blocks: Iterable[bytes], error: type, path: str) -> Iterator[bytes]:
    try:
        yield from blocks
    except error as exc:
        raise UnsupportedArchive(f"cannot read archive ({exc})", path=path) from exc


class ArchiveInspector:
    """Reads archives member by member without extracting to disk."""

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        cache: Optional[FormatCache] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.cache = cache if cache is not None else FormatCache()
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def _log(self, event: str, level: int, message: str, context=None, **fields) -> None:
        log_event(self.logger, event, level, message, context, component="archive", **fields)

    def detect(self, path: str) -> Optional[str]:
        """Return the archive format of ``path`` or ``None`` for ordinary files."""
        info = os.stat(path)
        key = (path, info.st_size, info.st_mtime_ns)
        found, fmt = self.cache.get(key)
        if found:
            return fmt
        fmt = format_from_name(os.path.basename(path))
        if fmt is None and info.st_size:
            with open(path, "rb") as handle:
                fmt = format_from_signature(handle.read(SIGNATURE_BYTES))
        self.cache.put(key, fmt)
        return fmt

    def is_archive(self, path: str) -> bool:
        return self.detect(path) is not None

    def iter_members(self, path: str, fmt: Optional[str] = None) -> Iterator[MemberBlocks]:
        """Yield ``(member_name, blocks)`` for every regular file in the archive.

        The blocks of one member must be consumed before advancing to the
        next. Reader failures surface as :class:`UnsupportedArchive`.
        """
        fmt = fmt or self.detect(path)
        if fmt is None:
            raise UnsupportedArchive("not an archive", path=path)
        if fmt in UNSUPPORTED_FORMATS:
            raise UnsupportedArchive(f"{fmt} archives cannot be read", path=path)
        try:
            if fmt in TAR_MODES:
                yield from self._tar_members(path, TAR_MODES[fmt])
            elif fmt == ZIP:
                yield from self._zip_members(path)
            elif fmt in COMPRESSORS:
                yield from self._compressed_member(path, fmt)
            else:
                yield from self._libarchive_members(path)
        except DupdbError:
            raise
        except READER_ERRORS as exc:
            raise UnsupportedArchive(f"cannot read {fmt} archive ({exc})", path=path) from exc

    def _tar_members(self, path: str, mode: str) -> Iterator[MemberBlocks]:
        with tarfile.open(path, mode) as archive:
            for member in archive:
                if not member.isfile():
                    continue
                handle = archive.extractfile(member)
                if handle is None:
                    continue
                with handle:
                    yield member.name, _chunks(handle, self.chunk_size)

    def _zip_members(self, path: str) -> Iterator[MemberBlocks]:
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                with archive.open(info) as handle:
                    yield info.filename, _chunks(handle, self.chunk_size)

    def _compressed_member(self, path: str, fmt: str) -> Iterator[MemberBlocks]:
        name = os.path.basename(path)
        suffix = COMPRESSOR_SUFFIXES[fmt]
        if name.lower().endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
        with COMPRESSORS[fmt](path, "rb") as handle:
            yield name, _chunks(handle, self.chunk_size)

    def _libarchive_members(self, path: str) -> Iterator[MemberBlocks]:
        try:
            import libarchive
        except (ImportError, OSError) as exc:
            raise UnsupportedArchive(f"libarchive is unavailable ({exc})", path=path) from exc
        try:
            with libarchive.file_reader(path) as archive:
                for entry in archive:
                    if entry.isdir or not entry.isfile:
                        continue
                    yield entry.pathname, _guarded(entry.get_blocks(), libarchive.ArchiveError, path)
        except libarchive.ArchiveError as exc:
            raise UnsupportedArchive(f"cannot read archive ({exc})", path=path) from exc

    def _visit(
        self,
        path: str,
        report: ArchiveReport,
        *,
        known: Optional[Set[str]] = None,
        rescan: bool = False,
    ) -> Iterator[Tuple[str, bytes]]:
        for member, blocks in self.iter_members(path, report.format):
            try:
                key = safe_member_path(path, member)
            except PathTraversal as exc:
                report.skipped += 1
                report.errors.append(ItemError(path=path, kind=exc.kind, message=str(exc)))
                self._log(
                    "archive_member_rejected",
                    logging.WARNING,
                    "Archive member rejected",
                    archive=path,
                    member=member,
                    exception_msg=str(exc),
                )
                continue
            if known is not None and key in known and not rescan:
                report.skipped += 1
                continue
            try:
                digest = digest_blocks(blocks)
            except READER_ERRORS as exc:
                raise UnsupportedArchive(f"cannot read member {member!r} ({exc})", path=path) from exc
            report.members += 1
            yield key, digest

    def inspect(self, path: str) -> ArchiveReport:
        """Hash every member of ``path`` without touching the index."""
        report = ArchiveReport(path=path, format=self.detect(path))
        if report.format is None:
            return report
        try:
            for _ in self._visit(path, report):
                pass
        except UnsupportedArchive as exc:
            report.errors.append(ItemError(path=path, kind=exc.kind, message=str(exc)))
        return report

    def scan_archive(
        self,
        index: PersistentIndex,
        bucket: Bucket,
        path: str,
        ctx: ScanContext,
        *,
        known: Optional[Set[str]] = None,
    ) -> ArchiveReport:
        """Record the members of one archive under ``bucket``.

        Members already present in ``known`` are skipped unless the context
        asks for a rescan. A malformed or unsupported archive is logged and
        reported; members recorded before the failure stay in the index.
        """
        report = ArchiveReport(path=path, format=self.detect(path))
        if report.format is None:
            return report
        try:
            for key, digest in self._visit(path, report, known=known, rescan=ctx.rescan):
                with index.transaction() as tx:
                    tx.put(bucket, key, digest)
                ctx.checksums.add(digest, key)
                if known is not None:
                    known.add(key)
        except UnsupportedArchive as exc:
            report.errors.append(ItemError(path=path, kind=exc.kind, message=str(exc)))
            self._log(
                "archive_unsupported",
                logging.WARNING,
                "Archive skipped",
                {"scan_id": ctx.scan_id},
                archive=path,
                format=report.format,
                exception_msg=str(exc),
            )
        else:
            self._log(
                "archive_scanned",
                logging.DEBUG,
                "Archive scanned",
                {"scan_id": ctx.scan_id},
                archive=path,
                format=report.format,
                members=report.members,
                skipped=report.skipped,
            )
        return report
