"""Value types shared by the index, walker, archive inspector and comparator."""

from __future__ import annotations

import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .errors import EmptyName

DIGEST_SIZE = 32

# Platforms whose file systems compare names case-insensitively.
CASE_INSENSITIVE_PLATFORMS = ("win32", "cygwin")


def case_insensitive_fs(platform: Optional[str] = None) -> bool:
    return (platform or sys.platform).startswith(CASE_INSENSITIVE_PLATFORMS)


def fold_path(path: str) -> str:
    """Return the form of ``path`` used to compare it with stored keys."""
    return path.lower() if case_insensitive_fs() else path


class Bucket(str):
    """Canonical absolute directory path naming one partition of the index.

    Build instances with :meth:`canonical`; the plain constructor is reserved
    for names that were read back from the index and are canonical already.
    """

    __slots__ = ()

    @classmethod
    def canonical(cls, name: Union[str, "os.PathLike[str]"]) -> "Bucket":
        text = os.fspath(name)
        if not text:
            raise EmptyName()
        return cls(fold_path(os.path.abspath(os.path.expanduser(text))))

    @property
    def path(self) -> Path:
        return Path(str(self))


class ChecksumMap:
    """Digest to representative path map; the first path recorded is kept."""

    def __init__(self) -> None:
        self._items: Dict[bytes, str] = {}

    def add(self, digest: bytes, path: str) -> bool:
        if digest in self._items:
            return False
        self._items[digest] = path
        return True

    def lookup(self, digest: bytes) -> Optional[str]:
        return self._items.get(digest)

    def __contains__(self, digest: object) -> bool:
        return digest in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._items)

    def items(self) -> List[Tuple[bytes, str]]:
        return list(self._items.items())


@dataclass
class ScanContext:
    """Mutable state threaded through one logical operation."""

    sources: List[str] = field(default_factory=list)
    buckets: List[Bucket] = field(default_factory=list)
    checksums: ChecksumMap = field(default_factory=ChecksumMap)
    files: int = 0
    debug: bool = False
    quiet: bool = False
    test_mode: bool = False
    rescan: bool = False
    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: float = field(default_factory=time.perf_counter)
    _source_keys: Set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        self.set_sources(self.sources)

    def set_sources(self, paths: Iterable[str]) -> None:
        self.sources = list(paths)
        self._source_keys = {fold_path(path) for path in self.sources}

    def is_source(self, path: str) -> bool:
        return fold_path(path) in self._source_keys

    @property
    def show_progress(self) -> bool:
        """Progress events are dropped in quiet and test runs."""
        return not (self.quiet or self.test_mode)

    def duration_ms(self) -> int:
        return max(0, int((time.perf_counter() - self.started) * 1000))


@dataclass(frozen=True)
class Match:
    source: str
    match: str


@dataclass(frozen=True)
class SearchHit:
    path: str
    bucket: Bucket


@dataclass
class ItemError:
    path: str
    kind: str
    message: str


@dataclass
class ScanReport:
    bucket: Bucket
    visited: int = 0
    hashed: int = 0
    skipped: int = 0
    archives: int = 0
    members: int = 0
    errors: List[ItemError] = field(default_factory=list)


@dataclass
class ArchiveReport:
    path: str
    format: Optional[str] = None
    members: int = 0
    skipped: int = 0
    errors: List[ItemError] = field(default_factory=list)


@dataclass
class CleanReport:
    items: int = 0
    removed: int = 0
    errors: int = 0
    failed_buckets: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class ImportReport:
    bucket: Bucket
    imported: int = 0
    rejected: List[Tuple[int, str]] = field(default_factory=list)


@dataclass(frozen=True)
class BucketStats:
    name: str
    items: int
    size_bytes: int


@dataclass
class IndexStatus:
    path: Path
    exists: bool
    size: int
    recreated: bool = False


@dataclass
class IndexStats:
    path: Path
    size: int
    modified: Optional[float]
    read_only: bool
    buckets: List[BucketStats] = field(default_factory=list)

    @property
    def bucket_count(self) -> int:
        return len(self.buckets)

    @property
    def item_count(self) -> int:
        return sum(bucket.items for bucket in self.buckets)
