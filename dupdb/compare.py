"""Source to index matching by digest, and filename search over stored keys."""

from __future__ import annotations

import logging
import os
from typing import Iterable, List, Optional, Sequence, Union

from .checksum import digest_file
from .config import DEFAULT_CHUNK_SIZE
from .errors import EmptyTerm, PathNotFound
from .index import PersistentIndex
from .logs import LOGGER_NAME, log_event
from .models import Bucket, ChecksumMap, Match, SearchHit, fold_path
from .skip import walk_files


def expand_sources(sources: Iterable[Union[str, "os.PathLike[str]"]]) -> List[str]:
    """Resolve sources to absolute file paths, expanding directories."""
    files: List[str] = []
    for source in sources:
        path = os.path.abspath(os.path.expanduser(os.fspath(source)))
        if os.path.isdir(path):
            files.extend(walk_files(path))
        elif os.path.isfile(path):
            files.append(path)
        else:
            raise PathNotFound("source does not exist", path=path)
    return files


class Comparator:
    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE, logger: Optional[logging.Logger] = None) -> None:
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def compare(self, sources: Sequence[str], checksums: ChecksumMap, context=None) -> List[Match]:
        """Return one match per source file whose digest is already known.

        Empty files are ignored since they all share a single digest.
        """
        matches: List[Match] = []
        for path in expand_sources(sources):
            try:
                if os.path.getsize(path) == 0:
                    continue
                digest = digest_file(path, self.chunk_size)
            except PermissionError as exc:
                log_event(
                    self.logger,
                    "file_skipped_permission",
                    logging.WARNING,
                    "Permission denied",
                    context,
                    file=path,
                    exception_type=exc.__class__.__name__,
                )
                continue
            found = checksums.lookup(digest)
            if found is None or fold_path(found) == fold_path(path):
                continue
            matches.append(Match(source=path, match=found))
        return matches


def search(
    index: PersistentIndex,
    term: str,
    buckets: Sequence[Union[str, Bucket]] = (),
    *,
    exact: bool = False,
    filename_only: bool = False,
) -> List[SearchHit]:
    """Return stored keys containing ``term``.

    ``exact`` makes the comparison case-sensitive; ``filename_only`` compares
    the base name of each key instead of the whole path.
    """
    if not term:
        raise EmptyTerm()
    needle = term if exact else term.lower()
    hits: List[SearchHit] = []
    with index.transaction(read_only=True) as tx:
        names = [Bucket.canonical(name) for name in buckets] if buckets else tx.buckets()
        for bucket in names:
            for path in tx.keys(bucket):
                haystack = os.path.basename(path) if filename_only else path
                if not exact:
                    haystack = haystack.lower()
                if needle in haystack:
                    hits.append(SearchHit(path=path, bucket=bucket))
    return hits


def compare_path(index: PersistentIndex, term: str, buckets: Sequence[Union[str, Bucket]] = ()) -> List[SearchHit]:
    return search(index, term, buckets, exact=True)


def compare_path_nocase(index: PersistentIndex, term: str, buckets: Sequence[Union[str, Bucket]] = ()) -> List[SearchHit]:
    return search(index, term, buckets)


def compare_base(index: PersistentIndex, term: str, buckets: Sequence[Union[str, Bucket]] = ()) -> List[SearchHit]:
    return search(index, term, buckets, exact=True, filename_only=True)


def compare_base_nocase(index: PersistentIndex, term: str, buckets: Sequence[Union[str, Bucket]] = ()) -> List[SearchHit]:
    return search(index, term, buckets, filename_only=True)
