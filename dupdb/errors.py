"""Typed errors raised across the duplicate index."""

from __future__ import annotations

from typing import Optional

NOT_FOUND = "not_found"
LOCKED = "locked"
CORRUPT = "corrupt"
INVALID_INPUT = "invalid_input"
UNSUPPORTED = "unsupported"
IO = "io"


class DupdbError(Exception):
    """Base class for every error the index surfaces to its callers."""

    kind = IO
    default_message = "duplicate index error"

    def __init__(self, message: str = "", *, path: Optional[str] = None) -> None:
        self.path = path
        text = message or self.default_message
        if path:
            text = f"{text}: {path}"
        super().__init__(text)


class BucketNotFound(DupdbError):
    kind = NOT_FOUND
    default_message = "bucket does not exist in the index"


class PathNotFound(DupdbError):
    kind = NOT_FOUND
    default_message = "path does not exist"


class Locked(DupdbError):
    """Write access could not be obtained before the lock timeout."""

    kind = LOCKED
    default_message = "index is locked by another process"


class ReadOnly(DupdbError):
    kind = LOCKED
    default_message = "index or transaction is read only"


class CorruptIndex(DupdbError):
    kind = CORRUPT
    default_message = "index file is not a valid database"


class InvalidInput(DupdbError):
    kind = INVALID_INPUT
    default_message = "invalid input"


class EmptyName(InvalidInput):
    default_message = "bucket name cannot be empty"


class SameName(InvalidInput):
    default_message = "bucket target is the same as the bucket name"


class BucketExists(InvalidInput):
    default_message = "bucket already exists in the index"


class PathIsFile(InvalidInput):
    default_message = "path is a file, not a directory"


class IndexEmpty(InvalidInput):
    default_message = "index is empty and contains no buckets"


class EmptyTerm(InvalidInput):
    default_message = "cannot compare an empty term"


class InvalidChecksum(InvalidInput):
    default_message = "checksum must be exactly 64 hexadecimal characters"


class InvalidCsv(InvalidInput):
    default_message = "not a valid bucket export file"


class InvalidCsvRow(InvalidInput):
    default_message = "export row has an invalid syntax or path"


class PathTraversal(InvalidInput):
    """An archive member name resolves outside of its archive."""

    default_message = "path traversal attempt detected"


class UnsupportedArchive(DupdbError):
    kind = UNSUPPORTED
    default_message = "archive format is not supported"


class PathUnreadable(DupdbError):
    """A bucket root exists but its listing cannot be read."""

    default_message = "path cannot be read"
