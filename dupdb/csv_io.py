"""CSV export and import of bucket entries.

The first row names the bucket: ``sha256_sum,path#<bucket>``. Every other
row holds a hexadecimal digest and the entry path relative to the bucket.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import sys
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO, Tuple, Union

from .checksum import from_hex
from .errors import InvalidChecksum, InvalidCsv, InvalidCsvRow
from .index import BACKUP_TIME_FORMAT, PersistentIndex
from .logs import LOGGER_NAME, log_event
from .models import Bucket, ImportReport

CHECKSUM_COLUMN = "sha256_sum"
PATH_PREFIX = "path#"
HEADER = f"{CHECKSUM_COLUMN},{PATH_PREFIX}"
EXPORT_PREFIX = "dupdb-export"
BATCH_SIZE = 50000

BACK_SLASH = "\\"
FWD_SLASH = "/"
UNC_PREFIX = BACK_SLASH * 2
DEFAULT_DRIVE = "C:"

_DRIVE_ONLY = re.compile(r"^[A-Za-z]:\\?$")
_DRIVE_LETTER = re.compile(r"^[A-Za-z]$")


def _drive(path: str) -> bool:
    return bool(_DRIVE_ONLY.match(path))


def path_windows(src: str) -> str:
    """Return a Windows drive or UNC path for ``src``."""
    if src == "":
        return ""
    if src == FWD_SLASH:
        return DEFAULT_DRIVE
    if _drive(src):
        return src[:2]
    if _drive(src[:2]) or src.startswith(UNC_PREFIX):
        return src
    return DEFAULT_DRIVE + src.replace(FWD_SLASH, BACK_SLASH)


def path_posix(src: str) -> str:
    """Return a POSIX path for a Windows drive or UNC path ``src``."""
    if len(src) < 2:
        return src
    if src.startswith(UNC_PREFIX):
        return FWD_SLASH + src[2:].replace(BACK_SLASH, FWD_SLASH)
    drive, sep, rest = src.partition(":")
    if sep and _DRIVE_LETTER.match(drive):
        return rest.replace(BACK_SLASH, FWD_SLASH) or FWD_SLASH
    return src


def native_path(src: str, platform: Optional[str] = None) -> str:
    if (platform or sys.platform).startswith("win"):
        return path_windows(src)
    return path_posix(src)


def export_name(now: Optional[float] = None) -> str:
    return f"{EXPORT_PREFIX}-{time.strftime(BACKUP_TIME_FORMAT, time.localtime(now))}.csv"


def relative_key(bucket: str, path: str) -> str:
    if path.startswith(bucket):
        return path[len(bucket):]
    return path


def write_csv(handle: TextIO, bucket: Bucket, entries: Iterable[Tuple[str, bytes]]) -> int:
    writer = csv.writer(handle, lineterminator="\n")
    writer.writerow([CHECKSUM_COLUMN, f"{PATH_PREFIX}{bucket}"])
    rows = 0
    for path, digest in entries:
        writer.writerow([digest.hex(), relative_key(bucket, path)])
        rows += 1
    return rows


def parse_header(row: List[str], platform: Optional[str] = None) -> Bucket:
    if len(row) != 2 or row[0] != CHECKSUM_COLUMN or not row[1].startswith(PATH_PREFIX):
        raise InvalidCsv(f"missing header {HEADER}")
    name = native_path(row[1][len(PATH_PREFIX):], platform)
    if not name or not os.path.isabs(name):
        raise InvalidCsv(f"header does not name an absolute bucket: {','.join(row)}")
    return Bucket.canonical(name)


def parse_row(row: List[str], bucket: str) -> Tuple[str, bytes]:
    if len(row) != 2:
        raise InvalidCsvRow("row must hold a checksum and a path")
    relative = row[1].replace(BACK_SLASH, os.sep).replace(FWD_SLASH, os.sep).lstrip(os.sep)
    name = os.path.join(bucket, relative) if relative else ""
    if not os.path.isabs(name):
        raise InvalidCsvRow("row has an invalid file path")
    return name, from_hex(row[0])


def read_csv(handle: TextIO, platform: Optional[str] = None) -> Tuple[Bucket, Dict[str, bytes], List[Tuple[int, str]]]:
    """Parse an export, returning its bucket, entries and rejected row numbers.

    A bad header or a bad first data row rejects the whole file; later bad
    rows are collected and skipped.
    """
    reader = csv.reader(handle)
    try:
        header = next(reader)
    except StopIteration:
        raise InvalidCsv("file is empty") from None
    except csv.Error as exc:
        raise InvalidCsv(str(exc)) from exc
    bucket = parse_header(header, platform)
    entries: Dict[str, bytes] = {}
    rejected: List[Tuple[int, str]] = []
    row_number = 1
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            raise InvalidCsv(str(exc)) from exc
        row_number += 1
        if not row:
            continue
        try:
            name, digest = parse_row(row, bucket)
        except (InvalidCsvRow, InvalidChecksum) as exc:
            if row_number == 2:
                raise InvalidCsv(f"first item is malformed ({exc})") from exc
            rejected.append((row_number, str(exc)))
            continue
        entries[name] = digest
    return bucket, entries, rejected


def export_bucket(
    index: PersistentIndex,
    bucket: Union[str, Bucket],
    dest_dir: Union[str, Path],
    *,
    logger: Optional[logging.Logger] = None,
) -> Tuple[Path, int]:
    bucket = Bucket.canonical(bucket)
    directory = Path(dest_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / export_name()
    with index.transaction(read_only=True) as tx:
        entries = list(tx.items(bucket))
    with target.open("w", newline="", encoding="utf-8") as handle:
        rows = write_csv(handle, bucket, entries)
    log_event(
        logger or logging.getLogger(LOGGER_NAME),
        "bucket_exported",
        logging.INFO,
        "Bucket exported",
        component="csv",
        bucket=str(bucket),
        output_file=str(target),
        rows=rows,
    )
    return target, rows


def import_csv(
    index: PersistentIndex,
    source: Union[str, Path],
    *,
    bucket: Optional[Union[str, Bucket]] = None,
    batch_size: int = BATCH_SIZE,
    logger: Optional[logging.Logger] = None,
) -> ImportReport:
    """Load an export into the index, creating its bucket when needed."""
    with Path(source).expanduser().open("r", newline="", encoding="utf-8") as handle:
        header_bucket, entries, rejected = read_csv(handle)
    target = Bucket.canonical(bucket) if bucket else header_bucket
    if bucket and target != header_bucket:
        entries = {
            os.path.join(target, relative_key(header_bucket, path).lstrip(os.sep)): digest
            for path, digest in entries.items()
        }
    report = ImportReport(bucket=target, rejected=rejected)
    items = list(entries.items())
    with index.transaction() as tx:
        tx.create_bucket(target)
    for start in range(0, len(items), batch_size):
        with index.transaction() as tx:
            for path, digest in items[start:start + batch_size]:
                tx.put(target, path, digest)
        report.imported += len(items[start:start + batch_size])
    log_event(
        logger or logging.getLogger(LOGGER_NAME),
        "bucket_imported",
        logging.INFO,
        "Bucket imported",
        component="csv",
        bucket=str(target),
        source=str(source),
        imported=report.imported,
        rejected=len(report.rejected),
    )
    return report
