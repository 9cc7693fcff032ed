"""Tests for CSV export and import."""

import hashlib
import io
import os

import pytest

from dupdb.csv_io import (
    export_bucket,
    import_csv,
    path_posix,
    path_windows,
    read_csv,
    write_csv,
)
from dupdb.checksum import from_hex
from dupdb.errors import InvalidChecksum, InvalidCsv
from dupdb.models import Bucket

DIGEST = hashlib.sha256(b"payload").digest()
OTHER = hashlib.sha256(b"other").digest()


@pytest.mark.parametrize(
    "src, expected",
    [
        ("", ""),
        ("/", "C:"),
        ("C:\\", "C:"),
        ("D:\\photos\\a.jpg", "D:\\photos\\a.jpg"),
        ("\\\\server\\share\\a.jpg", "\\\\server\\share\\a.jpg"),
        ("/home/user/a.jpg", "C:\\home\\user\\a.jpg"),
    ],
)
def test_path_windows(src, expected):
    assert path_windows(src) == expected


@pytest.mark.parametrize(
    "src, expected",
    [
        ("", ""),
        ("C:", "/"),
        ("C:\\", "/"),
        ("D:\\photos\\a.jpg", "/photos/a.jpg"),
        ("\\\\server\\share\\a.jpg", "/server/share/a.jpg"),
        ("/home/user/a.jpg", "/home/user/a.jpg"),
    ],
)
def test_path_posix(src, expected):
    assert path_posix(src) == expected


@pytest.fixture
def filled(index, tmp_path):
    bucket = Bucket.canonical(tmp_path / "photos")
    entries = {
        os.path.join(bucket, "a.jpg"): DIGEST,
        os.path.join(bucket, "trip, 2020", "b.jpg"): OTHER,
    }
    with index.transaction() as tx:
        tx.create_bucket(bucket)
        for path, digest in entries.items():
            tx.put(bucket, path, digest)
    return bucket, entries


def test_export_then_import_round_trip(index, filled, tmp_path):
    bucket, entries = filled
    target, rows = export_bucket(index, bucket, tmp_path / "exports")
    assert rows == 2
    assert target.name.startswith("dupdb-export-")
    assert target.read_text(encoding="utf-8").splitlines()[0] == f"sha256_sum,path#{bucket}"

    with index.transaction() as tx:
        tx.delete_bucket(bucket)
    report = import_csv(index, target)

    assert report.bucket == bucket
    assert report.imported == 2
    assert report.rejected == []
    with index.transaction(read_only=True) as tx:
        assert dict(tx.items(bucket)) == entries


def test_import_into_another_bucket(index, filled, tmp_path):
    bucket, entries = filled
    target, _ = export_bucket(index, bucket, tmp_path / "exports")
    fresh = Bucket.canonical(tmp_path / "copy")

    report = import_csv(index, target, bucket=fresh)

    with index.transaction(read_only=True) as tx:
        imported = dict(tx.items(fresh))
    assert report.imported == 2
    assert {os.path.relpath(path, fresh): digest for path, digest in imported.items()} == {
        os.path.relpath(path, bucket): digest for path, digest in entries.items()
    }


def test_import_batches(index, filled, tmp_path):
    bucket, entries = filled
    target, _ = export_bucket(index, bucket, tmp_path / "exports")
    with index.transaction() as tx:
        tx.delete_bucket(bucket)
    assert import_csv(index, target, batch_size=1).imported == 2


def test_later_bad_rows_are_rejected(tmp_path):
    bucket = str(Bucket.canonical(tmp_path))
    text = "\n".join(
        [
            f"sha256_sum,path#{bucket}",
            f"{DIGEST.hex()},{os.sep}a.jpg",
            f"nothex,{os.sep}b.jpg",
            f"{OTHER.hex()},{os.sep}c.jpg,extra",
            f"{OTHER.hex()},{os.sep}d.jpg",
        ]
    )

    found, entries, rejected = read_csv(io.StringIO(text))

    assert found == bucket
    assert sorted(entries) == [os.path.join(bucket, "a.jpg"), os.path.join(bucket, "d.jpg")]
    assert [row for row, _ in rejected] == [3, 4]


def test_malformed_first_row_rejects_the_file(tmp_path):
    bucket = str(Bucket.canonical(tmp_path))
    text = f"sha256_sum,path#{bucket}\nnothex,{os.sep}a.jpg\n"
    with pytest.raises(InvalidCsv):
        read_csv(io.StringIO(text))


def test_digest_with_trailing_whitespace_is_rejected(index, tmp_path):
    bucket = str(Bucket.canonical(tmp_path / "photos"))
    padded = "00" * 31 + "  "
    source = tmp_path / "export.csv"
    source.write_text(
        "\n".join(
            [
                f"sha256_sum,path#{bucket}",
                f"{DIGEST.hex()},{os.sep}a.jpg",
                f"{padded},{os.sep}b.jpg",
                f"{OTHER.hex()},{os.sep}c.jpg",
            ]
        )
        + "\n"
    )

    report = import_csv(index, source)

    assert report.imported == 2
    assert [row for row, _ in report.rejected] == [3]


@pytest.mark.parametrize("value", ["00" * 31 + "  ", " " + "00" * 31 + "0", "00" * 31 + "0g", "+" + "0" * 63])
def test_from_hex_requires_exactly_64_hex_characters(value):
    with pytest.raises(InvalidChecksum):
        from_hex(value)
    assert from_hex("AB" * 32) == b"\xab" * 32


@pytest.mark.parametrize("header", ["", "checksum,path\n", "sha256_sum,path#relative/dir\n"])
def test_bad_header(header):
    with pytest.raises(InvalidCsv):
        read_csv(io.StringIO(header))


def test_write_csv_uses_relative_paths():
    handle = io.StringIO()
    bucket = Bucket(os.path.join(os.sep, "media"))
    write_csv(handle, bucket, [(os.path.join(bucket, "a.jpg"), DIGEST)])
    assert handle.getvalue().splitlines()[1] == f"{DIGEST.hex()},{os.sep}a.jpg"
