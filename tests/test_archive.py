"""Tests for archive detection, traversal checks and member hashing."""

import gzip
import hashlib
import io
import os
import tarfile
import threading
import zipfile

import pytest

from dupdb.archive import (
    ArchiveInspector,
    FormatCache,
    ReadWriteLock,
    format_from_name,
    format_from_signature,
    safe_member_path,
)
from dupdb.checksum import digest_file
from dupdb.errors import PathTraversal, UnsupportedArchive
from dupdb.models import Bucket, ScanContext
from dupdb.walker import Walker

from conftest import DUPLICATE_CONTENT, UNIQUE_CONTENT, write_file


@pytest.fixture
def inspector(logger):
    return ArchiveInspector(chunk_size=8, logger=logger)


def make_zip(path, members):
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


def make_tar(path, members, mode="w:gz"):
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return path


class TestDetection:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("backup.tar.gz", "tar.gz"),
            ("backup.TGZ", "tar.gz"),
            ("backup.tar.bz2", "tar.bz2"),
            ("backup.tar.xz", "tar.xz"),
            ("backup.tar", "tar"),
            ("photos.zip", "zip"),
            ("photos.7z", "7z"),
            ("photos.rar", "rar"),
            ("notes.txt.gz", "gz"),
            ("notes.txt.xz", "xz"),
            ("backup.tar.zst", "zstd"),
            ("notes.txt", None),
            (".gz", None),
        ],
    )
    def test_format_from_name(self, name, expected):
        assert format_from_name(name) == expected

    def test_format_from_signature(self):
        assert format_from_signature(b"PK\x03\x04rest") == "zip"
        assert format_from_signature(b"7z\xbc\xaf\x27\x1crest") == "7z"
        assert format_from_signature(b"\x28\xb5\x2f\xfdrest") == "zstd"
        assert format_from_signature(b"\x00" * 257 + b"ustar") == "tar"
        assert format_from_signature(b"plain text") is None

    def test_detect_sniffs_unnamed_archives(self, inspector, tmp_path):
        path = make_zip(tmp_path / "bundle.bin", {"a.txt": b"a"})
        assert inspector.detect(str(path)) == "zip"

    def test_detect_plain_file(self, inspector, tmp_path):
        path = write_file(tmp_path / "notes.txt", b"just text")
        assert inspector.detect(str(path)) is None
        assert not inspector.is_archive(str(path))

    def test_detection_is_cached_per_file_version(self, inspector, tmp_path):
        path = write_file(tmp_path / "notes.txt", b"just text")
        inspector.detect(str(path))
        inspector.detect(str(path))
        assert len(inspector.cache) == 1


class TestSafeMemberPath:
    def test_member_is_joined_onto_archive(self):
        archive = os.path.join(os.sep, "data", "bundle.zip")
        assert safe_member_path(archive, "docs/a.txt") == os.path.join(archive, "docs", "a.txt")

    def test_backslashes_are_separators(self):
        archive = os.path.join(os.sep, "data", "bundle.zip")
        assert safe_member_path(archive, "docs\\a.txt") == os.path.join(archive, "docs", "a.txt")

    def test_inner_dot_dot_that_stays_inside(self):
        archive = os.path.join(os.sep, "data", "bundle.zip")
        assert safe_member_path(archive, "docs/../a.txt") == os.path.join(archive, "a.txt")

    @pytest.mark.parametrize("member", ["../../evil", "docs/../../evil", "/etc/passwd", "C:\\evil", ".."])
    def test_escaping_members_are_rejected(self, member):
        with pytest.raises(PathTraversal):
            safe_member_path(os.path.join(os.sep, "data", "bundle.zip"), member)


class TestInspect:
    def test_zip_member_digest_matches_file_digest(self, inspector, tmp_path):
        plain = write_file(tmp_path / "plain.txt", DUPLICATE_CONTENT)
        archive = make_zip(tmp_path / "bundle.zip", {"inner/plain.txt": DUPLICATE_CONTENT})

        members = dict(
            (name, hashlib.sha256(b"".join(blocks)).digest())
            for name, blocks in inspector.iter_members(str(archive))
        )

        assert members == {"inner/plain.txt": digest_file(plain)}

    def test_tar_gz_members(self, inspector, tmp_path):
        archive = make_tar(tmp_path / "bundle.tar.gz", {"a": DUPLICATE_CONTENT, "b": UNIQUE_CONTENT})
        report = inspector.inspect(str(archive))
        assert report.format == "tar.gz"
        assert report.members == 2
        assert report.errors == []

    def test_single_file_compressor_member_name(self, inspector, tmp_path):
        path = tmp_path / "notes.txt.gz"
        with gzip.open(path, "wb") as handle:
            handle.write(UNIQUE_CONTENT)
        members = [name for name, _ in inspector.iter_members(str(path))]
        assert members == ["notes.txt"]

    def test_traversal_member_is_reported_and_others_processed(self, inspector, tmp_path):
        archive = make_zip(
            tmp_path / "evil.zip",
            {"../../evil": b"payload", "good.txt": DUPLICATE_CONTENT},
        )
        report = inspector.inspect(str(archive))
        assert report.members == 1
        assert report.skipped == 1
        assert [error.kind for error in report.errors] == [PathTraversal.kind]

    def test_malformed_archive_is_reported(self, inspector, tmp_path):
        path = write_file(tmp_path / "broken.zip", b"PK\x03\x04 this is not really a zip")
        report = inspector.inspect(str(path))
        assert report.members == 0
        assert [error.kind for error in report.errors] == [UnsupportedArchive.kind]

    def test_unsupported_signature(self, inspector, tmp_path):
        path = write_file(tmp_path / "blob.bin", b"\x28\xb5\x2f\xfd" + b"\x00" * 32)
        with pytest.raises(UnsupportedArchive):
            list(inspector.iter_members(str(path)))

    def test_seven_zip_through_libarchive(self, inspector, tmp_path):
        libarchive = pytest.importorskip("libarchive")
        path = tmp_path / "bundle.7z"
        with libarchive.file_writer(str(path), "7zip") as archive:
            archive.add_file_from_memory("inner.txt", len(DUPLICATE_CONTENT), DUPLICATE_CONTENT)

        members = {
            name: hashlib.sha256(b"".join(blocks)).digest()
            for name, blocks in inspector.iter_members(str(path))
        }

        assert members == {"inner.txt": hashlib.sha256(DUPLICATE_CONTENT).digest()}


class TestArchiveWalk:
    @pytest.fixture
    def walker(self, index, inspector, logger):
        return Walker(index, inspector=inspector, logger=logger)

    def test_members_are_recorded_under_the_archive_path(self, walker, tmp_path):
        root = tmp_path / "bucket"
        archive = make_zip(root / "bundle.zip", {"a.txt": DUPLICATE_CONTENT, "b.txt": UNIQUE_CONTENT})
        write_file(root / "plain.txt", b"not an archive")

        report = walker.walk_archives(root, ScanContext())

        assert report.archives == 1
        assert report.members == 2
        with walker.index.transaction(read_only=True) as tx:
            keys = list(tx.keys(Bucket.canonical(root)))
        assert keys == [
            str(archive),
            os.path.join(str(archive), "a.txt"),
            os.path.join(str(archive), "b.txt"),
        ]
        assert report.hashed == 1

    def test_archive_rescan_skips_known_members(self, walker, tmp_path):
        root = tmp_path / "bucket"
        make_tar(root / "bundle.tar", {"a": DUPLICATE_CONTENT}, mode="w")
        walker.walk_archives(root, ScanContext())

        report = walker.walk_archives(root, ScanContext())
        assert report.members == 0
        assert report.skipped == 1

        forced = walker.walk_archives(root, ScanContext(rescan=True))
        assert forced.members == 1

    def test_broken_archive_does_not_stop_the_walk(self, walker, tmp_path):
        root = tmp_path / "bucket"
        write_file(root / "a-broken.zip", b"PK\x03\x04 garbage")
        make_zip(root / "b-good.zip", {"x.txt": UNIQUE_CONTENT})

        report = walker.walk_archives(root, ScanContext())

        assert report.archives == 2
        assert report.members == 1
        assert len(report.errors) == 1

    def test_traversal_never_writes_outside_the_archive(self, walker, tmp_path):
        root = tmp_path / "bucket"
        archive = make_tar(root / "evil.tar.gz", {"../../evil": b"payload", "ok": b"fine"})

        report = walker.walk_archives(root, ScanContext())

        with walker.index.transaction(read_only=True) as tx:
            keys = list(tx.keys(Bucket.canonical(root)))
        assert keys == [str(archive), os.path.join(str(archive), "ok")]
        assert any(error.kind == PathTraversal.kind for error in report.errors)

    def test_archive_file_digest_is_recorded_once(self, walker, tmp_path):
        root = tmp_path / "bucket"
        archive = make_zip(root / "bundle.zip", {"a.txt": DUPLICATE_CONTENT})
        ctx = ScanContext()

        walker.walk_archives(root, ctx)

        assert ctx.checksums.lookup(digest_file(str(archive))) == str(archive)
        assert walker.walk_archives(root, ScanContext()).hashed == 0
        assert walker.walk_archives(root, ScanContext(rescan=True)).hashed == 1


def test_read_write_lock_allows_shared_readers():
    lock = ReadWriteLock()
    entered = threading.Event()

    def reader():
        with lock.read():
            entered.set()

    with lock.read():
        thread = threading.Thread(target=reader)
        thread.start()
        assert entered.wait(timeout=2)
    thread.join()
    with lock.write():
        pass


def test_format_cache_round_trip():
    cache = FormatCache()
    key = ("/data/a.zip", 10, 1)
    assert cache.get(key) == (False, None)
    cache.put(key, "zip")
    assert cache.get(key) == (True, "zip")
