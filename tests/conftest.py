"""
Pytest configuration and fixtures
"""
import logging
from pathlib import Path

import pytest

from dupdb.config import Settings
from dupdb.detector import DuplicateDetector
from dupdb.index import PersistentIndex

DUPLICATE_CONTENT = b"duplicate content"
UNIQUE_CONTENT = b"unique content"


def write_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every file the index writes into tmp_path."""
    return Settings(
        index_path=tmp_path / "config" / "dupdb.db",
        lock_timeout=0.2,
        chunk_size=4096,
        environment="test",
        log_dir=tmp_path / "logs",
        backup_dir=tmp_path / "backups",
    )


@pytest.fixture
def logger():
    return logging.getLogger("dupdb.tests")


@pytest.fixture
def detector(settings, logger):
    return DuplicateDetector(settings, logger=logger, log_to_files=False)


@pytest.fixture
def index(settings, logger):
    opened = PersistentIndex.open(settings.index_path, lock_timeout=settings.lock_timeout, logger=logger)
    yield opened
    opened.close()


@pytest.fixture
def bucket_dir(tmp_path):
    """A bucket holding a, b (same content) and c (different content)."""
    root = tmp_path / "bucket"
    write_file(root / "a", DUPLICATE_CONTENT)
    write_file(root / "b", DUPLICATE_CONTENT)
    write_file(root / "c", UNIQUE_CONTENT)
    return root
