"""SHA-256 digests computed through a fixed size streaming buffer."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Iterable, Union

from .config import DEFAULT_CHUNK_SIZE
from .errors import InvalidChecksum
from .models import DIGEST_SIZE

HEX_DIGEST_LENGTH = DIGEST_SIZE * 2
_HEX_DIGEST = re.compile(r"[0-9a-fA-F]{%d}" % HEX_DIGEST_LENGTH)


def digest_stream(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    hasher = hashlib.sha256()
    while chunk := stream.read(chunk_size):
        hasher.update(chunk)
    return hasher.digest()


def digest_blocks(blocks: Iterable[bytes]) -> bytes:
    hasher = hashlib.sha256()
    for block in blocks:
        hasher.update(block)
    return hasher.digest()


def digest_file(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    with open(path, "rb") as handle:
        return digest_stream(handle, chunk_size)


def from_hex(value: str) -> bytes:
    """Decode a 64 character hexadecimal digest."""
    if not _HEX_DIGEST.fullmatch(value):
        raise InvalidChecksum(f"value must contain exactly {HEX_DIGEST_LENGTH} hexadecimal characters")
    return bytes.fromhex(value)
