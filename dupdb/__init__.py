"""Persistent duplicate file index with archive inspection and filename search."""

from .config import Settings
from .detector import MODULE_VERSION, DuplicateDetector
from .errors import DupdbError
from .models import Bucket, ChecksumMap, Match, SearchHit

__version__ = MODULE_VERSION

__all__ = [
    "Bucket",
    "ChecksumMap",
    "DuplicateDetector",
    "DupdbError",
    "Match",
    "SearchHit",
    "Settings",
    "__version__",
]
