"""Skip policy for system directories, OS artifact files and non-regular entries."""

from __future__ import annotations

import os
import sys
from typing import Callable, Iterator, Optional

SKIP_DIRS = frozenset(
    {".git", ".cache", ".config", ".local", "node_modules", "__macosx", "appdata"}
)
SKIP_FILES = frozenset(
    {
        ".ds_store",
        ".trashes",
        "desktop.ini",
        "hiberfil.sys",
        "ntuser.dat",
        "pagefile.sys",
        "swapfile.sys",
        "thumbs.db",
    }
)
MACOS_RESOURCE_PREFIX = "._"


def _windows(platform: Optional[str]) -> bool:
    return (platform or sys.platform).startswith(("win32", "cygwin"))


def skip_dir(name: str, platform: Optional[str] = None) -> bool:
    """Return True for hidden, system and package manager directories."""
    if name.lower() in SKIP_DIRS:
        return True
    if name.startswith("."):
        return True
    return _windows(platform) and name.startswith("$")


def skip_file(name: str) -> bool:
    """Return True for known Windows and macOS system files."""
    if name.lower() in SKIP_FILES:
        return True
    return name.startswith(MACOS_RESOURCE_PREFIX)


def skip_entry(entry: os.DirEntry, platform: Optional[str] = None) -> bool:
    """Return True when a walked directory entry must not be descended or hashed."""
    if entry.is_symlink():
        return True
    if entry.is_dir(follow_symlinks=False):
        return skip_dir(entry.name, platform)
    if not entry.is_file(follow_symlinks=False):
        return True
    return skip_file(entry.name) or skip_dir(entry.name, platform)


def walk_files(
    root: str,
    *,
    on_error: Optional[Callable[[str, OSError], None]] = None,
    platform: Optional[str] = None,
) -> Iterator[str]:
    """Yield the regular files beneath ``root`` that pass the skip policy.

    Directories are visited depth first in name order. An unreadable
    subdirectory is reported to ``on_error`` and skipped; an unreadable
    ``root`` raises.
    """
    pending = [root]
    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as listing:
                entries = sorted(listing, key=lambda item: item.name)
        except OSError as exc:
            if directory == root:
                raise
            if on_error is not None:
                on_error(directory, exc)
            continue
        subdirs = []
        for entry in entries:
            try:
                if skip_entry(entry, platform):
                    continue
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(entry.path)
                    continue
            except OSError as exc:
                if on_error is not None:
                    on_error(entry.path, exc)
                continue
            yield entry.path
        pending.extend(reversed(subdirs))
