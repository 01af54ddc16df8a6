"""
Filesystem boundary for the source monitor.

The engine only needs to list candidate files and read their text. Keeping
this behind a small protocol lets tests inject slow or failing filesystems.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import List, Protocol, runtime_checkable

# Writers use these to stage files before renaming them into place.
TEMPORARY_SUFFIXES = (".tmp", ".part", ".partial", ".crdownload")


@runtime_checkable
class FileSystem(Protocol):
    def list_files(self, directory: Path, pattern: str) -> List[str]:
        """
        Return names (relative to ``directory``) of regular files matching ``pattern``.
        """
        ...

    def read_text(self, path: Path) -> str:
        """Read the whole file as UTF-8 text."""
        ...


def is_visible_source(name: str, pattern: str) -> bool:
    """Hidden, underscore-prefixed and staging files are never picked up."""
    if name.startswith((".", "_")) or name.endswith(TEMPORARY_SUFFIXES):
        return False
    return fnmatch.fnmatch(name, pattern)


class LocalFileSystem:
    """FileSystem backed by the local disk."""

    def list_files(self, directory: Path, pattern: str) -> List[str]:
        if not directory.is_dir():
            return []
        return [
            entry.name
            for entry in directory.iterdir()
            if entry.is_file() and is_visible_source(entry.name, pattern)
        ]

    def read_text(self, path: Path) -> str:
        with path.open("r", encoding="utf-8", newline="") as f:
            return f.read()


__all__ = ["FileSystem", "LocalFileSystem", "TEMPORARY_SUFFIXES", "is_visible_source"]
