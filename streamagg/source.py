"""
File source monitor: discovers new files in the watched directory and reads them.

Discovery is a pure function of the directory listing and the ledger, so two
calls over identical contents return identical, name-ordered results. The
monitor never mutates the ledger; the scheduler records failures and commits.
"""

from __future__ import annotations

import csv
import io
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from streamagg.domain.models import Ledger, SourceFile
from streamagg.errors import SourceReadError
from streamagg.infrastructure.filesystem import FileSystem, LocalFileSystem
from streamagg.utils.logging import get_logger

log = get_logger(__name__)

RawRow = Tuple[int, List[str]]


class _FileRead(threading.Thread):
    """Reads one file on a daemon thread so a hung read never blocks exit."""

    def __init__(self, filesystem: FileSystem, path: Path) -> None:
        super().__init__(name=f"source-read-{path.name}", daemon=True)
        self.filesystem = filesystem
        self.path = path
        self.text: Optional[str] = None
        self.error: Optional[Exception] = None

    def run(self) -> None:
        try:
            self.text = self.filesystem.read_text(self.path)
        except Exception as exc:  # noqa: BLE001 - re-raised on the caller's thread
            self.error = exc


class FileSourceMonitor:
    """
    Lists and reads CSV files from a single watched directory.

    Parameters
    ----------
    watch_dir : Path
        Directory polled for new files.
    header : Sequence[str]
        Expected header row (the active schema variant's field names).
    filesystem : FileSystem | None
        Filesystem implementation; defaults to the local disk.
    pattern : str
        Glob applied to file names.
    read_timeout : float
        Seconds a single file read may take before it counts as a failure.
        A read that overruns keeps its thread; until it finishes, further
        reads of the same file fail immediately without starting another.
    """

    def __init__(
        self,
        watch_dir: Path,
        header: Sequence[str],
        filesystem: Optional[FileSystem] = None,
        pattern: str = "*.csv",
        read_timeout: float = 10.0,
    ) -> None:
        self.watch_dir = Path(watch_dir)
        self.header = list(header)
        self.filesystem = filesystem or LocalFileSystem()
        self.pattern = pattern
        self.read_timeout = read_timeout
        self._stuck: Dict[str, _FileRead] = {}

    def discover(self, ledger: Ledger) -> List[SourceFile]:
        """
        Return files not yet committed or quarantined, sorted by name.
        """
        try:
            names = self.filesystem.list_files(self.watch_dir, self.pattern)
        except OSError as exc:
            log.error(
                "Failed to list watched directory",
                extra={"watch_dir": str(self.watch_dir), "error": str(exc)},
            )
            return []
        pending = sorted(name for name in set(names) if not ledger.is_settled(name))
        return [SourceFile(path=name) for name in pending]

    def read(self, source: SourceFile) -> List[RawRow]:
        """
        Read a file and return its data rows with 1-based line numbers.

        Raises
        ------
        SourceReadError
            If the file cannot be read within the timeout, is not valid CSV,
            or its header does not match the active schema variant.
        """
        stuck = self._stuck.get(source.path)
        if stuck is not None:
            if stuck.is_alive():
                raise SourceReadError(source.path, "previous read is still running")
            del self._stuck[source.path]

        reader = _FileRead(self.filesystem, self.watch_dir / source.path)
        reader.start()
        reader.join(self.read_timeout)
        if reader.is_alive():
            self._stuck[source.path] = reader
            log.warning(
                "File read overran its timeout",
                extra={"path": source.path, "timeout_seconds": self.read_timeout},
            )
            raise SourceReadError(source.path, f"read timed out after {self.read_timeout}s")
        if isinstance(reader.error, (OSError, UnicodeDecodeError)):
            raise SourceReadError(source.path, str(reader.error)) from reader.error
        if reader.error is not None:
            raise reader.error

        return self._split_rows(source.path, reader.text or "")

    def _split_rows(self, path: str, text: str) -> List[RawRow]:
        reader = csv.reader(io.StringIO(text))
        rows: List[RawRow] = []
        try:
            header = next(reader, None)
            if header is None:
                raise SourceReadError(path, "file is empty (missing header row)")
            if [col.strip() for col in header] != self.header:
                raise SourceReadError(
                    path, f"header {header} does not match expected {self.header}"
                )
            for row in reader:
                if not row or all(not cell.strip() for cell in row):
                    continue
                rows.append((reader.line_num, row))
        except csv.Error as exc:
            raise SourceReadError(path, f"malformed CSV: {exc}") from exc
        return rows

    @property
    def stuck_reads(self) -> List[str]:
        """Paths whose last read overran the timeout and has not finished yet."""
        return sorted(path for path, reader in self._stuck.items() if reader.is_alive())

    def close(self) -> None:
        # Overrunning readers are daemon threads and are abandoned here.
        self._stuck.clear()


__all__ = ["FileSourceMonitor", "RawRow"]
