"""
Error taxonomy for the streaming aggregation engine.

Row-level errors (schema validation, state merge) are recovered locally and
counted. Tick-level errors (sink, checkpoint write) abort the current commit
and leave the engine live. Checkpoint corruption at startup is fatal.
"""

from __future__ import annotations

from typing import Optional


class StreamAggError(Exception):
    """Base class for all engine errors."""


class SourceReadError(StreamAggError):
    """A source file could not be read (I/O failure, timeout, bad header)."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to read '{path}': {reason}")
        self.path = path
        self.reason = reason


class SchemaValidationError(StreamAggError):
    """A raw row does not match the active schema variant."""

    def __init__(self, reason: str, line: Optional[int] = None, path: Optional[str] = None) -> None:
        location = f"{path}:{line}" if path and line is not None else (path or "")
        super().__init__(f"{location} {reason}".strip())
        self.reason = reason
        self.line = line
        self.path = path


class StateMergeError(StreamAggError):
    """An aggregate input is unusable even though it passed schema validation."""

    def __init__(self, query_id: str, field: str, value: object) -> None:
        super().__init__(f"Query '{query_id}': cannot aggregate {field}={value!r}")
        self.query_id = query_id
        self.field = field
        self.value = value


class SinkWriteError(StreamAggError):
    """A sink failed to accept a query's rows; the tick must not commit."""

    def __init__(self, query_id: str, reason: str) -> None:
        super().__init__(f"Sink write failed for query '{query_id}': {reason}")
        self.query_id = query_id
        self.reason = reason


class CheckpointWriteError(StreamAggError):
    """Persisting a checkpoint failed. ``fatal`` is set once retries are exhausted."""

    def __init__(self, message: str, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


class CheckpointCorruptError(StreamAggError):
    """The stored checkpoint is unreadable or inconsistent with this engine."""


class QueryDefinitionError(StreamAggError):
    """A query definition references fields or types the schema variant lacks."""


__all__ = [
    "StreamAggError",
    "SourceReadError",
    "SchemaValidationError",
    "StateMergeError",
    "SinkWriteError",
    "CheckpointWriteError",
    "CheckpointCorruptError",
    "QueryDefinitionError",
]
