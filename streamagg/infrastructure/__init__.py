"""
Infrastructure package for the streaming aggregation engine.

Centralizes I/O concerns: the filesystem boundary, checkpoint persistence and
sink writers. Keep this layer focused on I/O and durability, decoupled from
scheduling and query logic.
"""

from streamagg.infrastructure.checkpoint import Checkpoint, CheckpointManager
from streamagg.infrastructure.filesystem import FileSystem, LocalFileSystem
from streamagg.infrastructure.sinks import (
    ConsoleSink,
    JsonFileSink,
    MemorySink,
    SinkWriter,
    build_sink,
)

__all__ = [
    "Checkpoint",
    "CheckpointManager",
    "ConsoleSink",
    "FileSystem",
    "JsonFileSink",
    "LocalFileSystem",
    "MemorySink",
    "SinkWriter",
    "build_sink",
]
