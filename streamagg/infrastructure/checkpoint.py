"""
Checkpoint manager: atomic, versioned persistence of ledger + query state.

Layout under the checkpoint directory:

    LATEST                 name of the current generation (the commit point)
    gen-00000007/
        manifest.json      format version, batch id, variant, query fingerprints,
                           sha256 of every other file in the generation
        ledger.json
        state/<query_id>.json

A generation is assembled in a temporary directory, renamed into place, and
only then published by atomically replacing LATEST. A crash at any point
leaves LATEST naming a complete generation (or absent on first run).
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from streamagg.domain.models import Ledger
from streamagg.errors import CheckpointCorruptError, CheckpointWriteError, SchemaValidationError
from streamagg.queries.manager import QueryManager
from streamagg.state import GroupKey, Accumulator, Partition, partition_from_payload, partition_to_payload
from streamagg.utils.logging import get_logger

log = get_logger(__name__)

FORMAT_VERSION = 1
LATEST_POINTER = "LATEST"
MANIFEST_FILE = "manifest.json"
LEDGER_FILE = "ledger.json"
STATE_DIR = "state"
_GENERATION_RE = re.compile(r"^gen-(\d{8})$")


class CheckpointManifest(BaseModel):
    format_version: int
    generation: int = Field(..., ge=1)
    batch_id: int = Field(..., ge=-1)
    schema_variant: str
    created_at: datetime
    queries: Dict[str, str] = Field(default_factory=dict)
    files: Dict[str, str] = Field(default_factory=dict)


@dataclass
class Checkpoint:
    """
    A restored checkpoint. ``batch_id`` is the last committed batch (-1 if none).
    """

    generation: int
    batch_id: int
    ledger: Ledger
    states: Dict[str, Partition] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def next_batch_id(self) -> int:
        return self.batch_id + 1


def _generation_name(generation: int) -> str:
    return f"gen-{generation:08d}"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_durable(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _encode(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")


class CheckpointManager:
    """
    Persists and restores checkpoints for one engine.

    Parameters
    ----------
    directory : Path
        Checkpoint location.
    queries : QueryManager
        The run's query catalog; used for fingerprints and group-key types.
    retain : int
        Number of generations kept on disk (the newest is always kept).
    """

    def __init__(self, directory: Path, queries: QueryManager, retain: int = 3) -> None:
        self.directory = Path(directory)
        self.queries = queries
        self.retain = max(retain, 1)
        self._generation = max(self._generations(), default=0)

    @property
    def generation(self) -> int:
        return self._generation

    def _generations(self) -> List[int]:
        if not self.directory.is_dir():
            return []
        found = []
        for entry in self.directory.iterdir():
            match = _GENERATION_RE.match(entry.name)
            if match and entry.is_dir():
                found.append(int(match.group(1)))
        return sorted(found)

    # ------------------------------------------------------------------ persist

    def persist(self, batch_id: int, ledger: Ledger, states: Mapping[str, Mapping[GroupKey, Accumulator]]) -> int:
        """
        Write a new generation and publish it. Returns the generation number.

        Raises
        ------
        CheckpointWriteError
            If the generation could not be written and published after retries.
        """
        generation = self._generation + 1
        try:
            self._write_generation(generation, batch_id, ledger, states)
        except OSError as exc:
            raise CheckpointWriteError(
                f"Failed to persist checkpoint generation {generation} (batch {batch_id}): {exc}"
            ) from exc
        self._generation = generation
        log.info(
            "Checkpoint persisted",
            extra={"generation": generation, "batch_id": batch_id, "directory": str(self.directory)},
        )
        self._prune()
        return generation

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    def _write_generation(
        self,
        generation: int,
        batch_id: int,
        ledger: Ledger,
        states: Mapping[str, Mapping[GroupKey, Accumulator]],
    ) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        staging = self.directory / f".tmp-{_generation_name(generation)}-{uuid.uuid4().hex[:8]}"
        try:
            staging.mkdir()
            checksums: Dict[str, str] = {}

            data = _encode(ledger.model_dump(mode="json"))
            _write_durable(staging / LEDGER_FILE, data)
            checksums[LEDGER_FILE] = _sha256(data)

            fingerprints = self.queries.fingerprints()
            for query_id, partition in sorted(states.items()):
                if query_id not in fingerprints:
                    continue
                relative = f"{STATE_DIR}/{query_id}.json"
                data = _encode(
                    {
                        "query_id": query_id,
                        "fingerprint": fingerprints[query_id],
                        "group_by": list(self.queries.get(query_id).group_by),
                        "entries": partition_to_payload(partition),
                    }
                )
                _write_durable(staging / relative, data)
                checksums[relative] = _sha256(data)

            manifest = CheckpointManifest(
                format_version=FORMAT_VERSION,
                generation=generation,
                batch_id=batch_id,
                schema_variant=self.queries.registry.variant.value,
                created_at=datetime.now(timezone.utc),
                queries={qid: fp for qid, fp in fingerprints.items() if qid in states},
                files=checksums,
            )
            _write_durable(staging / MANIFEST_FILE, _encode(manifest.model_dump(mode="json")))

            final = self.directory / _generation_name(generation)
            if final.exists():
                # Left behind by an attempt that died before publishing.
                shutil.rmtree(final)
            os.replace(staging, final)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        pointer_tmp = self.directory / f".{LATEST_POINTER}.tmp"
        _write_durable(pointer_tmp, _generation_name(generation).encode("utf-8"))
        os.replace(pointer_tmp, self.directory / LATEST_POINTER)

    def _prune(self) -> None:
        for old in self._generations()[: -self.retain]:
            if old >= self._generation:
                continue
            shutil.rmtree(self.directory / _generation_name(old), ignore_errors=True)
        for leftover in self.directory.glob(".tmp-gen-*"):
            shutil.rmtree(leftover, ignore_errors=True)

    # ------------------------------------------------------------------ restore

    def restore(self) -> Optional[Checkpoint]:
        """
        Load the published checkpoint, or None when nothing was ever published.

        Raises
        ------
        CheckpointCorruptError
            If the published generation is missing, fails its checksums, or was
            written by an incompatible format, variant or query definition, or
            if several generations exist but LATEST is gone.
        """
        pointer = self.directory / LATEST_POINTER
        if not pointer.exists():
            generations = self._generations()
            if len(generations) > 1:
                raise CheckpointCorruptError(
                    f"Checkpoint directory {self.directory} has {len(generations)} generations "
                    "but no LATEST pointer"
                )
            if generations:
                # The first commit died between rename and publish. Drop the
                # orphan so a lone unpublished generation stays the only case.
                orphan = self.directory / _generation_name(generations[0])
                log.warning(
                    "Discarding unpublished checkpoint generation; starting fresh",
                    extra={"directory": str(self.directory), "generation": orphan.name},
                )
                shutil.rmtree(orphan)
                self._generation = 0
            return None

        try:
            name = pointer.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise CheckpointCorruptError(f"Unreadable checkpoint pointer {pointer}: {exc}") from exc
        match = _GENERATION_RE.match(name)
        if not match:
            raise CheckpointCorruptError(f"Checkpoint pointer names an invalid generation: {name!r}")
        gen_dir = self.directory / name
        if not gen_dir.is_dir():
            raise CheckpointCorruptError(f"Checkpoint generation {name} is missing")

        manifest = self._load_manifest(gen_dir)
        if manifest.generation != int(match.group(1)):
            raise CheckpointCorruptError(
                f"Manifest generation {manifest.generation} does not match directory {name}"
            )
        blobs = self._verified_files(gen_dir, manifest)

        try:
            ledger = Ledger.model_validate_json(blobs[LEDGER_FILE])
        except (KeyError, ValidationError) as exc:
            raise CheckpointCorruptError(f"Invalid ledger in {name}: {exc}") from exc

        states = self._load_states(manifest, blobs, name)
        self._generation = max(self._generation, manifest.generation)
        log.info(
            "Checkpoint restored",
            extra={
                "generation": manifest.generation,
                "batch_id": manifest.batch_id,
                "committed_files": len(ledger.committed),
                "quarantined_files": len(ledger.quarantined),
            },
        )
        return Checkpoint(
            generation=manifest.generation,
            batch_id=manifest.batch_id,
            ledger=ledger,
            states=states,
            created_at=manifest.created_at,
        )

    def _load_manifest(self, gen_dir: Path) -> CheckpointManifest:
        try:
            manifest = CheckpointManifest.model_validate_json((gen_dir / MANIFEST_FILE).read_bytes())
        except (OSError, ValidationError) as exc:
            raise CheckpointCorruptError(f"Invalid checkpoint manifest in {gen_dir.name}: {exc}") from exc
        if manifest.format_version != FORMAT_VERSION:
            raise CheckpointCorruptError(
                f"Checkpoint format version {manifest.format_version} is not supported "
                f"(expected {FORMAT_VERSION})"
            )
        variant = self.queries.registry.variant.value
        if manifest.schema_variant != variant:
            raise CheckpointCorruptError(
                f"Checkpoint was written for schema variant {manifest.schema_variant}, "
                f"engine is configured for {variant}"
            )
        return manifest

    def _verified_files(self, gen_dir: Path, manifest: CheckpointManifest) -> Dict[str, bytes]:
        blobs: Dict[str, bytes] = {}
        for relative, expected in manifest.files.items():
            try:
                data = (gen_dir / relative).read_bytes()
            except OSError as exc:
                raise CheckpointCorruptError(f"Checkpoint file {relative} unreadable: {exc}") from exc
            if _sha256(data) != expected:
                raise CheckpointCorruptError(f"Checksum mismatch for checkpoint file {relative}")
            blobs[relative] = data
        return blobs

    def _load_states(self, manifest: CheckpointManifest, blobs: Mapping[str, bytes], name: str) -> Dict[str, Partition]:
        current = self.queries.fingerprints()
        for query_id in manifest.queries:
            if query_id not in current:
                log.warning(
                    "Checkpoint holds state for a query no longer in the catalog; ignoring it",
                    extra={"query_id": query_id},
                )

        states: Dict[str, Partition] = {}
        for query_id, fingerprint in current.items():
            stored = manifest.queries.get(query_id)
            if stored is None:
                log.warning(
                    "No checkpointed state for query; starting it empty",
                    extra={"query_id": query_id, "generation": manifest.generation},
                )
                states[query_id] = {}
                continue
            if stored != fingerprint:
                raise CheckpointCorruptError(
                    f"Query '{query_id}' definition changed since generation {name}; "
                    "its stored state cannot be reused"
                )
            relative = f"{STATE_DIR}/{query_id}.json"
            try:
                payload = json.loads(blobs[relative])
                states[query_id] = partition_from_payload(
                    payload["entries"], self.queries.key_coercers(query_id)
                )
            except (
                KeyError,
                TypeError,
                ValueError,
                InvalidOperation,
                SchemaValidationError,
            ) as exc:
                raise CheckpointCorruptError(f"Invalid state for query '{query_id}' in {name}: {exc}") from exc
        return states


__all__ = ["Checkpoint", "CheckpointManager", "CheckpointManifest", "FORMAT_VERSION", "LATEST_POINTER"]
