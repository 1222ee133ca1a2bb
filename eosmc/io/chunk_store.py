"""Append-only chunk storage for long-running samplers.

Samples are persisted in chunks keyed by ``(run_id, index, chunk)``, where
``run_id`` names the phase (``"prerun"``, ``"main"``, ``"pmc"``), ``index``
is the chain or PMC step and ``chunk`` counts the chunks of that chain.
Each chunk carries the state needed to continue the chain exactly where it
ended, which is what makes resuming possible.

Readers never observe partial chunks: an HDF5 chunk is written under a
temporary name, checksummed and flagged complete, and only then moved to its
final name. Write-once records hold denormalised results such as the final
PMC mixture.

Layout of an HDF5 store::

    /<run_id>/<index:04d>/<chunk:06d>/points          (n, dim)
                                     /log_posteriors  (n,)
                                     /weights         (n,)
                                     attrs: state, checksum, complete
    /records/<name>/<dataset>                         arrays
                   attrs: <key> (JSON)                everything else
"""

from __future__ import annotations

import copy
import hashlib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import h5py
import numpy as np

from eosmc._version import __version__
from eosmc.io import json_utils
from eosmc.sampling.exceptions import StorageError
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

_TMP_PREFIX = ".tmp-"
_RECORDS = "records"


@dataclass
class SampleChunk:
    """Fixed-size batch of ``(point, weight, log_posterior)`` records."""

    points: np.ndarray
    log_posteriors: np.ndarray
    weights: np.ndarray | None = None
    state: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.points = np.atleast_2d(np.asarray(self.points, dtype=float))
        self.log_posteriors = np.asarray(self.log_posteriors, dtype=float).reshape(-1)
        if self.weights is None:
            self.weights = np.ones(len(self.log_posteriors))
        self.weights = np.asarray(self.weights, dtype=float).reshape(-1)
        n = len(self.log_posteriors)
        if self.points.shape[0] != n or self.weights.shape[0] != n:
            raise ValueError(
                f"Chunk columns differ in length: points {self.points.shape[0]}, "
                f"log_posteriors {n}, weights {self.weights.shape[0]}"
            )

    def __len__(self) -> int:
        return len(self.log_posteriors)

    def checksum(self) -> str:
        digest = hashlib.sha256()
        digest.update(np.ascontiguousarray(self.points).tobytes())
        digest.update(np.ascontiguousarray(self.log_posteriors).tobytes())
        digest.update(np.ascontiguousarray(self.weights).tobytes())
        digest.update(json_utils.dumps(self.state).encode("utf-8"))
        return digest.hexdigest()


class ChunkStore(ABC):
    """Abstract chunked sample store.

    Implementations serialise writes with a lock, so several chains may
    share one store.
    """

    def __init__(self):
        self._lock = threading.RLock()

    @property
    def location(self) -> str:
        return "<memory>"

    @abstractmethod
    def list_chunks(self, run_id: str, index: int) -> list[int]:
        """Numbers of the complete chunks of ``(run_id, index)``, ascending."""

    @abstractmethod
    def read_chunk(self, run_id: str, index: int, chunk: int) -> SampleChunk:
        """Read one complete chunk."""

    @abstractmethod
    def _write_chunk(self, run_id: str, index: int, chunk: int, data: SampleChunk) -> None:
        """Persist ``data`` atomically under its final key."""

    @abstractmethod
    def discard_incomplete(self, run_id: str, index: int | None = None) -> int:
        """Remove partially written chunks; returns how many were removed.

        Without ``index`` every index of ``run_id`` is cleaned.
        """

    @abstractmethod
    def indices(self, run_id: str) -> list[int]:
        """Chain or step indices with at least one complete chunk."""

    @abstractmethod
    def has_record(self, name: str) -> bool:
        """Whether the write-once record ``name`` exists."""

    @abstractmethod
    def _write_record(self, name: str, data: dict[str, Any]) -> None:
        """Persist record ``name``."""

    @abstractmethod
    def read_record(self, name: str) -> dict[str, Any]:
        """Read record ``name``."""

    def append_chunk(self, run_id: str, index: int, data: SampleChunk) -> int:
        """Append ``data`` as the next chunk of ``(run_id, index)``.

        Returns
        -------
        int
            Number of the new chunk.

        Raises
        ------
        StorageError
            If the write fails.
        """
        with self._lock:
            chunk = len(self.list_chunks(run_id, index))
            self._write_chunk(run_id, index, chunk, data)
        logger.debug(f"Stored chunk {chunk} of {run_id}/{index} ({len(data)} samples)")
        return chunk

    def read_chunks(self, run_id: str, index: int) -> list[SampleChunk]:
        return [self.read_chunk(run_id, index, c) for c in self.list_chunks(run_id, index)]

    def last_chunk(self, run_id: str, index: int) -> SampleChunk | None:
        chunks = self.list_chunks(run_id, index)
        if not chunks:
            return None
        return self.read_chunk(run_id, index, chunks[-1])

    def read_samples(self, run_id: str, index: int) -> SampleChunk:
        """All complete chunks of ``(run_id, index)`` concatenated."""
        chunks = self.read_chunks(run_id, index)
        if not chunks:
            raise StorageError(
                f"No chunks stored for {run_id}/{index}",
                path=self.location,
                operation="read",
            )
        return SampleChunk(
            points=np.concatenate([c.points for c in chunks]),
            log_posteriors=np.concatenate([c.log_posteriors for c in chunks]),
            weights=np.concatenate([c.weights for c in chunks]),
            state=chunks[-1].state,
        )

    def write_record(self, name: str, data: dict[str, Any]) -> None:
        """Write record ``name`` once.

        Raises
        ------
        StorageError
            If the record already exists or the write fails.
        """
        with self._lock:
            if self.has_record(name):
                raise StorageError(
                    f"Record '{name}' already exists and is write-once",
                    path=self.location,
                    operation="write_record",
                )
            self._write_record(name, data)
        logger.debug(f"Stored record '{name}'")

    def close(self) -> None:
        """Release resources; the base implementation holds none."""


class MemoryChunkStore(ChunkStore):
    """In-process store, used when no output file is configured."""

    def __init__(self):
        super().__init__()
        self._chunks: dict[tuple[str, int], list[SampleChunk]] = {}
        self._records: dict[str, dict[str, Any]] = {}

    def list_chunks(self, run_id: str, index: int) -> list[int]:
        return list(range(len(self._chunks.get((run_id, index), []))))

    def read_chunk(self, run_id: str, index: int, chunk: int) -> SampleChunk:
        try:
            return copy.deepcopy(self._chunks[(run_id, index)][chunk])
        except (KeyError, IndexError) as e:
            raise StorageError(
                f"Chunk {chunk} of {run_id}/{index} does not exist",
                operation="read",
                io_error=e,
            ) from e

    def _write_chunk(self, run_id: str, index: int, chunk: int, data: SampleChunk) -> None:
        self._chunks.setdefault((run_id, index), []).append(copy.deepcopy(data))

    def discard_incomplete(self, run_id: str, index: int | None = None) -> int:
        return 0

    def indices(self, run_id: str) -> list[int]:
        return sorted(i for r, i in self._chunks if r == run_id)

    def has_record(self, name: str) -> bool:
        return name in self._records

    def _write_record(self, name: str, data: dict[str, Any]) -> None:
        self._records[name] = copy.deepcopy(data)

    def read_record(self, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self._records[name])
        except KeyError as e:
            raise StorageError(
                f"Record '{name}' does not exist", operation="read_record", io_error=e
            ) from e


class HDF5ChunkStore(ChunkStore):
    """Chunk store in a single HDF5 file.

    Parameters
    ----------
    path : str or Path
        Output file; created on first write.
    enable_compression : bool
        Use gzip compression for chunk datasets (default: True).
    """

    def __init__(self, path: str | Path, enable_compression: bool = True):
        super().__init__()
        self.path = Path(path)
        self.enable_compression = enable_compression

    @property
    def location(self) -> str:
        return str(self.path)

    @staticmethod
    def _group_name(run_id: str, index: int) -> str:
        return f"/{run_id}/{index:04d}"

    @staticmethod
    def _is_complete(name: str, chunk) -> bool:
        return not name.startswith(_TMP_PREFIX) and bool(chunk.attrs.get("complete", False))

    def _open(self, mode: str, operation: str) -> h5py.File:
        try:
            if mode == "a":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            return h5py.File(self.path, mode)
        except OSError as e:
            raise StorageError(
                f"Cannot open chunk store: {e}",
                path=str(self.path),
                operation=operation,
                io_error=e,
            ) from e

    def list_chunks(self, run_id: str, index: int) -> list[int]:
        if not self.path.exists():
            return []
        with self._lock, self._open("r", "list") as f:
            group = f.get(self._group_name(run_id, index))
            if group is None:
                return []
            return sorted(
                int(name)
                for name, chunk in group.items()
                if self._is_complete(name, chunk)
            )

    def read_chunk(self, run_id: str, index: int, chunk: int) -> SampleChunk:
        name = f"{self._group_name(run_id, index)}/{chunk:06d}"
        if not self.path.exists():
            raise StorageError(
                f"Chunk store not found: {self.path}", path=str(self.path), operation="read"
            )
        with self._lock, self._open("r", "read") as f:
            try:
                group = f[name]
                data = SampleChunk(
                    points=group["points"][:],
                    log_posteriors=group["log_posteriors"][:],
                    weights=group["weights"][:],
                    state=json_utils.loads(group.attrs["state"]),
                )
                stored_checksum = group.attrs["checksum"]
            except (KeyError, ValueError) as e:
                raise StorageError(
                    f"Failed to read chunk {name}: {e}",
                    path=str(self.path),
                    operation="read",
                    io_error=e,
                ) from e

        if data.checksum() != stored_checksum:
            raise StorageError(
                f"Chunk checksum mismatch for {name}. File may be corrupted.",
                path=str(self.path),
                operation="read",
                error_context={"chunk": name},
            )
        return data

    def _write_chunk(self, run_id: str, index: int, chunk: int, data: SampleChunk) -> None:
        parent = self._group_name(run_id, index)
        final_name = f"{parent}/{chunk:06d}"
        tmp_name = f"{parent}/{_TMP_PREFIX}{chunk:06d}"
        options = {"compression": "gzip", "compression_opts": 4} if self.enable_compression else {}
        try:
            with self._lock, self._open("a", "append") as f:
                if final_name in f:
                    raise StorageError(
                        f"Chunk {final_name} already exists",
                        path=str(self.path),
                        operation="append",
                    )
                if tmp_name in f:
                    del f[tmp_name]
                group = f.create_group(tmp_name)
                group.create_dataset("points", data=data.points, **options)
                group.create_dataset("log_posteriors", data=data.log_posteriors, **options)
                group.create_dataset("weights", data=data.weights, **options)
                group.attrs["state"] = json_utils.dumps(data.state)
                group.attrs["checksum"] = data.checksum()
                group.attrs["version"] = __version__
                group.attrs["complete"] = True
                f.flush()
                f.move(tmp_name, final_name)
        except (OSError, ValueError, TypeError) as e:
            raise StorageError(
                f"Failed to append chunk {final_name}: {e}",
                path=str(self.path),
                operation="append",
                io_error=e,
            ) from e

    def discard_incomplete(self, run_id: str, index: int | None = None) -> int:
        if not self.path.exists():
            return 0
        removed = 0
        with self._lock, self._open("a", "discard") as f:
            run = f.get(f"/{run_id}")
            if run is None:
                return 0
            names = list(run) if index is None else [f"{index:04d}"]
            for group_name in names:
                group = run.get(group_name)
                if group is None:
                    continue
                stale = [
                    name for name, chunk in group.items() if not self._is_complete(name, chunk)
                ]
                for name in stale:
                    del group[name]
                if stale:
                    logger.warning(
                        f"Discarded {len(stale)} incomplete chunk(s) of {run_id}/{group_name}"
                    )
                removed += len(stale)
                if index is None and len(group) == 0:
                    del run[group_name]
        return removed

    def indices(self, run_id: str) -> list[int]:
        if not self.path.exists():
            return []
        with self._lock, self._open("r", "list") as f:
            group = f.get(f"/{run_id}")
            if group is None:
                return []
            return sorted(
                int(name)
                for name, chunks in group.items()
                if any(self._is_complete(n, c) for n, c in chunks.items())
            )

    def has_record(self, name: str) -> bool:
        if not self.path.exists():
            return False
        with self._lock, self._open("r", "list") as f:
            return f"/{_RECORDS}/{name}" in f

    def _write_record(self, name: str, data: dict[str, Any]) -> None:
        group_name = f"/{_RECORDS}/{name}"
        parent, _, leaf = group_name.rpartition("/")
        tmp_name = f"{parent}/{_TMP_PREFIX}{leaf}"
        try:
            with self._lock, self._open("a", "write_record") as f:
                if tmp_name in f:
                    del f[tmp_name]
                group = f.create_group(tmp_name)
                for key, value in data.items():
                    if isinstance(value, np.ndarray) and value.dtype.kind in "fiub":
                        group.create_dataset(key, data=value)
                    else:
                        group.attrs[key] = json_utils.dumps(value)
                f.flush()
                f.move(tmp_name, group_name)
        except (OSError, ValueError, TypeError) as e:
            raise StorageError(
                f"Failed to write record '{name}': {e}",
                path=str(self.path),
                operation="write_record",
                io_error=e,
            ) from e

    def read_record(self, name: str) -> dict[str, Any]:
        group_name = f"/{_RECORDS}/{name}"
        if not self.path.exists():
            raise StorageError(
                f"Chunk store not found: {self.path}", path=str(self.path), operation="read_record"
            )
        with self._lock, self._open("r", "read_record") as f:
            if group_name not in f:
                raise StorageError(
                    f"Record '{name}' does not exist",
                    path=str(self.path),
                    operation="read_record",
                )
            group = f[group_name]
            result: dict[str, Any] = {key: group[key][()] for key in group}
            for key, value in group.attrs.items():
                result[key] = json_utils.loads(value)
        return result


def open_chunk_store(path: str | Path | None) -> ChunkStore:
    """HDF5 store at ``path``, or an in-memory store for ``None``."""
    if path is None:
        return MemoryChunkStore()
    return HDF5ChunkStore(path)
