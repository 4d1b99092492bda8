"""
Per-book nearest-neighbour index addressed by insertion ordinal.

The native structure only knows ordinals; this module owns the
ordinal -> chunk id mapping and keeps the two in lock-step.
"""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Protocol

import faiss
import numpy as np

from .errors import DimensionMismatch, DuplicateChunk, IndexCorrupt
from .observability import get_logger

logger = get_logger(__name__)

SIDECAR_FORMAT_VERSION = 1
# Extra candidates fetched so ties at the k-th distance can be ordered by ordinal.
_TIE_BREAK_SLACK = 8


class NearestNeighborBackend(Protocol):
    @property
    def count(self) -> int:
        ...

    def add(self, vector: np.ndarray):
        ...

    def search(self, vector: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        ...

    def save(self, path: Path):
        ...


class FaissFlatBackend:
    """Exact squared-L2 search over a faiss ``IndexFlatL2``."""

    def __init__(self, dimension: int, index=None):
        self._index = index if index is not None else faiss.IndexFlatL2(int(dimension))

    @classmethod
    def load(cls, path: Path) -> "FaissFlatBackend":
        index = faiss.read_index(str(path))
        return cls(index.d, index=index)

    @property
    def dimension(self) -> int:
        return int(self._index.d)

    @property
    def count(self) -> int:
        return int(self._index.ntotal)

    def add(self, vector: np.ndarray):
        self._index.add(vector.reshape(1, -1))

    def search(self, vector: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        distances, ordinals = self._index.search(vector.reshape(1, -1), int(k))
        return distances[0], ordinals[0]

    def save(self, path: Path):
        faiss.write_index(self._index, str(path))


def _sidecar_path(path: Path) -> Path:
    return path.with_name(path.name + ".json")


def _as_vector(embedding) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(embedding, dtype=np.float32).reshape(-1))


class VectorIndex:
    """Append-only embedding index for one book."""

    def __init__(self, dimension: int, backend: NearestNeighborBackend | None = None):
        if int(dimension) <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = int(dimension)
        self._backend = backend if backend is not None else FaissFlatBackend(self.dimension)
        self._chunk_ids: list[str] = []
        self._ordinals: dict[str, int] = {}
        self._corrupt = False
        self._lock = threading.RLock()

    @classmethod
    def create(cls, dimension: int) -> "VectorIndex":
        return cls(dimension)

    def size(self) -> int:
        with self._lock:
            return len(self._chunk_ids)

    def __len__(self) -> int:
        return self.size()

    def contains(self, chunk_id: str) -> bool:
        with self._lock:
            return chunk_id in self._ordinals

    def chunk_ids(self) -> list[str]:
        """Chunk ids in ordinal order."""
        with self._lock:
            return list(self._chunk_ids)

    def ordinal_of(self, chunk_id: str) -> int | None:
        with self._lock:
            return self._ordinals.get(chunk_id)

    def add(self, chunk_id: str, embedding) -> int:
        vector = _as_vector(embedding)
        with self._lock:
            if self._corrupt:
                raise IndexCorrupt("index rejected writes after a native desync; re-ingest the book")
            if vector.shape[0] != self.dimension:
                raise DimensionMismatch(self.dimension, int(vector.shape[0]))
            if chunk_id in self._ordinals:
                raise DuplicateChunk(chunk_id)

            ordinal = len(self._chunk_ids)
            before = self._backend.count
            self._backend.add(vector)
            after = self._backend.count
            if before != ordinal or after != ordinal + 1:
                self._corrupt = True
                logger.error(
                    "vector_index_desync",
                    chunk_id=chunk_id,
                    expected=ordinal + 1,
                    native_count=after,
                )
                raise IndexCorrupt(
                    f"native index holds {after} vectors but mapping expects {ordinal + 1}"
                )
            self._chunk_ids.append(chunk_id)
            self._ordinals[chunk_id] = ordinal
            return ordinal

    def query(self, embedding, k: int) -> list[tuple[str, float]]:
        """Nearest chunks by ascending distance, equal distances ordered by ordinal."""
        vector = _as_vector(embedding)
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(vector.shape[0]))
        with self._lock:
            total = len(self._chunk_ids)
            limit = min(max(0, int(k)), total)
            if limit == 0:
                return []
            fetch = min(total, limit + _TIE_BREAK_SLACK)
            distances, ordinals = self._backend.search(vector, fetch)
            candidates = [
                (float(distance), int(ordinal))
                for distance, ordinal in zip(distances, ordinals)
                if 0 <= int(ordinal) < total
            ]
            candidates.sort()
            return [(self._chunk_ids[ordinal], distance) for distance, ordinal in candidates[:limit]]

    def persist(self, path: str | Path) -> Path:
        """Writes native bytes to ``path`` and the ordinal mapping beside it."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        sidecar = _sidecar_path(target)
        with self._lock:
            if self._corrupt:
                raise IndexCorrupt("refusing to persist a desynchronized index")
            payload = {
                "format_version": SIDECAR_FORMAT_VERSION,
                "dimension": self.dimension,
                "count": len(self._chunk_ids),
                "chunk_ids": list(self._chunk_ids),
            }
            native_tmp = target.with_name(target.name + ".tmp")
            sidecar_tmp = sidecar.with_name(sidecar.name + ".tmp")
            self._backend.save(native_tmp)
            with open(sidecar_tmp, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=True)
            os.replace(native_tmp, target)
            os.replace(sidecar_tmp, sidecar)
        logger.info("vector_index_persisted", path=str(target), count=payload["count"])
        return target

    @classmethod
    def restore(cls, path: str | Path) -> "VectorIndex":
        target = Path(path)
        sidecar = _sidecar_path(target)
        try:
            with open(sidecar, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
            backend = FaissFlatBackend.load(target)
        except (OSError, ValueError, RuntimeError) as exc:
            raise IndexCorrupt(f"cannot read index at {target}: {exc}") from exc
        if isinstance(payload, dict) and int(payload.get("dimension") or 0) != backend.dimension:
            raise IndexCorrupt(f"sidecar dimension does not match native index at {target}")
        return cls._from_payload(payload, backend, target)

    @classmethod
    def _from_payload(cls, payload: dict, backend: NearestNeighborBackend, target: Path) -> "VectorIndex":
        chunk_ids = payload.get("chunk_ids") if isinstance(payload, dict) else None
        if not isinstance(chunk_ids, list):
            raise IndexCorrupt(f"sidecar for {target} has no chunk id mapping")
        dimension = int(payload.get("dimension") or 0)
        if len(chunk_ids) != backend.count or int(payload.get("count", -1)) != backend.count:
            raise IndexCorrupt(
                f"sidecar lists {len(chunk_ids)} chunks but native index holds {backend.count}"
            )
        if len(set(chunk_ids)) != len(chunk_ids):
            raise IndexCorrupt(f"sidecar for {target} repeats chunk ids")

        index = cls(dimension, backend=backend)
        index._chunk_ids = [str(chunk_id) for chunk_id in chunk_ids]
        index._ordinals = {chunk_id: ordinal for ordinal, chunk_id in enumerate(index._chunk_ids)}
        logger.info("vector_index_restored", path=str(target), count=len(chunk_ids))
        return index
