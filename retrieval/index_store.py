"""
In-memory vector index store.

Owns the loaded snapshot {model, dim, docs, vectors} produced by the offline
index builder (see ingest/). A snapshot is immutable: reload() builds a new
one and swaps the single reference, so a request that captured the old
snapshot keeps a consistent view until it finishes.
"""
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from pydantic import BaseModel, Field, ValidationError, model_validator

from rag_api.logging_config import get_logger
from retrieval.errors import IndexInvalid, IndexNotFound
from retrieval.models import IndexedDocument

logger = get_logger(__name__)


class ArtifactDoc(BaseModel):
    text: str
    metadata: dict = Field(default_factory=dict)


class IndexArtifact(BaseModel):
    """Schema of the persisted index.json artifact."""
    model: str
    created_at: str | None = Field(default=None, alias="createdAt")
    dim: int = Field(gt=0)
    docs: list[ArtifactDoc]
    vectors: list[list[float]]

    @model_validator(mode="after")
    def _check_shape(self) -> "IndexArtifact":
        if len(self.vectors) != len(self.docs):
            raise ValueError(
                f"vectors ({len(self.vectors)}) and docs ({len(self.docs)}) differ in length"
            )
        for i, vec in enumerate(self.vectors):
            if len(vec) != self.dim:
                raise ValueError(f"vector {i} has length {len(vec)}, expected dim={self.dim}")
            if not all(math.isfinite(x) for x in vec):
                raise ValueError(f"vector {i} contains a non-finite value")
        return self


@dataclass(frozen=True, eq=False)
class VectorIndex:
    """A loaded, read-only index snapshot."""
    model: str
    dim: int
    created_at: str | None
    docs: tuple[IndexedDocument, ...]
    vectors: np.ndarray  # shape (len(docs), dim), float32, read-only
    path: str

    def stats(self) -> dict:
        return {
            "model": self.model,
            "dim": self.dim,
            "doc_count": len(self.docs),
            "vector_count": int(self.vectors.shape[0]),
            "created_at": self.created_at,
            "path": self.path,
        }


class IndexStore:
    """
    Lazily loads the index artifact and serves the current snapshot.

    Readers never take a lock: they read one reference. The lock only
    serializes loaders so concurrent first requests trigger a single load.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._snapshot: VectorIndex | None = None
        self._load_lock = threading.Lock()

    def _read(self) -> VectorIndex:
        """Read and validate the artifact into a new snapshot (not installed)."""
        if not self.path.exists():
            raise IndexNotFound(str(self.path))

        started = time.perf_counter()
        try:
            artifact = IndexArtifact.model_validate_json(self.path.read_bytes())
        except ValidationError as e:
            raise IndexInvalid(str(self.path), f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}") from e

        matrix = np.asarray(artifact.vectors, dtype=np.float32).reshape(len(artifact.docs), artifact.dim)
        matrix.setflags(write=False)

        snapshot = VectorIndex(
            model=artifact.model,
            dim=artifact.dim,
            created_at=artifact.created_at,
            docs=tuple(IndexedDocument(text=d.text, metadata=dict(d.metadata)) for d in artifact.docs),
            vectors=matrix,
            path=str(self.path),
        )

        logger.info(
            f"index_loaded | path={self.path} | model={snapshot.model} | dim={snapshot.dim} | "
            f"docs={len(snapshot.docs)} | ms={int((time.perf_counter() - started) * 1000)}"
        )
        return snapshot

    def load(self) -> VectorIndex:
        """Read the artifact and install it as the current snapshot."""
        with self._load_lock:
            snapshot = self._read()
            self._snapshot = snapshot
            return snapshot

    def ensure(self) -> VectorIndex:
        """Return the current snapshot, loading it once if needed."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot

        with self._load_lock:
            # Another caller may have loaded while we waited
            if self._snapshot is None:
                self._snapshot = self._read()
            return self._snapshot

    def reload(self) -> VectorIndex:
        """
        Force a fresh load and swap the snapshot reference.

        If reading fails, the error propagates and the previously installed
        snapshot stays in service.
        """
        previous = self._snapshot
        snapshot = self.load()
        logger.info(
            f"index_reloaded | previous_docs={len(previous.docs) if previous else 0} | "
            f"docs={len(snapshot.docs)}"
        )
        return snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def stats(self) -> dict:
        """Snapshot metadata. Loads lazily only when nothing is loaded yet."""
        return self.ensure().stats()
