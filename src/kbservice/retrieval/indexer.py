"""
FAISS-backed vector store.

Provides exact similarity search over chunk embeddings with metadata stored
alongside the vectors, persistence to disk and in-process transactions.
"""

import copy
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import faiss
import numpy as np
from numpy.typing import NDArray

from kbservice.config import settings
from kbservice.errors import ConfigurationError, NotFoundError
from kbservice.retrieval.locks import ReadWriteLock
from kbservice.retrieval.models import Chunk, DistanceMetric, Filter, ScoredChunk
from kbservice.retrieval.vectorstore import (
    matches_filter,
    parse_metric,
    score_from_distance,
    validate_query,
    validate_vectors,
    version_matches,
)

logger = logging.getLogger(__name__)


@dataclass
class _UndoLog:
    """Rows touched inside a transaction, enough to reverse it."""

    next_id: int
    removed: list[tuple[int, NDArray[np.float32], Chunk]] = field(default_factory=list)
    added: list[int] = field(default_factory=list)


class FAISSStore:
    """
    FAISS-based vector store.

    Uses an IndexIDMap2 so chunks can be deleted and reconstructed by id:
        - cosine: IndexFlatIP over L2-normalized vectors
        - inner_product: IndexFlatIP over raw vectors
        - euclidean: IndexFlatL2 (squared distances, rooted before scoring)

    Example:
        >>> store = FAISSStore(dimension=384, path="data/index/faiss")
        >>> store.init_db()
        >>> store.add_documents(chunks, embeddings)
        >>> results = store.similarity_search(query_embedding, limit=10)
        >>> store.save()
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        distance: "DistanceMetric | str" = DistanceMetric.COSINE,
        path: "str | Path | None" = None,
        name: str = "faiss",
    ) -> None:
        """
        Initialize the store.

        Args:
            dimension: Vector dimension (default from settings)
            distance: Distance metric used for ranking
            path: Base path for persisted files (``.index`` and ``.json``)
            name: Store name used in error messages
        """
        self.dimension = dimension or settings.embedding_dimension
        self.distance = parse_metric(distance)
        self.path = Path(path) if path is not None else None
        self.name = name
        self._lock = ReadWriteLock()
        self._index: Optional[faiss.IndexIDMap2] = None
        self._chunks: dict[int, Chunk] = {}
        self._next_id = 0
        self._undo_log: Optional[_UndoLog] = None

    @property
    def is_built(self) -> bool:
        """Check if the index has been initialized."""
        return self._index is not None

    @property
    def size(self) -> int:
        """Number of vectors in the index."""
        if self._index is None:
            return 0
        return int(self._index.ntotal)

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------

    def init_db(self, force_recreate: bool = False) -> None:
        """
        Prepare the index.

        Loads a persisted index when one exists at ``path``; otherwise starts
        empty. ``force_recreate`` discards both the in-memory and on-disk data.
        """
        with self._lock.write_locked():
            if force_recreate:
                self._reset()
                if self.path is not None:
                    for suffix in (".index", ".json"):
                        self.path.with_suffix(suffix).unlink(missing_ok=True)
                logger.info(f"Recreated FAISS index {self.name} (dimension {self.dimension})")
                return

            if self.is_built:
                return

            if self.path is not None and self.path.with_suffix(".index").exists():
                self.load()
            else:
                self._reset()

    def add_documents(self, chunks: Sequence[Chunk], vectors: Any) -> None:
        """
        Add chunks and their vectors.

        Raises:
            ValueError: If chunks and vectors have different lengths
            DimensionMismatchError: If a vector has the wrong dimension
        """
        matrix = validate_vectors(chunks, vectors, self.dimension, self.name)
        if len(matrix) == 0:
            return

        with self._lock.write_locked():
            if self._index is None:
                self._reset()
            assert self._index is not None

            ids = np.arange(self._next_id, self._next_id + len(matrix), dtype=np.int64)
            self._index.add_with_ids(self._prepare(matrix), ids)

            for chunk_id, chunk in zip(ids, chunks):
                self._chunks[int(chunk_id)] = Chunk(
                    content=chunk.content, metadata=copy.deepcopy(chunk.metadata)
                )
            self._next_id += len(matrix)
            if self._undo_log is not None:
                self._undo_log.added.extend(int(chunk_id) for chunk_id in ids)

    def similarity_search(
        self, vector: Any, limit: int, filter: Optional[Filter] = None
    ) -> list[ScoredChunk]:
        """
        Search for similar chunks.

        Args:
            vector: Query vector of shape (dimension,)
            limit: Maximum number of results
            filter: Equality filter over chunk metadata

        Returns:
            Scored chunks sorted by score descending

        Raises:
            NotFoundError: If the index has not been initialized
            DimensionMismatchError: If the query has the wrong dimension
        """
        query = validate_query(vector, self.dimension, self.name)

        with self._lock.read_locked():
            index = self._require_index()
            if self.size == 0 or limit <= 0:
                return []

            allowed: Optional[set[int]] = None
            if filter:
                allowed = {
                    chunk_id for chunk_id, chunk in self._chunks.items()
                    if matches_filter(chunk.metadata, filter)
                }
                if not allowed:
                    return []

            # Flat indexes are exact, so a filtered search scans everything and
            # drops non-matching ids afterwards.
            k = self.size if allowed is not None else min(limit, self.size)
            raw_scores, ids = index.search(self._prepare(query.reshape(1, -1)), k)

            results: list[ScoredChunk] = []
            for raw, chunk_id in zip(raw_scores[0], ids[0]):
                chunk_id = int(chunk_id)
                if chunk_id == -1:
                    continue
                if allowed is not None and chunk_id not in allowed:
                    continue
                chunk = self._chunks[chunk_id]
                results.append(
                    ScoredChunk(
                        content=chunk.content,
                        metadata=copy.deepcopy(chunk.metadata),
                        score=score_from_distance(self.distance, self._to_distance(float(raw))),
                    )
                )
                if len(results) >= limit:
                    break

            return results

    def delete(self, filter: Filter) -> None:
        with self._lock.write_locked():
            index = self._require_index()
            doomed = [
                chunk_id for chunk_id, chunk in self._chunks.items()
                if matches_filter(chunk.metadata, filter)
            ]
            if doomed:
                if self._undo_log is not None:
                    self._undo_log.removed.extend(
                        (chunk_id, index.reconstruct(chunk_id), self._chunks[chunk_id])
                        for chunk_id in doomed
                    )
                index.remove_ids(np.array(doomed, dtype=np.int64))
                for chunk_id in doomed:
                    del self._chunks[chunk_id]
        logger.debug(f"Deleted {len(doomed)} chunks from {self.name}")

    def document_exists(self, documents: Sequence[Chunk]) -> list[bool]:
        with self._lock.read_locked():
            self._require_index()
            stored = [chunk.metadata for chunk in self._chunks.values()]
            return [
                any(version_matches(metadata, doc.metadata) for metadata in stored)
                for doc in documents
            ]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group mutations; on error the touched rows are put back.

        Only rows deleted or added inside the block are recorded, so the cost
        does not depend on the size of the index. A nested transaction joins
        the outer one.
        """
        with self._lock.write_locked():
            self._require_index()
            if self._undo_log is not None:
                yield
                return

            undo_log = _UndoLog(next_id=self._next_id)
            self._undo_log = undo_log
            try:
                yield
            except BaseException:
                self._rollback(undo_log)
                raise
            finally:
                self._undo_log = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: "str | Path | None" = None) -> None:
        """
        Save index and metadata to disk.

        Args:
            path: Base path for index files (default: the store's path, then settings)

        Raises:
            NotFoundError: If the index has not been initialized
        """
        path = Path(path or self.path or settings.faiss_index_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock.read_locked():
            index = self._require_index()
            faiss.write_index(index, str(path.with_suffix(".index")))

            payload = {
                "dimension": self.dimension,
                "distance": self.distance.value,
                "next_id": self._next_id,
                "chunks": [
                    {"id": chunk_id, "content": chunk.content, "metadata": chunk.metadata}
                    for chunk_id, chunk in self._chunks.items()
                ],
            }

        with path.with_suffix(".json").open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False, default=str)

        logger.info(f"Saved {len(payload['chunks'])} chunks to {path}")

    def load(self, path: "str | Path | None" = None) -> None:
        """
        Load index and metadata from disk.

        Raises:
            NotFoundError: If index files don't exist
            ConfigurationError: If the persisted index has a different dimension or metric
        """
        path = Path(path or self.path or settings.faiss_index_path)

        index_file = path.with_suffix(".index")
        if not index_file.exists():
            raise NotFoundError(f"Index file not found: {index_file}")
        metadata_file = path.with_suffix(".json")
        if not metadata_file.exists():
            raise NotFoundError(f"Metadata file not found: {metadata_file}")

        with metadata_file.open(encoding="utf-8") as f:
            payload = json.load(f)

        if payload["dimension"] != self.dimension:
            raise ConfigurationError(
                f"Persisted index has dimension {payload['dimension']}, "
                f"store expects {self.dimension}"
            )
        if payload["distance"] != self.distance.value:
            raise ConfigurationError(
                f"Persisted index uses {payload['distance']} distance, "
                f"store expects {self.distance.value}"
            )

        with self._lock.write_locked():
            self._index = faiss.read_index(str(index_file))
            self._chunks = {
                int(item["id"]): Chunk(content=item["content"], metadata=item["metadata"])
                for item in payload["chunks"]
            }
            self._next_id = int(payload["next_id"])

        logger.info(f"Loaded FAISS index from {path} ({self.size} vectors)")

    @classmethod
    def from_disk(
        cls,
        path: "str | Path",
        dimension: Optional[int] = None,
        distance: "DistanceMetric | str" = DistanceMetric.COSINE,
    ) -> "FAISSStore":
        """Create a store instance from saved files."""
        store = cls(dimension=dimension, distance=distance, path=path)
        store.load()
        return store

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rollback(self, undo_log: _UndoLog) -> None:
        index = self._require_index()

        added = set(undo_log.added)
        if added:
            index.remove_ids(np.array(sorted(added), dtype=np.int64))
            for chunk_id in added:
                self._chunks.pop(chunk_id, None)

        # Rows both added and removed inside the block never existed before it.
        restored = [row for row in undo_log.removed if row[0] not in added]
        if restored:
            ids = np.array([chunk_id for chunk_id, _, _ in restored], dtype=np.int64)
            # Reconstructed vectors are already in index form; no _prepare.
            vectors = np.ascontiguousarray(np.vstack([vec for _, vec, _ in restored]), dtype=np.float32)
            index.add_with_ids(vectors, ids)
            for chunk_id, _, chunk in restored:
                self._chunks[chunk_id] = chunk

        self._next_id = undo_log.next_id
        logger.debug(f"Rolled back {len(added)} added and {len(restored)} removed chunks in {self.name}")

    def _reset(self) -> None:
        if self.distance is DistanceMetric.EUCLIDEAN:
            base = faiss.IndexFlatL2(self.dimension)
        else:
            base = faiss.IndexFlatIP(self.dimension)
        self._index = faiss.IndexIDMap2(base)
        self._chunks = {}
        self._next_id = 0

    def _require_index(self) -> faiss.IndexIDMap2:
        if self._index is None:
            raise NotFoundError(f"FAISS index {self.name} has not been initialized. Call init_db() first.")
        return self._index

    def _prepare(self, matrix: NDArray[np.float32]) -> NDArray[np.float32]:
        matrix = np.ascontiguousarray(matrix, dtype=np.float32)
        if self.distance is DistanceMetric.COSINE:
            return self._normalize_embeddings(matrix)
        return matrix

    def _to_distance(self, raw: float) -> float:
        if self.distance is DistanceMetric.COSINE:
            return 1.0 - raw
        if self.distance is DistanceMetric.INNER_PRODUCT:
            return -raw
        return float(np.sqrt(max(raw, 0.0)))

    def _normalize_embeddings(self, embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
        """
        Normalize embeddings to unit length for cosine similarity.

        Args:
            embeddings: Array of shape (n, dimension)

        Returns:
            Normalized embeddings of same shape
        """
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        # Avoid division by zero
        norms = np.where(norms == 0, 1, norms)
        return np.ascontiguousarray(embeddings / norms, dtype=np.float32)
