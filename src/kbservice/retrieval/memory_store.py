"""
In-memory reference vector store.

Keeps (chunk, vector) pairs in a dict keyed by an increasing integer id and
answers queries by exact brute-force search. Intended for tests and small
deployments; everything is lost when the process exits.
"""

import copy
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from kbservice.retrieval.locks import ReadWriteLock
from kbservice.retrieval.models import Chunk, DistanceMetric, Filter, ScoredChunk
from kbservice.retrieval.vectorstore import (
    matches_filter,
    parse_metric,
    raw_distance,
    score_from_distance,
    validate_query,
    validate_vectors,
    version_matches,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """
    Brute-force vector store guarded by a reader/writer lock.

    Searches and existence checks run concurrently with each other; adds and
    deletes are exclusive. ``transaction()`` holds the write lock for its
    whole body and restores the previous contents if the body raises.

    Example:
        >>> store = InMemoryStore(dimension=3)
        >>> store.add_documents([Chunk("hello")], [[1.0, 0.0, 0.0]])
        >>> store.similarity_search([1.0, 0.0, 0.0], limit=1)[0].score
        1.0
    """

    def __init__(
        self,
        dimension: int,
        distance: "DistanceMetric | str" = DistanceMetric.COSINE,
        name: str = "memory",
    ) -> None:
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self.dimension = dimension
        self.distance = parse_metric(distance)
        self.name = name
        self._lock = ReadWriteLock()
        self._records: dict[int, tuple[Chunk, NDArray[np.float32]]] = {}
        self._next_id = 0

    @property
    def size(self) -> int:
        """Number of stored chunks."""
        with self._lock.read_locked():
            return len(self._records)

    def init_db(self, force_recreate: bool = False) -> None:
        if force_recreate:
            with self._lock.write_locked():
                self._records.clear()
                self._next_id = 0

    def add_documents(self, chunks: Sequence[Chunk], vectors: Any) -> None:
        matrix = validate_vectors(chunks, vectors, self.dimension, self.name)
        with self._lock.write_locked():
            for chunk, vector in zip(chunks, matrix):
                stored = Chunk(content=chunk.content, metadata=copy.deepcopy(chunk.metadata))
                self._records[self._next_id] = (stored, vector.copy())
                self._next_id += 1

    def similarity_search(
        self, vector: Any, limit: int, filter: Optional[Filter] = None
    ) -> list[ScoredChunk]:
        query = validate_query(vector, self.dimension, self.name)
        if limit <= 0:
            return []

        with self._lock.read_locked():
            candidates = [
                record for record in self._records.values()
                if matches_filter(record[0].metadata, filter)
            ]
            if not candidates:
                return []

            matrix = np.vstack([vec for _, vec in candidates])
            distances = raw_distance(self.distance, query, matrix)
            # Stable sort keeps insertion order among equal distances.
            order = np.argsort(distances, kind="stable")[:limit]

            return [
                ScoredChunk(
                    content=candidates[i][0].content,
                    metadata=copy.deepcopy(candidates[i][0].metadata),
                    score=score_from_distance(self.distance, float(distances[i])),
                )
                for i in order
            ]

    def delete(self, filter: Filter) -> None:
        with self._lock.write_locked():
            doomed = [
                record_id for record_id, (chunk, _) in self._records.items()
                if matches_filter(chunk.metadata, filter)
            ]
            for record_id in doomed:
                del self._records[record_id]
        logger.debug(f"Deleted {len(doomed)} chunks from {self.name}")

    def document_exists(self, documents: Sequence[Chunk]) -> list[bool]:
        with self._lock.read_locked():
            stored = [chunk.metadata for chunk, _ in self._records.values()]
            return [
                any(version_matches(metadata, doc.metadata) for metadata in stored)
                for doc in documents
            ]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run several mutations atomically with respect to other threads."""
        with self._lock.write_locked():
            snapshot = dict(self._records)
            next_id = self._next_id
            try:
                yield
            except BaseException:
                self._records = snapshot
                self._next_id = next_id
                raise
