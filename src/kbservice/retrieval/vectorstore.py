"""
Vector store contract, scoring and the retrieval façade.

Backends implement the Store protocol and report raw, backend-native
distances converted through ``score_from_distance`` so that, for callers,
a higher score always means a closer match regardless of the metric.

The VectorStore façade composes a Store with an Embedder: it embeds text,
merges default and request filters, runs the search and applies the score
threshold after the backend has ranked and limited the results.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, ContextManager, Mapping, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from numpy.typing import NDArray

from kbservice.errors import BackendError, ConfigurationError, DimensionMismatchError, KBServiceError
from kbservice.retrieval.embeddings import Embedder, EmbeddingPipeline
from kbservice.retrieval.models import (
    LAST_MODIFIED_KEY,
    SOURCE_KEY,
    Chunk,
    DistanceMetric,
    Filter,
    Metadata,
    ScoredChunk,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Store contract
# =============================================================================

class Store(Protocol):
    """
    Operations every vector database adapter implements.

    ``delete`` followed by ``add_documents`` is how a changed source is
    replaced. The two calls are independent: a crash between them leaves the
    source without chunks until the next sync pass. Backends that can make
    the pair atomic should also implement ``TransactionalStore``.
    """

    name: str
    dimension: int
    distance: DistanceMetric

    def init_db(self, force_recreate: bool = False) -> None:
        """Create schema/index if missing; drop and rebuild when forced."""
        ...

    def add_documents(self, chunks: Sequence[Chunk], vectors: Any) -> None:
        """Persist chunks positionally paired with their vectors."""
        ...

    def similarity_search(
        self, vector: Any, limit: int, filter: Optional[Filter] = None
    ) -> list[ScoredChunk]:
        """Return at most ``limit`` chunks, best match first."""
        ...

    def delete(self, filter: Filter) -> None:
        """Remove every chunk whose metadata matches the filter."""
        ...

    def document_exists(self, documents: Sequence[Chunk]) -> list[bool]:
        """Report, per document, whether a chunk with equal source and last_modified exists."""
        ...


@runtime_checkable
class TransactionalStore(Protocol):
    """A store that can group several mutations atomically."""

    def transaction(self) -> ContextManager[None]:
        ...


# =============================================================================
# Scoring
# =============================================================================

def parse_metric(metric: "DistanceMetric | str") -> DistanceMetric:
    """Coerce a metric name into a DistanceMetric."""
    if isinstance(metric, DistanceMetric):
        return metric
    try:
        return DistanceMetric(str(metric).lower())
    except ValueError as e:
        raise ConfigurationError(f"invalid distance metric: {metric}") from e


def raw_distance(
    metric: DistanceMetric, query: NDArray[np.float32], vectors: NDArray[np.float32]
) -> NDArray[np.float64]:
    """
    Compute backend-native distances between a query and stored vectors.

    Smaller is closer for every metric:
        - cosine: 1 - cosine similarity
        - inner_product: negative inner product
        - euclidean: L2 distance

    Args:
        metric: Distance metric
        query: Vector of shape (dimension,)
        vectors: Array of shape (n, dimension)

    Returns:
        Array of shape (n,)
    """
    query = np.asarray(query, dtype=np.float64)
    vectors = np.asarray(vectors, dtype=np.float64)

    if metric is DistanceMetric.COSINE:
        norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
        dots = vectors @ query
        similarity = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)
        return 1.0 - similarity
    if metric is DistanceMetric.INNER_PRODUCT:
        return -(vectors @ query)
    return np.linalg.norm(vectors - query, axis=1)


def score_from_distance(metric: DistanceMetric, distance: float) -> float:
    """
    Turn a raw distance into a similarity where higher is better.

    - cosine: ``1 - distance``
    - inner_product: ``-distance`` (the distance is already the negated product)
    - euclidean: ``1 / (1 + distance)``, in (0, 1] with 1 for an exact match
    """
    if metric is DistanceMetric.COSINE:
        return float(1.0 - distance)
    if metric is DistanceMetric.INNER_PRODUCT:
        return float(-distance)
    return float(1.0 / (1.0 + distance))


# =============================================================================
# Filtering and validation helpers shared by backends
# =============================================================================

def _values_equal(actual: Any, expected: Any) -> bool:
    # bool is an int subclass; keep True from matching 1.
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    return actual == expected


def matches_filter(metadata: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    """
    Check chunk metadata against a conjunction of equality predicates.

    An empty filter matches everything; a key missing from the metadata
    never matches.
    """
    if not filter:
        return True
    for key, expected in filter.items():
        if key not in metadata:
            return False
        if not _values_equal(metadata[key], expected):
            return False
    return True


def version_matches(stored: Mapping[str, Any], candidate: Mapping[str, Any]) -> bool:
    """
    Check whether stored metadata carries the candidate's (source, last_modified).

    A candidate without both keys never matches, so a document with no version
    marker is always treated as changed.
    """
    if SOURCE_KEY not in candidate or LAST_MODIFIED_KEY not in candidate:
        return False
    return matches_filter(
        stored,
        {SOURCE_KEY: candidate[SOURCE_KEY], LAST_MODIFIED_KEY: candidate[LAST_MODIFIED_KEY]},
    )


def validate_vectors(
    chunks: Sequence[Chunk], vectors: Any, dimension: int, store: str
) -> NDArray[np.float32]:
    """
    Check that vectors pair one-to-one with chunks and match the dimension.

    Returns:
        Vectors as a float32 array of shape (len(chunks), dimension)

    Raises:
        ValueError: If the counts differ
        DimensionMismatchError: If any vector has the wrong length
    """
    rows = [np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors]
    if len(rows) != len(chunks):
        raise ValueError(
            f"Chunks and vectors must have same length: "
            f"got {len(chunks)} chunks and {len(rows)} vectors"
        )
    for row in rows:
        if row.shape[0] != dimension:
            raise DimensionMismatchError(dimension, row.shape[0], store=store)
    if not rows:
        return np.empty((0, dimension), dtype=np.float32)
    return np.vstack(rows)


def validate_query(vector: Any, dimension: int, store: str) -> NDArray[np.float32]:
    """Flatten a query vector and check its dimension."""
    query = np.asarray(vector, dtype=np.float32).reshape(-1)
    if query.shape[0] != dimension:
        raise DimensionMismatchError(
            dimension, query.shape[0], store=store, operation="similarity_search"
        )
    return query


# =============================================================================
# Retrieval façade
# =============================================================================

@dataclass
class StoreOptions:
    """
    Options of the retrieval façade.

    Attributes:
        namespace: Logical namespace of the knowledge base
        index_name: Name of the backing index or table
        dimensions: Expected vector dimension (0 = take the store's)
        distance: Distance metric the store was built with
        score_threshold: Minimum score kept after search; <= 0 disables it
        filters: Default equality filters merged into every search
    """

    namespace: str = ""
    index_name: str = ""
    dimensions: int = 0
    distance: DistanceMetric = DistanceMetric.COSINE
    score_threshold: float = 0.0
    filters: Metadata = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> "StoreOptions":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


class VectorStore:
    """
    Retrieval façade combining an Embedder and a Store.

    Example:
        >>> vs = VectorStore(InMemoryStore(dimension=384), HuggingFaceEmbedder())
        >>> vs.add_documents(chunks)
        >>> results = vs.similarity_search("What is RAG?", limit=4)
    """

    def __init__(
        self,
        store: Store,
        embedder: "Embedder | EmbeddingPipeline",
        options: Optional[StoreOptions] = None,
    ) -> None:
        self.store = store
        if isinstance(embedder, EmbeddingPipeline):
            self.embeddings = embedder
        else:
            self.embeddings = EmbeddingPipeline(embedder)
        self.options = options or StoreOptions()

        store_dimension = getattr(store, "dimension", None)
        if self.options.dimensions and store_dimension and self.options.dimensions != store_dimension:
            raise ConfigurationError(
                f"configured dimensions ({self.options.dimensions}) differ from "
                f"store dimension ({store_dimension})"
            )

    @property
    def store_name(self) -> str:
        return getattr(self.store, "name", None) or type(self.store).__name__

    def init_db(self, force_recreate: bool = False) -> None:
        self._call("init_db", self.store.init_db, force_recreate)

    def embed_chunks(self, chunks: Sequence[Chunk]) -> NDArray[np.float32]:
        """Embed chunk contents without writing anything."""
        return self.embeddings.embed_documents([chunk.content for chunk in chunks])

    def add_documents(self, chunks: Sequence[Chunk]) -> None:
        """
        Embed chunks and add them to the store.

        Nothing is written if embedding fails.
        """
        if not chunks:
            return
        vectors = self.embed_chunks(chunks)
        self.add_embedded(chunks, vectors)

    def add_embedded(self, chunks: Sequence[Chunk], vectors: Any) -> None:
        """
        Forward already-embedded chunks to the store.

        Raises:
            ValueError: If chunks and vectors have different lengths
            BackendError: If the store fails
        """
        if len(vectors) != len(chunks):
            raise ValueError(
                f"Chunks and vectors must have same length: "
                f"got {len(chunks)} chunks and {len(vectors)} vectors"
            )
        self._call("add_documents", self.store.add_documents, list(chunks), vectors)
        logger.debug(f"Added {len(chunks)} chunks to {self.store_name}")

    def merge_filters(self, filter: Optional[Filter] = None) -> Metadata:
        """Merge default filters with a request filter; request keys win."""
        merged: Metadata = dict(self.options.filters or {})
        if filter:
            merged.update(filter)
        return merged

    def similarity_search(
        self, query: str, limit: int, filter: Optional[Filter] = None
    ) -> list[ScoredChunk]:
        """
        Search for chunks similar to the query text.

        Args:
            query: Query text
            limit: Maximum number of results requested from the store
            filter: Request-scoped equality filter

        Returns:
            Results sorted by descending score; may be fewer than ``limit``
            when the score threshold discards some

        Raises:
            ValueError: If limit is not positive
            EmptyInputError: If the query is blank
            BackendError: If the embedder or store fails
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        vector = self.embeddings.embed_query(query)
        merged = self.merge_filters(filter)
        results = self._call("similarity_search", self.store.similarity_search, vector, limit, merged)

        threshold = self.options.score_threshold
        if threshold > 0:
            results = [r for r in results if r.score >= threshold]

        return results

    def delete(self, filter: Optional[Filter], allow_wipe: bool = False) -> None:
        """
        Delete chunks matching the filter.

        Raises:
            ValueError: If the filter is empty and ``allow_wipe`` is False
        """
        if not filter and not allow_wipe:
            raise ValueError("refusing to delete with an empty filter; pass allow_wipe=True to wipe the store")
        self._call("delete", self.store.delete, dict(filter or {}))

    def document_exists(self, documents: Sequence[Chunk]) -> list[bool]:
        return self._call("document_exists", self.store.document_exists, list(documents))

    def _call(self, operation: str, func, *args):
        try:
            return func(*args)
        except KBServiceError:
            raise
        except Exception as e:
            raise BackendError(str(e), operation=operation, target=self.store_name) from e
