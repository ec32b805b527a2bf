"""
Knowledge base: the top-level object tying the pieces together.

A KnowledgeBase owns an embedder, a vector store, a data source and a
splitter. It builds the VectorStore façade from its options and exposes
store initialization, synchronization and search.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Sequence

from kbservice.retrieval.chunker import Splitter
from kbservice.retrieval.data_ingestion import DataSource, LoadOptions
from kbservice.retrieval.embeddings import Embedder
from kbservice.retrieval.models import Chunk, DistanceMetric, Filter, Metadata, ScoredChunk
from kbservice.retrieval.sync import SyncEngine, SyncReport
from kbservice.retrieval.vectorstore import Store, StoreOptions, VectorStore, parse_metric

logger = logging.getLogger(__name__)


@dataclass
class KBOptions:
    """
    Knowledge base configuration.

    Attributes:
        namespace: Logical namespace
        score_threshold: Minimum score kept after search; <= 0 disables it
        filters: Default equality filters applied to every search
        index_name: Name of the backing index or table
        dimensions: Expected vector dimension (0 = take the store's)
        distance: Distance metric
        top_k: Number of results when a search gives no limit
    """

    namespace: str = ""
    score_threshold: float = 0.0
    filters: Metadata = field(default_factory=dict)
    index_name: str = ""
    dimensions: int = 0
    distance: DistanceMetric = DistanceMetric.COSINE
    top_k: int = 4

    def __post_init__(self) -> None:
        self.distance = parse_metric(self.distance)

    def store_options(self) -> StoreOptions:
        return StoreOptions(
            namespace=self.namespace,
            index_name=self.index_name,
            dimensions=self.dimensions,
            distance=self.distance,
            score_threshold=self.score_threshold,
            filters=dict(self.filters),
        )


class KnowledgeBase:
    """
    Retrieval knowledge base over a single document source.

    Example:
        >>> kb = KnowledgeBase(embedder, store, FileSystemSource("data/raw"), splitter)
        >>> kb.init_store()
        >>> kb.sync()
        >>> kb.similarity_search("What is a vector store?")
    """

    def __init__(
        self,
        embedder: Embedder,
        store: Store,
        datasource: DataSource,
        splitter: Splitter,
        options: Optional[KBOptions] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.datasource = datasource
        self.splitter = splitter
        self._options = options or KBOptions()
        self._build()

    def _build(self) -> None:
        self.vector_store, self.engine = self._components(self._options)

    def _components(self, options: KBOptions) -> tuple[VectorStore, SyncEngine]:
        vector_store = VectorStore(self.store, self.embedder, options.store_options())
        return vector_store, SyncEngine(vector_store, self.splitter)

    def get_options(self) -> KBOptions:
        """Return a copy of the current options."""
        return replace(self._options, filters=dict(self._options.filters))

    def update_options(self, **changes: Any) -> KBOptions:
        """
        Change options and rebuild the retrieval façade.

        Raises:
            TypeError: If an unknown option is given
            ConfigurationError: If the new distance or dimensions are invalid
        """
        options = replace(self._options, **changes)
        # Nothing changes unless the new options build cleanly.
        vector_store, engine = self._components(options)
        self._options, self.vector_store, self.engine = options, vector_store, engine
        logger.debug(f"Knowledge base options updated: {sorted(changes)}")
        return self.get_options()

    def init_store(self, force_recreate: bool = False) -> None:
        self.vector_store.init_db(force_recreate)

    def sync(
        self,
        options: Optional[LoadOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncReport:
        """Synchronize the store with the data source."""
        return self.engine.run(self.datasource, options, cancel)

    def add_documents(self, chunks: Sequence[Chunk]) -> None:
        self.vector_store.add_documents(chunks)

    def similarity_search(
        self, query: str, limit: Optional[int] = None, filter: Optional[Filter] = None
    ) -> list[ScoredChunk]:
        """Search the store; ``limit`` defaults to ``top_k``."""
        if limit is None:
            limit = self._options.top_k
        return self.vector_store.similarity_search(query, limit, filter)

    def delete(self, filter: Filter) -> None:
        self.vector_store.delete(filter)

    def close(self) -> None:
        """Persist the store if it supports saving and holds data."""
        save = getattr(self.store, "save", None)
        if callable(save) and getattr(self.store, "is_built", True):
            save()
