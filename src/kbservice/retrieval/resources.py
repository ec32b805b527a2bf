"""
Singleton resource management for the embedder, store and knowledge base.

Provides cached instances of resources that should only be built once per
application lifecycle. Uses the @lru_cache pattern (same as the config.py
settings singleton).

Usage:
    kb = get_knowledge_base()  # First call builds, subsequent calls reuse
    kb.init_store()

    # In tests (reset cache)
    clear_resource_cache()
"""

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from kbservice.config import settings
from kbservice.errors import ConfigurationError

if TYPE_CHECKING:
    from kbservice.knowledge_base import KnowledgeBase
    from kbservice.retrieval.chunker import Splitter
    from kbservice.retrieval.embeddings import HuggingFaceEmbedder
    from kbservice.retrieval.indexer import FAISSStore

logger = logging.getLogger(__name__)


def build_splitter(
    kind: str,
    chunk_size: int,
    chunk_overlap: int = 0,
    separator: str = " ",
    tokenizer_model: str = "text-embedding-3-small",
) -> "Splitter":
    """
    Create a splitter by name.

    Args:
        kind: ``character``, ``token`` or ``recursive``
        chunk_size: Characters (tokens for ``token``) per chunk
        chunk_overlap: Overlap between consecutive chunks
        separator: Separator for the character splitter
        tokenizer_model: Model whose tokenizer the token splitter uses

    Raises:
        ConfigurationError: If the kind is unknown or the window is invalid
    """
    from kbservice.retrieval.chunker import CharacterSplitter, RecursiveSplitter, TokenSplitter

    if kind == "character":
        return CharacterSplitter(chunk_size, chunk_overlap, separator=separator)
    if kind == "token":
        return TokenSplitter(chunk_size, chunk_overlap, model=tokenizer_model)
    if kind == "recursive":
        return RecursiveSplitter(chunk_size, chunk_overlap)
    raise ConfigurationError(f"unknown splitter kind: {kind}")


@lru_cache(maxsize=1)
def get_splitter() -> "Splitter":
    """Get or create the configured splitter."""
    splitter = build_splitter(
        settings.splitter,
        settings.chunk_size,
        settings.chunk_overlap,
        separator=settings.chunk_separator,
        tokenizer_model=settings.tokenizer_model,
    )
    logger.info(
        f"Using {settings.splitter} splitter "
        f"(size {settings.chunk_size}, overlap {settings.chunk_overlap})"
    )
    return splitter


@lru_cache(maxsize=1)
def get_embedder() -> "HuggingFaceEmbedder":
    """
    Get or create the global HuggingFaceEmbedder instance.

    Example:
        >>> embedder = get_embedder()
        >>> vector = embedder.embed_query("What is a vector store?")
    """
    from kbservice.retrieval.embeddings import HuggingFaceEmbedder

    logger.info(f"Initializing HuggingFace embedder for model: {settings.embedding_model}")

    return HuggingFaceEmbedder(
        model=settings.embedding_model,
        api_key=settings.hf_api_key_value,
        max_batch_size=settings.embedding_batch_size,
        timeout=settings.http_timeout,
    )


@lru_cache(maxsize=1)
def get_store() -> "FAISSStore":
    """
    Get or create the global FAISS store.

    The store is not initialized here; call ``init_db()`` (or
    ``KnowledgeBase.init_store()``) to load or create the index.
    """
    from kbservice.retrieval.indexer import FAISSStore

    return FAISSStore(
        dimension=settings.embedding_dimension,
        distance=settings.distance_metric,
        path=settings.faiss_index_path,
        name=settings.index_name,
    )


@lru_cache(maxsize=1)
def get_knowledge_base() -> "KnowledgeBase":
    """
    Get or create the knowledge base over ``settings.data_dir``.

    Example:
        >>> kb = get_knowledge_base()
        >>> kb.init_store()
        >>> report = kb.sync()
    """
    from kbservice.knowledge_base import KBOptions, KnowledgeBase
    from kbservice.retrieval.data_ingestion import FileSystemSource

    options = KBOptions(
        namespace=settings.namespace,
        score_threshold=settings.score_threshold,
        index_name=settings.index_name,
        dimensions=settings.embedding_dimension,
        distance=settings.distance_metric,
        top_k=settings.retrieval_top_k,
    )

    return KnowledgeBase(
        embedder=get_embedder(),
        store=get_store(),
        datasource=FileSystemSource(settings.data_dir),
        splitter=get_splitter(),
        options=options,
    )


def clear_resource_cache() -> None:
    """
    Clear all cached resources.

    Used in tests to reset state between test cases.
    """
    get_knowledge_base.cache_clear()
    get_store.cache_clear()
    get_embedder.cache_clear()
    get_splitter.cache_clear()
    logger.debug("Resource cache cleared")
