"""
Pytest configuration and shared fixtures.

Provides common fixtures for:
    - Configuration with test values
    - Deterministic embedders and tokenizers (no network)
    - Sample documents and chunks
    - In-memory stores and data sources
    - Temporary directories for indexes and markdown files
"""

import re
from pathlib import Path
from typing import Callable, Optional, Sequence
from unittest.mock import patch

import numpy as np
import pytest


# =============================================================================
# Fakes
# =============================================================================

VOCABULARY = (
    "ai", "learning", "machine", "fox", "dog", "vector", "store", "search",
    "python", "sync", "alpha", "beta", "gamma", "delta", "cat", "data",
)


class KeywordEmbedder:
    """
    Bag-of-words embedder over a fixed vocabulary.

    Each vocabulary word is one axis; other words are ignored. Every batch
    passed to ``embed_documents`` is recorded in ``calls``.
    """

    dimension = len(VOCABULARY)

    def __init__(self, model: str = "keyword-test", fail_on: Optional[str] = None) -> None:
        self.model = model
        self.fail_on = fail_on
        self.calls: list[list[str]] = []
        self.query_calls: list[str] = []

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            if word in VOCABULARY:
                vec[VOCABULARY.index(word)] += 1.0
        return vec

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if self.fail_on and any(self.fail_on in text for text in texts):
            raise RuntimeError("embedding service unavailable")
        return np.vstack([self.vector(text) for text in texts])

    def embed_query(self, text: str) -> np.ndarray:
        self.query_calls.append(text)
        return self.vector(text)


class WhitespaceEncoding:
    """Tokenizer that treats every whitespace-separated word as one token."""

    name = "whitespace"

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}
        self._words: list[str] = []

    def encode(self, text: str) -> list[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                self._ids[word] = len(self._words)
                self._words.append(word)
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self._words[token] for token in tokens)


class ListSource:
    """
    Data source over a fixed list of documents and exceptions.

    An exception in the list is raised by the producer when reached, so it
    shows up in ``stream`` as an error item.
    """

    def __init__(self, items: list) -> None:
        self.items = list(items)

    def _produce(self):
        for item in self.items:
            if isinstance(item, Exception):
                raise item
            yield item

    def load(self, options=None):
        from kbservice.retrieval.data_ingestion import LoadOptions, limit_documents

        options = options or LoadOptions()
        return list(limit_documents(self._produce(), options))

    def stream(self, options=None, cancel=None):
        from kbservice.retrieval.data_ingestion import LoadOptions, limit_documents, threaded_stream

        options = options or LoadOptions()
        return threaded_stream(lambda: limit_documents(self._produce(), options), cancel)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def mock_settings():
    """Provide test settings without requiring .env file."""
    with patch.dict(
        "os.environ",
        {
            "HF_API_KEY": "test-api-key",
            "EMBEDDING_MODEL": "sentence-transformers/all-MiniLM-L6-v2",
            "CHUNK_SIZE": "512",
            "CHUNK_OVERLAP": "64",
            "DISTANCE_METRIC": "cosine",
        },
    ):
        from kbservice.config import Settings
        yield Settings()


# =============================================================================
# Fake Collaborator Fixtures
# =============================================================================

@pytest.fixture
def keyword_embedder() -> KeywordEmbedder:
    """Provide a deterministic, offline embedder."""
    return KeywordEmbedder()


@pytest.fixture
def whitespace_encoding() -> WhitespaceEncoding:
    """Provide a word-level tokenizer for the token splitter."""
    return WhitespaceEncoding()


@pytest.fixture
def memory_store():
    """Provide an empty cosine in-memory store sized for KeywordEmbedder."""
    from kbservice.retrieval.memory_store import InMemoryStore

    return InMemoryStore(dimension=KeywordEmbedder.dimension)


@pytest.fixture
def vector_store(memory_store, keyword_embedder):
    """Provide a retrieval façade over the in-memory store."""
    from kbservice.retrieval.vectorstore import VectorStore

    return VectorStore(memory_store, keyword_embedder)


@pytest.fixture
def make_source() -> Callable[[list], ListSource]:
    """Factory for data sources over a list of documents/exceptions."""
    return ListSource


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_documents():
    """Provide the two-document example corpus."""
    from kbservice.retrieval.models import Document

    return [
        Document(
            content="The quick brown fox jumps over the lazy dog",
            metadata={"last_modified": "2024-01-01T00:00:00Z"},
            source="fox.md",
        ),
        Document(
            content="Machine learning is a subset of AI",
            metadata={"last_modified": "2024-01-01T00:00:00Z"},
            source="ml.md",
        ),
    ]


@pytest.fixture
def sample_chunks():
    """Provide sample chunks with source metadata."""
    from kbservice.retrieval.models import Chunk

    return [
        Chunk(content="Machine learning is a subset of AI", metadata={"source": "ml.md", "lang": "en"}),
        Chunk(content="The quick brown fox", metadata={"source": "fox.md", "lang": "en"}),
        Chunk(content="A vector store answers similarity search", metadata={"source": "vs.md", "lang": "fr"}),
    ]


@pytest.fixture
def sample_markdown_files():
    """Provide sample markdown content."""
    return {
        "vector_stores.md": """# Vector stores

A vector store keeps embeddings and answers similarity search queries.
""",
        "sync.md": """# Sync

The sync engine skips unchanged documents and replaces changed ones.
""",
    }


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def tmp_index_dir(tmp_path: Path) -> Path:
    """Provide temporary directory for FAISS index."""
    index_dir = tmp_path / "index"
    index_dir.mkdir()
    return index_dir


@pytest.fixture
def tmp_data_dir(tmp_path: Path, sample_markdown_files) -> Path:
    """Provide temporary directory with sample markdown files."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    for filename, content in sample_markdown_files.items():
        (data_dir / filename).write_text(content, encoding="utf-8")

    return data_dir
