"""
Unit tests for resource caching in retrieval.resources module.

Tests the singleton caching behavior of:
    - get_splitter()
    - get_embedder()
    - get_store()
    - get_knowledge_base()
    - clear_resource_cache()
"""

import pytest

from kbservice.config import settings
from kbservice.errors import ConfigurationError
from kbservice.retrieval.chunker import CharacterSplitter, RecursiveSplitter, TokenSplitter
from kbservice.retrieval.resources import (
    build_splitter,
    clear_resource_cache,
    get_embedder,
    get_knowledge_base,
    get_splitter,
    get_store,
)


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_resource_cache()
    yield
    clear_resource_cache()


@pytest.mark.unit
class TestBuildSplitter:
    """Tests for build_splitter factory."""

    def test_character(self):
        splitter = build_splitter("character", 100, 10, separator="\n")

        assert isinstance(splitter, CharacterSplitter)
        assert splitter.separator == "\n"

    def test_recursive(self):
        assert isinstance(build_splitter("recursive", 100, 10), RecursiveSplitter)

    def test_token(self, monkeypatch, whitespace_encoding):
        monkeypatch.setattr(
            "kbservice.retrieval.chunker.tiktoken.get_encoding", lambda name: whitespace_encoding
        )

        assert isinstance(build_splitter("token", 100, 10), TokenSplitter)

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="sentence"):
            build_splitter("sentence", 100)

    def test_invalid_window(self):
        with pytest.raises(ConfigurationError):
            build_splitter("character", 10, 10)


@pytest.mark.unit
class TestResourceCaching:
    """Test that resource getters implement proper caching."""

    def test_get_splitter_caches_result(self):
        assert get_splitter() is get_splitter()

    def test_get_embedder_uses_settings(self):
        embedder = get_embedder()

        assert embedder is get_embedder()
        assert embedder.model == settings.embedding_model
        assert embedder.max_batch_size == settings.embedding_batch_size

    def test_get_store_is_not_initialized(self):
        store = get_store()

        assert store is get_store()
        assert store.dimension == settings.embedding_dimension
        assert store.name == settings.index_name
        assert not store.is_built

    def test_get_knowledge_base_wires_singletons(self):
        kb = get_knowledge_base()

        assert kb is get_knowledge_base()
        assert kb.store is get_store()
        assert kb.embedder is get_embedder()
        assert kb.splitter is get_splitter()
        assert kb.get_options().top_k == settings.retrieval_top_k

    def test_clear_resource_cache(self):
        store = get_store()
        kb = get_knowledge_base()

        clear_resource_cache()

        assert get_store() is not store
        assert get_knowledge_base() is not kb
