"""
Integration tests for the sync and search pipeline.

These tests wire real splitters, stores and data sources together; only the
embedder is a deterministic offline fake.
"""

import os

import pytest
from pytest_httpx import HTTPXMock

from kbservice.knowledge_base import KBOptions, KnowledgeBase
from kbservice.retrieval.chunker import CharacterSplitter
from kbservice.retrieval.data_ingestion import FileSystemSource, WebSource
from kbservice.retrieval.indexer import FAISSStore
from kbservice.retrieval.memory_store import InMemoryStore


@pytest.mark.integration
class TestInMemoryPipeline:
    """Two-document corpus over the in-memory store."""

    def test_ai_query_finds_machine_learning(self, keyword_embedder, make_source, sample_documents):
        kb = KnowledgeBase(
            embedder=keyword_embedder,
            store=InMemoryStore(dimension=keyword_embedder.dimension),
            datasource=make_source(sample_documents),
            splitter=CharacterSplitter(chunk_size=120, chunk_overlap=50),
        )

        report = kb.sync()
        results = kb.similarity_search("Tell me about AI", limit=1)

        assert report.added == 2
        assert len(results) == 1
        assert results[0].content == "Machine learning is a subset of AI"
        assert results[0].metadata["source"] == "ml.md"
        assert results[0].score == pytest.approx(3 ** -0.5, rel=1e-5)

    def test_threshold_drops_unrelated(self, keyword_embedder, make_source, sample_documents):
        kb = KnowledgeBase(
            embedder=keyword_embedder,
            store=InMemoryStore(dimension=keyword_embedder.dimension),
            datasource=make_source(sample_documents),
            splitter=CharacterSplitter(chunk_size=120, chunk_overlap=50),
            options=KBOptions(score_threshold=0.1),
        )
        kb.sync()

        results = kb.similarity_search("Tell me about AI", limit=2)

        assert [r.metadata["source"] for r in results] == ["ml.md"]


@pytest.mark.integration
class TestFAISSFileSystemPipeline:
    """Markdown directory synced into a persisted FAISS index."""

    def _knowledge_base(self, keyword_embedder, data_dir, index_path):
        store = FAISSStore(dimension=keyword_embedder.dimension, path=index_path)
        return KnowledgeBase(
            embedder=keyword_embedder,
            store=store,
            datasource=FileSystemSource(data_dir),
            splitter=CharacterSplitter(chunk_size=200, chunk_overlap=20),
        )

    def test_sync_modify_resync_reload(self, keyword_embedder, tmp_data_dir, tmp_index_dir):
        index_path = tmp_index_dir / "faiss"
        kb = self._knowledge_base(keyword_embedder, tmp_data_dir, index_path)
        kb.init_store()

        first = kb.sync()
        assert (first.added, first.skipped) == (2, 0)

        # Rewrite one file with a later modification time.
        changed = tmp_data_dir / "sync.md"
        changed.write_text("# Sync\n\nPython cat data", encoding="utf-8")
        stat = changed.stat()
        os.utime(changed, (stat.st_atime, stat.st_mtime + 120))

        second = kb.sync()
        assert (second.added, second.skipped) == (1, 1)

        results = kb.similarity_search("cat", limit=5, filter={"source": str(changed)})
        assert [r.content for r in results] == ["# Sync\n\nPython cat data"]
        kb.close()

        reopened = self._knowledge_base(keyword_embedder, tmp_data_dir, index_path)
        reopened.init_store()
        keyword_embedder.calls.clear()

        third = reopened.sync()

        assert (third.added, third.skipped) == (0, 2)
        assert keyword_embedder.calls == []
        assert reopened.store.size == 2

    def test_deleted_file_chunks_can_be_removed(self, keyword_embedder, tmp_data_dir, tmp_index_dir):
        kb = self._knowledge_base(keyword_embedder, tmp_data_dir, tmp_index_dir / "faiss")
        kb.init_store()
        kb.sync()

        kb.delete({"source": str(tmp_data_dir / "vector_stores.md")})

        assert kb.store.size == 1


@pytest.mark.integration
class TestWebPipeline:
    """Web pages synced into the in-memory store."""

    def test_last_modified_header_drives_skips(self, keyword_embedder, httpx_mock: HTTPXMock):
        headers = {"Last-Modified": "Wed, 21 Oct 2015 07:28:00 GMT"}
        for _ in range(2):
            httpx_mock.add_response(url="https://example.com/a", text="alpha beta", headers=headers)
            httpx_mock.add_response(url="https://example.com/b", text="gamma delta", headers=headers)

        store = InMemoryStore(dimension=keyword_embedder.dimension)
        kb = KnowledgeBase(
            embedder=keyword_embedder,
            store=store,
            datasource=WebSource(["https://example.com/a", "https://example.com/b"]),
            splitter=CharacterSplitter(chunk_size=100),
        )

        first = kb.sync()
        second = kb.sync()

        assert first.added == 2
        assert second.skipped == 2
        assert store.size == 2
