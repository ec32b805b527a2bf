"""Unit tests for retrieval.memory_store module."""

import numpy as np
import pytest

from kbservice.errors import DimensionMismatchError
from kbservice.retrieval.memory_store import InMemoryStore
from kbservice.retrieval.models import Chunk, DistanceMetric


def unit(index: int, dimension: int = 4) -> list[float]:
    vec = [0.0] * dimension
    vec[index] = 1.0
    return vec


@pytest.mark.unit
class TestInMemoryStore:
    """Tests for InMemoryStore class."""

    def test_init(self):
        store = InMemoryStore(dimension=4)

        assert store.dimension == 4
        assert store.distance is DistanceMetric.COSINE
        assert store.size == 0

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            InMemoryStore(dimension=0)

    def test_search_orders_by_score(self):
        store = InMemoryStore(dimension=4)
        store.add_documents(
            [Chunk("x"), Chunk("y"), Chunk("xy")],
            [unit(0), unit(1), [1.0, 1.0, 0.0, 0.0]],
        )

        results = store.similarity_search(unit(0), limit=3)

        assert [r.content for r in results] == ["x", "xy", "y"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / np.sqrt(2))
        assert results[2].score == pytest.approx(0.0)

    def test_limit(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk(str(i)) for i in range(4)], [unit(i) for i in range(4)])

        assert len(store.similarity_search(unit(0), limit=2)) == 2
        assert store.similarity_search(unit(0), limit=0) == []

    def test_ties_keep_insertion_order(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk("first"), Chunk("second")], [unit(1), unit(2)])

        results = store.similarity_search(unit(0), limit=2)

        assert [r.content for r in results] == ["first", "second"]

    def test_empty_store_returns_nothing(self):
        assert InMemoryStore(dimension=4).similarity_search(unit(0), limit=5) == []

    def test_euclidean_scores(self):
        store = InMemoryStore(dimension=2, distance="euclidean")
        store.add_documents([Chunk("origin"), Chunk("far")], [[0.0, 0.0], [3.0, 4.0]])

        results = store.similarity_search([0.0, 0.0], limit=2)

        assert [r.content for r in results] == ["origin", "far"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / 6)

    def test_inner_product_scores(self):
        store = InMemoryStore(dimension=2, distance=DistanceMetric.INNER_PRODUCT)
        store.add_documents([Chunk("small"), Chunk("large")], [[1.0, 0.0], [3.0, 0.0]])

        results = store.similarity_search([2.0, 0.0], limit=2)

        assert [r.content for r in results] == ["large", "small"]
        assert results[0].score == pytest.approx(6.0)
        assert results[1].score == pytest.approx(2.0)

    def test_filtered_search(self):
        store = InMemoryStore(dimension=4)
        store.add_documents(
            [Chunk("a", {"source": "a.md"}), Chunk("b", {"source": "b.md"})],
            [unit(0), unit(0)],
        )

        results = store.similarity_search(unit(0), limit=5, filter={"source": "b.md"})

        assert [r.content for r in results] == ["b"]

    def test_add_dimension_mismatch(self):
        store = InMemoryStore(dimension=4, name="mem")

        with pytest.raises(DimensionMismatchError) as exc_info:
            store.add_documents([Chunk("a")], [[1.0, 0.0]])

        assert exc_info.value.store == "mem"
        assert store.size == 0

    def test_query_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            InMemoryStore(dimension=4).similarity_search([1.0], limit=1)

    def test_count_mismatch(self):
        with pytest.raises(ValueError):
            InMemoryStore(dimension=4).add_documents([Chunk("a"), Chunk("b")], [unit(0)])

    def test_stored_chunks_are_isolated(self):
        """Neither the caller's chunk nor a returned result aliases stored metadata."""
        store = InMemoryStore(dimension=4)
        chunk = Chunk("a", {"tags": ["x"]})
        store.add_documents([chunk], [unit(0)])

        chunk.metadata["tags"].append("mutated")
        result = store.similarity_search(unit(0), limit=1)[0]
        result.metadata["tags"].append("also mutated")

        assert store.similarity_search(unit(0), limit=1)[0].metadata == {"tags": ["x"]}

    def test_delete_by_filter(self):
        store = InMemoryStore(dimension=4)
        store.add_documents(
            [Chunk("a1", {"source": "a"}), Chunk("a2", {"source": "a"}), Chunk("b", {"source": "b"})],
            [unit(0), unit(1), unit(2)],
        )

        store.delete({"source": "a"})

        assert store.size == 1
        assert [r.content for r in store.similarity_search(unit(2), limit=5)] == ["b"]

    def test_delete_without_matches_is_noop(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk("a", {"source": "a"})], [unit(0)])

        store.delete({"source": "missing"})

        assert store.size == 1

    def test_document_exists(self):
        store = InMemoryStore(dimension=4)
        store.add_documents(
            [Chunk("a", {"source": "a.md", "last_modified": "v1"})],
            [unit(0)],
        )

        exists = store.document_exists(
            [
                Chunk("", {"source": "a.md", "last_modified": "v1"}),
                Chunk("", {"source": "a.md", "last_modified": "v2"}),
                Chunk("", {"source": "b.md", "last_modified": "v1"}),
                Chunk("", {"source": "a.md"}),
            ]
        )

        assert exists == [True, False, False, False]

    def test_init_db_force_recreate_clears(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk("a")], [unit(0)])

        store.init_db()
        assert store.size == 1

        store.init_db(force_recreate=True)
        assert store.size == 0

    def test_transaction_commits(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk("old", {"source": "a"})], [unit(0)])

        with store.transaction():
            store.delete({"source": "a"})
            store.add_documents([Chunk("new", {"source": "a"})], [unit(0)])

        assert [r.content for r in store.similarity_search(unit(0), limit=5)] == ["new"]

    def test_transaction_rolls_back_on_error(self):
        store = InMemoryStore(dimension=4)
        store.add_documents([Chunk("old", {"source": "a"})], [unit(0)])

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.delete({"source": "a"})
                raise RuntimeError("add failed")

        assert [r.content for r in store.similarity_search(unit(0), limit=5)] == ["old"]
