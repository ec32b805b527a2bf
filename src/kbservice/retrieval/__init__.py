"""
Document retrieval components.

Components:
    - models: Document, Chunk and ScoredChunk
    - chunker: Split documents into chunks with metadata
    - embeddings: Generate vector embeddings
    - vectorstore: Store contract and retrieval façade
    - memory_store, indexer: Vector store backends
    - data_ingestion: Data sources
    - sync: Keep a store consistent with a data source
"""

from kbservice.retrieval.chunker import CharacterSplitter, RecursiveSplitter, TokenSplitter, create_chunks
from kbservice.retrieval.embeddings import EmbeddingPipeline, HuggingFaceEmbedder
from kbservice.retrieval.indexer import FAISSStore
from kbservice.retrieval.memory_store import InMemoryStore
from kbservice.retrieval.models import Chunk, DistanceMetric, Document, ScoredChunk
from kbservice.retrieval.sync import SyncEngine, SyncReport
from kbservice.retrieval.vectorstore import StoreOptions, VectorStore

__all__ = [
    "CharacterSplitter",
    "Chunk",
    "DistanceMetric",
    "Document",
    "EmbeddingPipeline",
    "FAISSStore",
    "HuggingFaceEmbedder",
    "InMemoryStore",
    "RecursiveSplitter",
    "ScoredChunk",
    "StoreOptions",
    "SyncEngine",
    "SyncReport",
    "TokenSplitter",
    "VectorStore",
    "create_chunks",
]
