"""
kbservice: retrieval knowledge base engine.

Turns raw documents into searchable, embedded chunks and keeps a vector
index consistent with a changing document source.

Key Components:
    - retrieval.chunker: Character, token and recursive text splitters
    - retrieval.embeddings: Embedder protocol, batching pipeline, HuggingFace adapter
    - retrieval.vectorstore: Store contract, scoring, filtering and the VectorStore façade
    - retrieval.memory_store / retrieval.indexer: In-memory and FAISS backends
    - retrieval.data_ingestion: File system and web data sources
    - retrieval.sync: Incremental synchronization engine
    - knowledge_base: KnowledgeBase tying the pieces together

Example:
    >>> from kbservice.retrieval.resources import get_knowledge_base
    >>> kb = get_knowledge_base()
    >>> kb.init_store()
    >>> kb.sync()
    >>> kb.similarity_search("What is a vector store?")
"""

__version__ = "0.1.0"

from kbservice.config import settings

__all__ = [
    "__version__",
    "settings",
]
