"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
Use a .env file for local development.

Environment Variables:
    HF_API_KEY: HuggingFace API key (for API-based embeddings)
    EMBEDDING_MODEL: Model used for document/query embeddings
    SPLITTER: Chunking strategy (character, token, recursive)
    CHUNK_SIZE: Characters (or tokens) per chunk
    CHUNK_OVERLAP: Overlap between chunks
    DISTANCE_METRIC: cosine, euclidean or inner_product
    FAISS_INDEX_PATH: Path to FAISS index file
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Embeddings
    # ==========================================================================
    hf_api_key: Optional[SecretStr] = Field(
        default=None,
        description="HuggingFace API key for the Inference API",
    )
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Model for document/query embeddings",
    )
    embedding_dimension: int = Field(
        default=384,
        ge=1,
        description="Dimension of embedding vectors (must match model)",
    )
    embedding_batch_size: int = Field(
        default=32,
        ge=1,
        le=2048,
        description="Maximum number of texts sent to the embedder per call",
    )

    # ==========================================================================
    # Chunking
    # ==========================================================================
    splitter: Literal["character", "token", "recursive"] = Field(
        default="character",
        description="Chunking strategy",
    )
    chunk_size: int = Field(
        default=512,
        ge=1,
        description="Characters (or tokens for the token splitter) per chunk",
    )
    chunk_overlap: int = Field(
        default=64,
        ge=0,
        description="Overlap between consecutive chunks",
    )
    chunk_separator: str = Field(
        default=" ",
        description="Separator used by the character splitter",
    )
    tokenizer_model: str = Field(
        default="text-embedding-3-small",
        description="Model name used to pick the tokenizer for the token splitter",
    )

    # ==========================================================================
    # Vector store / retrieval
    # ==========================================================================
    distance_metric: Literal["cosine", "euclidean", "inner_product"] = Field(
        default="cosine",
        description="Distance metric of the vector store",
    )
    score_threshold: float = Field(
        default=0.0,
        description="Minimum similarity score; <= 0 disables the threshold",
    )
    namespace: str = Field(
        default="",
        description="Logical namespace of the knowledge base",
    )
    index_name: str = Field(
        default="documents",
        description="Name of the vector index / table",
    )
    retrieval_top_k: int = Field(
        default=4,
        ge=1,
        le=100,
        description="Default number of chunks returned by a search",
    )
    faiss_index_path: Path = Field(
        default=Path("data/index/faiss.index"),
        description="Path to FAISS index file",
    )

    # ==========================================================================
    # Data sources
    # ==========================================================================
    data_dir: Path = Field(
        default=Path("data/raw"),
        description="Directory scanned by the filesystem data source",
    )
    http_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for HTTP collaborators",
    )

    # ==========================================================================
    # Observability
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # ==========================================================================
    # Validators
    # ==========================================================================
    @field_validator("chunk_overlap")
    @classmethod
    def validate_chunk_overlap(cls, v: int, info) -> int:
        """Ensure overlap is less than chunk size."""
        chunk_size = info.data.get("chunk_size", 512)
        if v >= chunk_size:
            raise ValueError(f"chunk_overlap ({v}) must be less than chunk_size ({chunk_size})")
        return v

    @field_validator("faiss_index_path", "data_dir")
    @classmethod
    def resolve_path(cls, v: Path) -> Path:
        """Resolve paths to absolute paths."""
        return v.resolve()

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def hf_api_key_value(self) -> Optional[str]:
        """Get the actual API key value (use sparingly)."""
        if self.hf_api_key:
            return self.hf_api_key.get_secret_value()
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call `get_settings.cache_clear()` to reload settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience alias
settings = get_settings()
