"""
Embedding generation.

Defines the Embedder protocol consumed by the core, the EmbeddingPipeline
that validates input and fans large requests out into sub-batches, and a
HuggingFace Inference API adapter.
"""

import logging
import time
from typing import Optional, Protocol, Sequence

import httpx
import numpy as np
from numpy.typing import NDArray

from kbservice.config import settings
from kbservice.errors import BackendError, BatchFailureError, ConfigurationError, EmptyInputError

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Protocol that all embedding backends implement."""

    def embed_documents(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """Embed a batch of texts; one vector per text, in input order."""
        ...

    def embed_query(self, text: str) -> NDArray[np.float32]:
        """Embed a single query text."""
        ...


def _is_blank(text: str) -> bool:
    return not text or not text.strip()


class EmbeddingPipeline:
    """
    Validating, batching façade over an Embedder.

    Rejects degenerate input before any call goes out. When a maximum batch
    size is known, a large request is split into sequential sub-batches and
    the results are concatenated in the original order.

    Example:
        >>> pipeline = EmbeddingPipeline(HuggingFaceEmbedder(), max_batch_size=32)
        >>> vectors = pipeline.embed_documents(["What is RAG?", "Vector stores"])
        >>> vectors.shape
        (2, 384)
    """

    def __init__(self, embedder: Embedder, max_batch_size: Optional[int] = None) -> None:
        """
        Initialize the pipeline.

        Args:
            embedder: Backend that produces the vectors
            max_batch_size: Largest batch the backend accepts (default: the
                embedder's own ``max_batch_size`` attribute, if any)

        Raises:
            ConfigurationError: If max_batch_size is not positive
        """
        if max_batch_size is None:
            max_batch_size = getattr(embedder, "max_batch_size", None)
        if max_batch_size is not None and max_batch_size <= 0:
            raise ConfigurationError(f"max_batch_size must be positive, got {max_batch_size}")

        self.embedder = embedder
        self.max_batch_size = max_batch_size

    @property
    def target(self) -> str:
        """Name of the wrapped embedder, used in error messages."""
        return getattr(self.embedder, "model", None) or type(self.embedder).__name__

    def embed_documents(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """
        Embed a list of texts.

        Args:
            texts: Non-empty texts to embed

        Returns:
            Array of shape (len(texts), dimension)

        Raises:
            EmptyInputError: If the list is empty or contains blank text
            BatchFailureError: If a sub-batch fails when fanning out
            BackendError: If the embedder fails or returns the wrong count
        """
        if not texts:
            raise EmptyInputError("embed_documents")
        for i, text in enumerate(texts):
            if _is_blank(text):
                raise EmptyInputError("embed_documents", f"text at position {i} is blank")

        if self.max_batch_size is None or len(texts) <= self.max_batch_size:
            return self._embed_batch(list(texts))

        batches = [
            list(texts[i : i + self.max_batch_size])
            for i in range(0, len(texts), self.max_batch_size)
        ]
        logger.debug(f"Embedding {len(texts)} texts in {len(batches)} batches")

        results: list[NDArray[np.float32]] = []
        for index, batch in enumerate(batches):
            try:
                results.append(self._embed_batch(batch))
            except Exception as e:
                raise BatchFailureError(index, len(batches), e) from e

        return np.vstack(results)

    def embed_query(self, text: str) -> NDArray[np.float32]:
        """
        Embed a single query.

        Raises:
            EmptyInputError: If the query is blank
            BackendError: If the embedder fails
        """
        if _is_blank(text):
            raise EmptyInputError("embed_query")

        try:
            vector = self.embedder.embed_query(text)
        except EmptyInputError:
            raise
        except Exception as e:
            raise BackendError(str(e), operation="embed_query", target=self.target) from e

        return np.asarray(vector, dtype=np.float32).reshape(-1)

    def _embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        try:
            vectors = self.embedder.embed_documents(texts)
        except EmptyInputError:
            raise
        except Exception as e:
            raise BackendError(str(e), operation="embed_documents", target=self.target) from e

        array = np.asarray(vectors, dtype=np.float32)
        if array.ndim != 2 or array.shape[0] != len(texts):
            raise BackendError(
                f"expected {len(texts)} vectors, got array of shape {array.shape}",
                operation="embed_documents",
                target=self.target,
            )
        return array


class HuggingFaceEmbedder:
    """
    Generate embeddings using the HuggingFace Inference API.

    Uses the free-tier API with retry logic for rate limits. Batching of
    large requests is left to EmbeddingPipeline via ``max_batch_size``.

    Example:
        >>> embedder = HuggingFaceEmbedder()
        >>> vectors = embedder.embed_documents(["What is 5G NR?"])
        >>> vectors.shape
        (1, 384)
    """

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        max_batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the embedder.

        Args:
            model: HuggingFace model ID (default from settings)
            api_key: HuggingFace API key (default from settings)
            max_batch_size: Largest number of texts per API call
            timeout: HTTP timeout in seconds
        """
        self.model = model or settings.embedding_model
        self.api_key = api_key or settings.hf_api_key_value
        self.max_batch_size = max_batch_size or settings.embedding_batch_size
        self.timeout = timeout or settings.http_timeout
        self.dimension = settings.embedding_dimension
        self.base_url = "https://api-inference.huggingface.co/pipeline/feature-extraction"
        self.max_retries = 3
        self.initial_retry_delay = 1.0  # seconds

    def embed_documents(self, texts: Sequence[str]) -> NDArray[np.float32]:
        """
        Generate embeddings for a list of texts in one API call.

        Args:
            texts: List of texts to embed

        Returns:
            Array of shape (len(texts), embedding_dimension)

        Raises:
            EmptyInputError: If texts is empty
            httpx.HTTPStatusError: If API returns non-429 error after retries
            httpx.HTTPError: If network error occurs
        """
        if not texts:
            raise EmptyInputError("embed_documents")
        return self._post(list(texts))

    def embed_query(self, text: str) -> NDArray[np.float32]:
        """
        Generate embedding for a single query.

        Returns:
            Array of shape (embedding_dimension,)
        """
        if not text:
            raise EmptyInputError("embed_query")
        return self._post([text])[0]

    def _post(self, texts: list[str]) -> NDArray[np.float32]:
        url = f"{self.base_url}/{self.model}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {"inputs": texts}

        retry_delay = self.initial_retry_delay

        with httpx.Client(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    response = client.post(url, json=payload, headers=headers)

                    # Handle rate limiting with exponential backoff
                    if response.status_code == 429 and attempt < self.max_retries - 1:
                        logger.warning(
                            f"Rate limited by HuggingFace, retrying in {retry_delay:.1f}s "
                            f"(attempt {attempt + 1}/{self.max_retries})"
                        )
                        time.sleep(retry_delay)
                        retry_delay *= 2
                        continue

                    response.raise_for_status()

                    embeddings = np.array(response.json(), dtype=np.float32)
                    return self._normalize_embeddings(embeddings)

                except httpx.HTTPStatusError as e:
                    if e.response.status_code != 429 or attempt == self.max_retries - 1:
                        raise

        raise RuntimeError("Unexpected error in HuggingFaceEmbedder._post")

    def _normalize_embeddings(self, embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
        """
        Normalize embeddings to unit length for cosine similarity.

        Args:
            embeddings: Array of shape (n, dimension)

        Returns:
            Normalized embeddings of same shape
        """
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        # Avoid division by zero
        norms = np.where(norms == 0, 1, norms)
        return (embeddings / norms).astype(np.float32)
