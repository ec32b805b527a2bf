"""
Document chunking with metadata preservation.

Three interchangeable splitters share one contract, ``split_text(text)``,
returning an ordered list of non-empty chunk strings:
    - CharacterSplitter: separator-delimited character window
    - TokenSplitter: fixed token window (tiktoken)
    - RecursiveSplitter: markdown-aware recursive splitting (LangChain)

The document helpers turn split text back into Chunk objects, giving each
chunk its own deep copy of the document metadata.
"""

import functools
import logging
import math
from typing import Any, Mapping, Optional, Protocol, Sequence

import tiktoken
from langchain_text_splitters import RecursiveCharacterTextSplitter

from kbservice.errors import ConfigurationError, SplitterError
from kbservice.retrieval.models import Chunk, Document, copy_metadata

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class Splitter(Protocol):
    """Protocol that all splitters implement."""

    def split_text(self, text: str) -> list[str]:
        """Split text into an ordered list of non-empty chunks."""
        ...


class TokenEncoding(Protocol):
    """Minimal tokenizer interface used by TokenSplitter."""

    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, tokens: list[int]) -> str:
        ...


def _validate_window(size: int, overlap: int, size_name: str) -> None:
    if size <= 0:
        raise ConfigurationError(f"{size_name} must be positive, got {size}")
    if overlap < 0:
        raise ConfigurationError(f"chunk_overlap must be non-negative, got {overlap}")
    if overlap >= size:
        raise ConfigurationError(
            f"chunk_overlap ({overlap}) must be less than {size_name} ({size})"
        )


class CharacterSplitter:
    """
    Split text on a separator and pack the pieces into character windows.

    When the next piece would push the buffer past ``chunk_size``, the buffer
    is closed as a chunk and the next buffer starts with the last
    ``chunk_overlap`` characters of the closed one. The overlap is a raw
    character tail, so it may cut a word.

    Example:
        >>> splitter = CharacterSplitter(chunk_size=120, chunk_overlap=50)
        >>> splitter.split_text("Machine learning is a subset of AI")
        ['Machine learning is a subset of AI']
    """

    def __init__(self, chunk_size: int, chunk_overlap: int = 0, separator: str = " ") -> None:
        """
        Initialize the splitter.

        Args:
            chunk_size: Character budget per chunk
            chunk_overlap: Characters carried over between consecutive chunks
            separator: Token used to split and re-join the text (default space)

        Raises:
            ConfigurationError: If chunk_size <= 0 or overlap is out of range
        """
        _validate_window(chunk_size, chunk_overlap, "chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separator = separator or " "

    def split_text(self, text: str) -> list[str]:
        if not text:
            return []

        chunks: list[str] = []
        buffer = ""

        for piece in text.split(self.separator):
            if buffer and len(buffer) + len(self.separator) + len(piece) > self.chunk_size:
                self._emit(chunks, buffer)
                if self.chunk_overlap > 0:
                    buffer = buffer[-self.chunk_overlap:]
                else:
                    buffer = ""

            if buffer:
                buffer += self.separator
            buffer += piece

        if buffer:
            self._emit(chunks, buffer)

        return chunks

    @staticmethod
    def _emit(chunks: list[str], buffer: str) -> None:
        chunk = buffer.strip()
        if chunk:
            chunks.append(chunk)


# Static compatibility table: exact model names first, then prefixes.
_EXACT_ENCODINGS: dict[str, str] = {
    "text-embedding-ada-002": "cl100k_base",
    "text-embedding-3-small": "cl100k_base",
    "text-embedding-3-large": "cl100k_base",
    "text-davinci-002": "p50k_base",
    "text-davinci-003": "p50k_base",
    "davinci": "r50k_base",
    "curie": "r50k_base",
    "babbage": "r50k_base",
    "ada": "r50k_base",
}

_PREFIX_ENCODINGS: list[tuple[str, str]] = [
    ("gpt-4o", "o200k_base"),
    ("gpt-4", "cl100k_base"),
    ("gpt-3.5-turbo", "cl100k_base"),
    ("code-search-", "r50k_base"),
    ("code-", "p50k_base"),
    ("text-davinci-001", "r50k_base"),
    ("text-curie-001", "r50k_base"),
    ("text-babbage-001", "r50k_base"),
    ("text-ada-001", "r50k_base"),
    ("text-similarity-", "r50k_base"),
    ("text-search-", "r50k_base"),
]


def encoding_for_model(model: str) -> str:
    """
    Return the tiktoken encoding name for a model identifier.

    Unknown models fall back to ``cl100k_base``.

    Args:
        model: Model name, e.g. "gpt-4o-mini" or "text-embedding-3-small"

    Returns:
        Encoding name understood by ``tiktoken.get_encoding``
    """
    if model in _EXACT_ENCODINGS:
        return _EXACT_ENCODINGS[model]
    for prefix, encoding in _PREFIX_ENCODINGS:
        if model.startswith(prefix):
            return encoding
    return DEFAULT_ENCODING


class TokenSplitter:
    """
    Split text into fixed-size token windows.

    The window advances by ``tokens_per_chunk - chunk_overlap`` tokens, so
    consecutive chunks share ``chunk_overlap`` tokens. The last window may be
    shorter than ``tokens_per_chunk``.

    Example:
        >>> splitter = TokenSplitter(100, 20, "text-embedding-3-small")
        >>> chunks = splitter.split_text(long_text)
    """

    def __init__(
        self,
        tokens_per_chunk: int,
        chunk_overlap: int,
        model: str = "text-embedding-3-small",
        encoding: Optional[TokenEncoding] = None,
    ) -> None:
        """
        Initialize the splitter.

        Parameters are validated before any tokenizer is loaded.

        Args:
            tokens_per_chunk: Window size in tokens
            chunk_overlap: Tokens shared by consecutive windows
            model: Model name used to pick the tokenizer
            encoding: Tokenizer to use instead of the tiktoken lookup

        Raises:
            ConfigurationError: If the window parameters are invalid
        """
        _validate_window(tokens_per_chunk, chunk_overlap, "tokens_per_chunk")
        self.tokens_per_chunk = tokens_per_chunk
        self.chunk_overlap = chunk_overlap
        self.model = model

        if encoding is None:
            self.encoding_name = encoding_for_model(model)
            tiktoken_encoding = tiktoken.get_encoding(self.encoding_name)
            # Treat special-token text as plain text instead of raising.
            self._encode = functools.partial(tiktoken_encoding.encode, disallowed_special=())
            self._decode = tiktoken_encoding.decode
        else:
            self.encoding_name = getattr(encoding, "name", type(encoding).__name__)
            self._encode = encoding.encode
            self._decode = encoding.decode

    @property
    def stride(self) -> int:
        """Number of tokens the window advances per step."""
        return self.tokens_per_chunk - self.chunk_overlap

    def split_text(self, text: str) -> list[str]:
        if not text:
            return []

        tokens = self._encode(text)
        total = len(tokens)
        if total == 0:
            return []

        max_iterations = math.ceil(total / self.stride)
        chunks: list[str] = []
        start = 0
        iteration = 0

        while start < total:
            iteration += 1
            if iteration > max_iterations:
                raise SplitterError(
                    f"token window exceeded {max_iterations} iterations "
                    f"for {total} tokens"
                )

            end = min(start + self.tokens_per_chunk, total)
            chunk = self._decode(tokens[start:end])
            if chunk.strip():
                chunks.append(chunk)

            if end == total:
                break

            next_start = end - self.chunk_overlap
            if next_start <= start:
                raise SplitterError(
                    f"token window stalled at position {start} "
                    f"(overlap {self.chunk_overlap}, window {self.tokens_per_chunk})"
                )
            start = next_start

        return chunks


class RecursiveSplitter:
    """
    Markdown-aware recursive character splitter.

    Uses LangChain's RecursiveCharacterTextSplitter, trying paragraph breaks
    first, then lines, then words, then single characters.
    """

    def __init__(self, chunk_size: int, chunk_overlap: int = 0) -> None:
        _validate_window(chunk_size, chunk_overlap, "chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            is_separator_regex=False,
            separators=[
                "\n\n",  # Paragraph breaks
                "\n",
                " ",
                "",  # Character-level fallback
            ],
        )

    def split_text(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []
        return [piece for piece in self._splitter.split_text(text) if piece.strip()]


def create_chunks(
    splitter: Splitter,
    texts: Sequence[str],
    metadatas: Optional[Sequence[Mapping[str, Any]]] = None,
) -> list[Chunk]:
    """
    Split texts and attach metadata to every resulting chunk.

    Args:
        splitter: Any object implementing the Splitter protocol
        texts: Texts to split
        metadatas: One metadata mapping per text (optional)

    Returns:
        Chunks in text order, each with an independent metadata copy

    Raises:
        SplitterError: If metadatas is given and its length differs from texts
    """
    if metadatas is None or len(metadatas) == 0:
        metadatas = [{} for _ in texts]

    if len(texts) != len(metadatas):
        raise SplitterError(
            f"number of texts ({len(texts)}) and metadata entries "
            f"({len(metadatas)}) must match",
            operation="split_documents",
        )

    chunks: list[Chunk] = []
    for text, metadata in zip(texts, metadatas):
        for piece in splitter.split_text(text):
            chunks.append(Chunk(content=piece, metadata=copy_metadata(metadata)))

    return chunks


def split_documents(splitter: Splitter, documents: Sequence[Document]) -> list[Chunk]:
    """Split documents into chunks, keeping each document's metadata."""
    texts = [doc.content for doc in documents]
    metadatas = [doc.metadata for doc in documents]
    chunks = create_chunks(splitter, texts, metadatas)
    logger.debug(f"Split {len(documents)} documents into {len(chunks)} chunks")
    return chunks
