"""
Data sources that feed the sync engine.

A data source turns some external collection (a directory of markdown files,
a list of web pages) into Documents. Sources can either return everything at
once with ``load`` or produce documents lazily with ``stream``, which runs the
producer in a background thread and yields StreamItems until it is exhausted
or the cancellation token is set.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence

import httpx

from kbservice.config import settings
from kbservice.errors import DataSourceError
from kbservice.retrieval.models import LAST_MODIFIED_KEY, Document, Metadata

logger = logging.getLogger(__name__)

# Items buffered between a producer thread and the consumer.
STREAM_BUFFER_SIZE = 16

_POLL_INTERVAL = 0.05


@dataclass
class LoadOptions:
    """
    Options for loading documents.

    Attributes:
        recursive: Descend into sub-directories / prefixes
        max_items: Maximum number of documents to produce (0 = no limit)
        filter: Predicate over document metadata; False drops the document
    """

    recursive: bool = False
    max_items: int = 0
    filter: Optional[Callable[[Metadata], bool]] = None

    def accepts(self, document: Document) -> bool:
        if self.filter is None:
            return True
        return bool(self.filter(document.version_metadata()))


@dataclass
class StreamItem:
    """One element of a document stream: either a document or an error."""

    document: Optional[Document] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DataSource(Protocol):
    """Protocol that all data sources implement."""

    def load(self, options: Optional[LoadOptions] = None) -> list[Document]:
        """Load every document at once."""
        ...

    def stream(
        self,
        options: Optional[LoadOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamItem]:
        """Produce documents lazily; errors arrive as items, not exceptions."""
        ...


def limit_documents(documents: Iterable[Document], options: LoadOptions) -> Iterator[Document]:
    """Apply the filter and max_items of LoadOptions to a document iterator."""
    produced = 0
    for document in documents:
        if not options.accepts(document):
            continue
        yield document
        produced += 1
        if options.max_items > 0 and produced >= options.max_items:
            return


def threaded_stream(
    producer: Callable[[], Iterable[Document]],
    cancel: Optional[threading.Event] = None,
    buffer_size: int = STREAM_BUFFER_SIZE,
) -> Iterator[StreamItem]:
    """
    Run a document producer in a daemon thread and yield its output.

    The producer's documents arrive as ``StreamItem(document=...)``. An
    exception raised by the producer arrives as a single
    ``StreamItem(error=...)`` and ends the stream. Setting ``cancel`` ends the
    stream promptly; the producer thread notices at its next put and exits.

    Args:
        producer: Callable returning an iterable of documents
        cancel: Cancellation token shared with the consumer
        buffer_size: Capacity of the queue between producer and consumer

    Yields:
        StreamItem per document, or one error item
    """
    cancel = cancel or threading.Event()
    items: queue.Queue = queue.Queue(maxsize=buffer_size)
    done = object()
    stopped = threading.Event()

    def put(item: Any) -> bool:
        while not (cancel.is_set() or stopped.is_set()):
            try:
                items.put(item, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def run() -> None:
        try:
            for document in producer():
                if not put(StreamItem(document=document)):
                    return
        except Exception as e:
            logger.debug(f"Producer failed: {e}")
            put(StreamItem(error=e))
        put(done)

    worker = threading.Thread(target=run, name="kbservice-datasource", daemon=True)
    worker.start()

    try:
        while not cancel.is_set():
            try:
                item = items.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is done:
                return
            yield item
            if not item.ok:
                return
    finally:
        # Release a producer blocked on a full queue once the consumer leaves.
        stopped.set()


# =============================================================================
# File system
# =============================================================================

def discover_markdown_files(data_dir: Path, recursive: bool = False, pattern: str = "*.md") -> list[Path]:
    """
    Discover all markdown files in a directory.

    Args:
        data_dir: Directory to search
        recursive: Also search sub-directories
        pattern: Glob pattern for file names

    Returns:
        Sorted list of matching file paths
    """
    matches = data_dir.rglob(pattern) if recursive else data_dir.glob(pattern)
    return sorted(path for path in matches if path.is_file())


def validate_data_directory(data_dir: Path) -> tuple[bool, str]:
    """
    Validate that a data directory contains markdown files.

    Args:
        data_dir: Directory to validate

    Returns:
        Tuple of (is_valid, message)
    """
    if not data_dir.exists():
        return False, f"Directory does not exist: {data_dir}"

    if not data_dir.is_dir():
        return False, f"Not a directory: {data_dir}"

    md_files = discover_markdown_files(data_dir, recursive=True)
    if not md_files:
        return False, f"No markdown files found in: {data_dir}"

    return True, f"Found {len(md_files)} markdown files"


class FileSystemSource:
    """
    Documents read from files under a local directory.

    Each file becomes one Document whose ``source`` is the file path and whose
    ``last_modified`` is the file's modification time as an ISO-8601 string.

    Example:
        >>> source = FileSystemSource(Path("data/raw"))
        >>> docs = source.load(LoadOptions(recursive=True))
    """

    def __init__(self, root: "str | Path | None" = None, pattern: str = "*.md") -> None:
        # Sources are absolute paths whatever form the root was given in.
        self.root = Path(root).resolve() if root is not None else settings.data_dir
        self.pattern = pattern

    def load(self, options: Optional[LoadOptions] = None) -> list[Document]:
        options = options or LoadOptions()
        return list(limit_documents(self._read_all(options), options))

    def stream(
        self,
        options: Optional[LoadOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamItem]:
        options = options or LoadOptions()
        return threaded_stream(lambda: limit_documents(self._read_all(options), options), cancel)

    def _read_all(self, options: LoadOptions) -> Iterator[Document]:
        if not self.root.exists():
            raise DataSourceError(
                f"directory does not exist: {self.root}",
                source=str(self.root),
                operation="load",
                code=DataSourceError.NOT_FOUND,
            )
        if not self.root.is_dir():
            raise DataSourceError(
                f"not a directory: {self.root}",
                source=str(self.root),
                operation="load",
                code=DataSourceError.INVALID_SOURCE,
            )

        files = discover_markdown_files(self.root, recursive=options.recursive, pattern=self.pattern)
        logger.info(f"Found {len(files)} files in {self.root}")
        for path in files:
            yield self.read_file(path)

    def read_file(self, path: Path) -> Document:
        """
        Read a single file into a Document.

        Raises:
            DataSourceError: If the file cannot be read or is not UTF-8 text
        """
        try:
            content = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except UnicodeDecodeError as e:
            raise DataSourceError(
                f"file is not valid UTF-8: {e}",
                source=str(path),
                operation="read_file",
                code=DataSourceError.INVALID_FORMAT,
            ) from e
        except PermissionError as e:
            raise DataSourceError(
                str(e), source=str(path), operation="read_file", code=DataSourceError.ACCESS_DENIED
            ) from e
        except OSError as e:
            raise DataSourceError(str(e), source=str(path), operation="read_file") from e

        modified = datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()
        return Document(
            content=content,
            metadata={
                "filename": path.name,
                "path": str(path),
                LAST_MODIFIED_KEY: modified,
            },
            source=str(path),
        )


# =============================================================================
# Web
# =============================================================================

class WebSource:
    """
    Documents fetched over HTTP, one per URL.

    ``source`` is the URL; ``last_modified`` is taken from the Last-Modified
    response header when the server sends one. Any non-200 response is an
    error for that URL.
    """

    def __init__(
        self,
        urls: Sequence[str],
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.urls = list(urls)
        self.timeout = timeout or settings.http_timeout
        self.headers = headers or {}

    def load(self, options: Optional[LoadOptions] = None) -> list[Document]:
        options = options or LoadOptions()
        return list(limit_documents(self._fetch_all(), options))

    def stream(
        self,
        options: Optional[LoadOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamItem]:
        options = options or LoadOptions()
        return threaded_stream(lambda: limit_documents(self._fetch_all(), options), cancel)

    def _fetch_all(self) -> Iterator[Document]:
        with httpx.Client(timeout=self.timeout, follow_redirects=True, headers=self.headers) as client:
            for url in self.urls:
                yield self.fetch(client, url)

    def fetch(self, client: httpx.Client, url: str) -> Document:
        """
        Fetch one URL.

        Raises:
            DataSourceError: On an invalid URL, a transport failure or a non-200 status
        """
        if httpx.URL(url).scheme not in ("http", "https"):
            raise DataSourceError(
                "only http and https URLs are supported",
                source=url,
                operation="fetch",
                code=DataSourceError.INVALID_SOURCE,
            )

        try:
            response = client.get(url)
        except httpx.HTTPError as e:
            raise DataSourceError(f"request failed: {e}", source=url, operation="fetch") from e

        if response.status_code != 200:
            raise DataSourceError(
                f"unexpected status code {response.status_code}",
                source=url,
                operation="fetch",
                code=_status_code_to_error(response.status_code),
            )

        metadata: Metadata = {"url": url}
        content_type = response.headers.get("content-type")
        if content_type:
            metadata["content_type"] = content_type
        last_modified = response.headers.get("last-modified")
        if last_modified:
            metadata[LAST_MODIFIED_KEY] = last_modified

        logger.debug(f"Fetched {url} ({len(response.text):,} chars)")
        return Document(content=response.text, metadata=metadata, source=url)


def _status_code_to_error(status_code: int) -> str:
    if status_code == 404:
        return DataSourceError.NOT_FOUND
    if status_code in (401, 403):
        return DataSourceError.ACCESS_DENIED
    return DataSourceError.INTERNAL
