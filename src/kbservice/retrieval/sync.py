"""
Synchronization of a vector store with a document source.

For each document produced by a data source the engine decides whether the
indexed copy is current. Unchanged documents are skipped without any
embedding or store call; new and changed documents are split, embedded and
swapped in for whatever chunks the store held for the same source.
"""

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import ContextManager, Optional

from kbservice.errors import OperationCancelledError, SyncError
from kbservice.retrieval.chunker import Splitter, create_chunks
from kbservice.retrieval.data_ingestion import DataSource, LoadOptions
from kbservice.retrieval.models import LAST_MODIFIED_KEY, SOURCE_KEY, Chunk, Document
from kbservice.retrieval.vectorstore import TransactionalStore, VectorStore

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    """How an incoming document relates to what the store already holds."""

    UNSEEN = "unseen"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


@dataclass
class SyncReport:
    """Summary of one sync run."""

    added: int = 0
    """Documents whose chunks were (re)written."""

    skipped: int = 0
    """Documents found unchanged."""

    chunks_written: int = 0
    """Chunks added across all documents."""

    failed_source: Optional[str] = None
    """Source of the document that aborted the run, if any."""

    @property
    def processed(self) -> int:
        return self.added + self.skipped


def _check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("sync cancelled")


class SyncEngine:
    """
    Keeps a vector store consistent with a data source.

    Documents are handled one at a time in stream order. For a document that
    needs indexing, every chunk is embedded before the store is touched, so
    an embedding failure leaves the previous version in place. The old chunks
    are then deleted by ``{source: X}`` and the new ones added, inside
    ``transaction()`` when the store provides one.

    Example:
        >>> engine = SyncEngine(vector_store, CharacterSplitter(500, 50))
        >>> report = engine.run(FileSystemSource("data/raw"))
        >>> report.added, report.skipped
        (12, 30)
    """

    def __init__(self, vector_store: VectorStore, splitter: Splitter) -> None:
        self.vector_store = vector_store
        self.splitter = splitter

    def classify(self, document: Document) -> SourceState:
        """
        Look up the document's (source, last_modified) pair.

        A document without ``last_modified`` cannot be recognized as already
        indexed and is always reported as unseen.
        """
        metadata = document.version_metadata()
        if LAST_MODIFIED_KEY not in metadata:
            return SourceState.UNSEEN

        candidate = Chunk(content=document.content, metadata=metadata)
        exists = self.vector_store.document_exists([candidate])
        return SourceState.UNCHANGED if exists and exists[0] else SourceState.CHANGED

    def sync_document(
        self, document: Document, cancel: Optional[threading.Event] = None
    ) -> tuple[SourceState, int]:
        """
        Bring the store up to date for a single document.

        Returns:
            The document's state and the number of chunks written

        Raises:
            ValueError: If the document has no source
            OperationCancelledError: If cancelled between steps
        """
        if not document.source:
            raise ValueError("document has no source; it cannot be deduplicated")

        _check_cancelled(cancel)
        state = self.classify(document)
        if state is SourceState.UNCHANGED:
            logger.debug(f"Skipping unchanged source {document.source}")
            return state, 0

        metadata = document.version_metadata()
        chunks = create_chunks(self.splitter, [document.content], [metadata])

        _check_cancelled(cancel)
        vectors = self.vector_store.embed_chunks(chunks) if chunks else None

        _check_cancelled(cancel)
        with self._transaction():
            self.vector_store.delete({SOURCE_KEY: document.source})
            if chunks:
                self.vector_store.add_embedded(chunks, vectors)

        logger.info(f"Indexed {len(chunks)} chunks for {state.value} source {document.source}")
        return state, len(chunks)

    def run(
        self,
        source: DataSource,
        options: Optional[LoadOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncReport:
        """
        Consume the source's stream until it ends, fails or is cancelled.

        Raises:
            SyncError: On the first error item or failed document; ``source``
                names the document that triggered it and ``report`` holds the
                counts so far, with ``failed_source`` set
            OperationCancelledError: If ``cancel`` is set during the run
        """
        cancel = cancel or threading.Event()
        report = SyncReport()
        stream = source.stream(options or LoadOptions(), cancel)

        try:
            for item in stream:
                _check_cancelled(cancel)

                if not item.ok:
                    failed = getattr(item.error, "source", None)
                    report.failed_source = failed
                    logger.error(f"Data source error, aborting sync: {item.error}")
                    raise SyncError(str(item.error), source=failed, report=report) from item.error

                document = item.document
                try:
                    state, written = self.sync_document(document, cancel)
                except OperationCancelledError:
                    raise
                except Exception as e:
                    report.failed_source = document.source
                    logger.error(f"Sync failed at {document.source}: {e}")
                    raise SyncError(str(e), source=document.source, report=report) from e

                if state is SourceState.UNCHANGED:
                    report.skipped += 1
                else:
                    report.added += 1
                    report.chunks_written += written

            # A cancelled stream ends quietly; surface it here.
            _check_cancelled(cancel)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        logger.info(
            f"Sync finished: {report.added} indexed, {report.skipped} unchanged, "
            f"{report.chunks_written} chunks written"
        )
        return report

    def _transaction(self) -> ContextManager[None]:
        store = self.vector_store.store
        if isinstance(store, TransactionalStore):
            return store.transaction()
        return nullcontext()
