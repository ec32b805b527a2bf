"""
Core data model shared by splitters, stores and the sync engine.

Metadata maps are free-form. Two keys carry meaning for synchronization:
``source`` identifies the logical document and ``last_modified`` is an
opaque version marker compared by equality only.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

SOURCE_KEY = "source"
LAST_MODIFIED_KEY = "last_modified"

Metadata = dict[str, Any]
Filter = Mapping[str, Any]


class DistanceMetric(str, Enum):
    """Distance function used by a store to rank vectors."""

    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    INNER_PRODUCT = "inner_product"


@dataclass(frozen=True)
class Document:
    """A raw document produced by a data source."""

    content: str
    """Full text of the document."""

    metadata: Metadata = field(default_factory=dict)
    """Free-form attributes; see SOURCE_KEY and LAST_MODIFIED_KEY."""

    source: str = ""
    """Logical identifier of the document (URL, path, object key)."""

    def version_metadata(self) -> Metadata:
        """Return a copy of the metadata with ``source`` stamped in."""
        metadata = copy.deepcopy(self.metadata)
        if self.source:
            metadata[SOURCE_KEY] = self.source
        return metadata


@dataclass
class Chunk:
    """A split, independently embeddable slice of a document."""

    content: str
    """The text content of the chunk."""

    metadata: Metadata = field(default_factory=dict)
    """Copy of the owning document's metadata."""


@dataclass
class ScoredChunk(Chunk):
    """A chunk returned by similarity search. Higher score is always better."""

    score: float = 0.0


def copy_metadata(metadata: Mapping[str, Any] | None) -> Metadata:
    """Deep-copy a metadata mapping so chunks never alias each other."""
    if not metadata:
        return {}
    return copy.deepcopy(dict(metadata))
