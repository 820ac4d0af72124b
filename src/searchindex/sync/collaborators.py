"""Sync collaborators — The narrow seams to the embedding application.

The sync layer never reads content itself.  It asks a
:class:`LiveDocumentSource` which records are live for an index and a
:class:`DocumentResolver` how to turn one record into an index document.
Both are supplied by the application that owns the content.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from searchindex.models.index import Index

Document = dict[str, Any]


@dataclass(frozen=True)
class LiveDocumentFilter:
    """Which live records belong to an index.

    ``criteria`` is opaque to the core (sections, entry types, site ...)
    and is taken from :attr:`Index.source_criteria`.
    """

    index_handle: str
    criteria: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def for_index(cls, index: Index) -> LiveDocumentFilter:
        return cls(index_handle=index.handle, criteria=dict(index.source_criteria))


@runtime_checkable
class DocumentResolver(Protocol):
    """Turns a source record into the document stored in the index."""

    async def resolve(self, record: Any, index: Index) -> Document | None:
        """Return the document for ``record``, or ``None`` to skip it.

        The document must contain ``objectID`` (a string, or a value that
        coerces to one).  Every other key is opaque to the core.
        """
        ...


@runtime_checkable
class LiveDocumentSource(Protocol):
    """Enumerates the records that should currently be searchable."""

    async def count(self, live_filter: LiveDocumentFilter) -> int:
        """Number of live records matching the filter."""
        ...

    async def ids_of(self, live_filter: LiveDocumentFilter) -> list[str]:
        """``objectID`` of every live record matching the filter."""
        ...

    async def fetch(self, offset: int, limit: int, live_filter: LiveDocumentFilter) -> list[Any]:
        """One page of live records, in a stable order."""
        ...
