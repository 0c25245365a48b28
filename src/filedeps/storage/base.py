"""Storage backend abstraction for filedeps.

A `GraphStore` plays two roles. It is the read side of the occurrence
index produced by the external indexer, and it is the durable edge store
the extractor writes and the query engines read. Keeping both in one
backend lets the extractor push the occurrence join down into the
database as a single set-oriented statement.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set

from ..models.edge import DependencyEdge
from ..models.graph import ReferenceResult
from ..models.occurrence import Document, DocumentInput, FileInfo, Occurrence, SymbolRole


class StorageBackend(str, Enum):
    """Storage backend types."""
    SQLITE = "sqlite"
    POSTGRES = "postgres"


class EdgeSnapshot(ABC):
    """Read view pinned to one generation of an `(owner, repo)` edge set.

    A `replace_all` that commits while the view is open is not visible
    through it.
    """

    @abstractmethod
    async def edges_from(self, source_file: str) -> Set[DependencyEdge]:
        """Direct outgoing edges of one file."""

    async def edges_from_many(self, source_files: Iterable[str]) -> Dict[str, Set[DependencyEdge]]:
        """Direct outgoing edges for several files, keyed by source file."""
        return {source: await self.edges_from(source) for source in source_files}

    @abstractmethod
    async def all_edges(self) -> Set[DependencyEdge]:
        """Every edge in the pinned edge set."""


class GraphStore(ABC):
    """Abstract base class for occurrence and edge storage backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise `StorageUnavailable` if the backend cannot be reached."""

    # Occurrence index

    @abstractmethod
    async def load_index(self, owner_id: str, repo_url: str, documents: Sequence[DocumentInput]) -> int:
        """Replace the occurrence index of a repository.

        Returns:
            Number of occurrences stored.
        """

    @abstractmethod
    def query_occurrences(self, owner_id: str, repo_url: str) -> AsyncIterator[Occurrence]:
        """Stream every occurrence recorded for a repository."""

    @abstractmethod
    def derive_edges(self, owner_id: str, repo_url: str) -> AsyncIterator[DependencyEdge]:
        """Stream the distinct cross-file edges implied by the occurrence index.

        A file that references a symbol depends on every other file of the
        same repository that defines it.
        """

    @abstractmethod
    async def find_references(
        self,
        owner_id: str,
        repo_url: str,
        symbol: str,
        role: Optional[SymbolRole] = None,
    ) -> List[ReferenceResult]:
        """All occurrences of a symbol, optionally restricted to one role."""

    @abstractmethod
    async def lookup_document(self, document_id: int) -> Optional[Document]:
        """Document metadata by id."""

    @abstractmethod
    async def describe_files(self, owner_id: str, repo_url: str, paths: Iterable[str]) -> Dict[str, FileInfo]:
        """Metadata for the given paths. Unknown paths are omitted."""

    # Edge store

    @abstractmethod
    async def replace_all(self, owner_id: str, repo_url: str, edges: Iterable[DependencyEdge]) -> int:
        """Atomically swap the edge set of a repository.

        Raises:
            StorageUnavailable: The store cannot be reached.
            PartialRebuildPrevented: The swap aborted and was rolled back.

        Returns:
            Number of edges stored.
        """

    @abstractmethod
    async def all_edges_for(self, owner_id: str, repo_url: str) -> Set[DependencyEdge]:
        """Every edge of a repository."""

    @abstractmethod
    async def edges_from(self, owner_id: str, repo_url: str, source_file: str) -> Set[DependencyEdge]:
        """Direct outgoing edges of one file."""

    @abstractmethod
    @asynccontextmanager
    async def snapshot(self, owner_id: str, repo_url: str) -> AsyncIterator[EdgeSnapshot]:
        """Open a read view pinned to the current edge set generation."""
        yield  # pragma: no cover


def get_storage(config) -> GraphStore:
    """Build the storage backend selected by a `ProjectConfig`."""
    backend = StorageBackend(config.storage.backend)

    if backend == StorageBackend.POSTGRES:
        from .postgres import PostgresStorage
        return PostgresStorage(config.storage.postgres_url)

    from .sqlite import SQLiteStorage
    return SQLiteStorage(
        db_path=config.storage.sqlite_path,
        busy_timeout=config.storage.busy_timeout_seconds,
    )
