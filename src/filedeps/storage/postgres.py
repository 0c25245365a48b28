"""PostgreSQL storage backend for filedeps.

Uses the production layout: the indexer writes
`code_intelligence.scip_documents` / `code_intelligence.scip_occurrences`
and edges live in `code_graph.file_dependencies`.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set

import asyncpg

from ..exceptions import InvalidParameter, PartialRebuildPrevented, StorageUnavailable
from ..logging import get_logger
from ..models.edge import DependencyEdge, DepType, merge_edges
from ..models.graph import ReferenceResult
from ..models.occurrence import Document, DocumentInput, FileInfo, Occurrence, Position, SymbolRole
from .base import EdgeSnapshot, GraphStore

logger = get_logger(__name__)

_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)

_DERIVE_EDGES_SQL = """
    SELECT DISTINCT
        ref_doc.relative_uri AS source_file,
        def_doc.relative_uri AS target_file
    FROM code_intelligence.scip_occurrences ref_occ
    JOIN code_intelligence.scip_documents   ref_doc ON ref_doc.id = ref_occ.document_id
    JOIN code_intelligence.scip_occurrences def_occ ON def_occ.symbol = ref_occ.symbol
    JOIN code_intelligence.scip_documents   def_doc ON def_doc.id = def_occ.document_id
    WHERE ref_doc.owner_id = $1
      AND ref_doc.repo_url = $2
      AND def_doc.owner_id = $1
      AND def_doc.repo_url = $2
      AND (ref_occ.role_flags & $3) <> 0
      AND (def_occ.role_flags & $4) <> 0
      AND ref_doc.id <> def_doc.id
      AND ref_doc.relative_uri <> def_doc.relative_uri
"""


def _edge(owner_id: str, repo_url: str, record) -> DependencyEdge:
    return DependencyEdge(
        owner_id=owner_id,
        repo_url=repo_url,
        source_file=record["source_file"],
        target_file=record["target_file"],
        dep_type=DepType(record["dep_type"]),
    )


class PostgresEdgeSnapshot(EdgeSnapshot):
    """Edge reads inside one REPEATABLE READ transaction."""

    def __init__(self, conn, owner_id: str, repo_url: str):
        self.conn = conn
        self.owner_id = owner_id
        self.repo_url = repo_url

    async def edges_from(self, source_file: str) -> Set[DependencyEdge]:
        rows = await self.conn.fetch("""
            SELECT source_file, target_file, dep_type
            FROM code_graph.file_dependencies
            WHERE owner_id = $1 AND repo_url = $2 AND source_file = $3
        """, self.owner_id, self.repo_url, source_file)
        return {_edge(self.owner_id, self.repo_url, row) for row in rows}

    async def edges_from_many(self, source_files: Iterable[str]) -> Dict[str, Set[DependencyEdge]]:
        sources = sorted(set(source_files))
        result: Dict[str, Set[DependencyEdge]] = {source: set() for source in sources}
        rows = await self.conn.fetch("""
            SELECT source_file, target_file, dep_type
            FROM code_graph.file_dependencies
            WHERE owner_id = $1 AND repo_url = $2 AND source_file = ANY($3::text[])
        """, self.owner_id, self.repo_url, sources)
        for row in rows:
            result[row["source_file"]].add(_edge(self.owner_id, self.repo_url, row))
        return result

    async def all_edges(self) -> Set[DependencyEdge]:
        rows = await self.conn.fetch("""
            SELECT source_file, target_file, dep_type
            FROM code_graph.file_dependencies
            WHERE owner_id = $1 AND repo_url = $2
        """, self.owner_id, self.repo_url)
        return {_edge(self.owner_id, self.repo_url, row) for row in rows}


class PostgresStorage(GraphStore):
    """PostgreSQL storage backend.

    Rebuilds of one repository serialize on a transaction-scoped advisory
    lock, so competing extractions in other processes wait rather than
    interleave their delete and insert phases.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string

    @asynccontextmanager
    async def connection(self):
        """Get database connection."""
        try:
            conn = await asyncpg.connect(self.connection_string)
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cannot connect to PostgreSQL: {e}") from e
        try:
            yield conn
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"PostgreSQL connection lost: {e}") from e
        finally:
            await conn.close()

    async def initialize(self) -> None:
        async with self.connection() as conn:
            await conn.execute("""
                CREATE SCHEMA IF NOT EXISTS code_intelligence;
                CREATE SCHEMA IF NOT EXISTS code_graph;

                CREATE TABLE IF NOT EXISTS code_intelligence.scip_documents (
                    id BIGSERIAL PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    repo_url VARCHAR(1000) NOT NULL,
                    relative_uri VARCHAR(2000) NOT NULL,
                    language VARCHAR(100),
                    UNIQUE (owner_id, repo_url, relative_uri)
                );

                CREATE TABLE IF NOT EXISTS code_intelligence.scip_occurrences (
                    id BIGSERIAL PRIMARY KEY,
                    document_id BIGINT NOT NULL
                        REFERENCES code_intelligence.scip_documents(id) ON DELETE CASCADE,
                    symbol TEXT NOT NULL,
                    role_flags INTEGER NOT NULL DEFAULT 0,
                    start_line INTEGER NOT NULL DEFAULT 0,
                    start_char INTEGER NOT NULL DEFAULT 0,
                    end_line INTEGER NOT NULL DEFAULT 0,
                    end_char INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_scip_occurrences_symbol
                ON code_intelligence.scip_occurrences (symbol);

                CREATE INDEX IF NOT EXISTS idx_scip_occurrences_document
                ON code_intelligence.scip_occurrences (document_id);
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS code_graph.file_dependencies (
                    owner_id TEXT NOT NULL,
                    repo_url VARCHAR(1000) NOT NULL,
                    source_file VARCHAR(2000) NOT NULL,
                    target_file VARCHAR(2000) NOT NULL,
                    dep_type VARCHAR(50) NOT NULL DEFAULT 'reference',
                    PRIMARY KEY (owner_id, repo_url, source_file, target_file),
                    CHECK (source_file <> target_file)
                );

                CREATE INDEX IF NOT EXISTS idx_file_dependencies_target
                ON code_graph.file_dependencies (owner_id, repo_url, target_file);
            """)

        logger.info("storage_initialized", backend="postgres")

    async def ping(self) -> None:
        async with self.connection() as conn:
            await conn.fetchval("SELECT 1")

    # Occurrence index

    async def load_index(self, owner_id: str, repo_url: str, documents: Sequence[DocumentInput]) -> int:
        paths = [doc.path for doc in documents]
        if len(paths) != len(set(paths)):
            raise InvalidParameter("index contains the same document path more than once")

        occurrence_count = 0
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute("""
                    DELETE FROM code_intelligence.scip_documents
                    WHERE owner_id = $1 AND repo_url = $2
                """, owner_id, repo_url)

                for doc in documents:
                    document_id = await conn.fetchval("""
                        INSERT INTO code_intelligence.scip_documents
                        (owner_id, repo_url, relative_uri, language)
                        VALUES ($1, $2, $3, $4)
                        RETURNING id
                    """, owner_id, repo_url, doc.path, doc.language)

                    if doc.occurrences:
                        await conn.executemany("""
                            INSERT INTO code_intelligence.scip_occurrences
                            (document_id, symbol, role_flags, start_line, start_char, end_line, end_char)
                            VALUES ($1, $2, $3, $4, $5, $6, $7)
                        """, [
                            (document_id, occ.symbol, occ.roles, *occ.position.as_tuple())
                            for occ in doc.occurrences
                        ])
                    occurrence_count += len(doc.occurrences)

        logger.info(
            "index_loaded",
            owner_id=owner_id,
            repo_url=repo_url,
            documents=len(documents),
            occurrences=occurrence_count,
        )
        return occurrence_count

    async def query_occurrences(self, owner_id: str, repo_url: str) -> AsyncIterator[Occurrence]:
        async with self.connection() as conn:
            async with conn.transaction(readonly=True):
                async for record in conn.cursor("""
                    SELECT o.document_id, o.symbol, o.role_flags,
                           o.start_line, o.start_char, o.end_line, o.end_char
                    FROM code_intelligence.scip_occurrences o
                    JOIN code_intelligence.scip_documents d ON d.id = o.document_id
                    WHERE d.owner_id = $1 AND d.repo_url = $2
                    ORDER BY o.id
                """, owner_id, repo_url):
                    yield Occurrence(
                        document_id=record["document_id"],
                        symbol=record["symbol"],
                        role_flags=record["role_flags"],
                        position=Position(
                            start_line=record["start_line"],
                            start_char=record["start_char"],
                            end_line=record["end_line"],
                            end_char=record["end_char"],
                        ),
                    )

    async def derive_edges(self, owner_id: str, repo_url: str) -> AsyncIterator[DependencyEdge]:
        async with self.connection() as conn:
            # Server-side cursors only exist inside a transaction
            async with conn.transaction(readonly=True):
                async for record in conn.cursor(
                    _DERIVE_EDGES_SQL,
                    owner_id,
                    repo_url,
                    int(SymbolRole.REFERENCE),
                    int(SymbolRole.DEFINITION),
                ):
                    yield DependencyEdge(
                        owner_id=owner_id,
                        repo_url=repo_url,
                        source_file=record["source_file"],
                        target_file=record["target_file"],
                        dep_type=DepType.REFERENCE,
                    )

    async def find_references(
        self,
        owner_id: str,
        repo_url: str,
        symbol: str,
        role: Optional[SymbolRole] = None,
    ) -> List[ReferenceResult]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT d.relative_uri, o.start_line, o.start_char, o.end_line, o.end_char,
                       o.symbol, o.role_flags
                FROM code_intelligence.scip_occurrences o
                JOIN code_intelligence.scip_documents d ON d.id = o.document_id
                WHERE d.owner_id = $1 AND d.repo_url = $2 AND o.symbol = $3
                  AND ($4::integer IS NULL OR (o.role_flags & $4) <> 0)
                ORDER BY d.relative_uri, o.start_line, o.start_char
            """, owner_id, repo_url, symbol, int(role) if role is not None else None)

        return [
            ReferenceResult(
                file_path=row["relative_uri"],
                start_line=row["start_line"],
                start_char=row["start_char"],
                end_line=row["end_line"],
                end_char=row["end_char"],
                symbol=row["symbol"],
                role_flags=row["role_flags"],
            )
            for row in rows
        ]

    async def lookup_document(self, document_id: int) -> Optional[Document]:
        async with self.connection() as conn:
            row = await conn.fetchrow("""
                SELECT id, owner_id, repo_url, relative_uri, language
                FROM code_intelligence.scip_documents
                WHERE id = $1
            """, document_id)

        if row is None:
            return None
        return Document(
            id=row["id"],
            owner_id=row["owner_id"],
            repo_url=row["repo_url"],
            relative_path=row["relative_uri"],
            language=row["language"],
        )

    async def describe_files(self, owner_id: str, repo_url: str, paths: Iterable[str]) -> Dict[str, FileInfo]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT relative_uri, language
                FROM code_intelligence.scip_documents
                WHERE owner_id = $1 AND repo_url = $2 AND relative_uri = ANY($3::text[])
            """, owner_id, repo_url, sorted(set(paths)))

        return {
            row["relative_uri"]: FileInfo(relative_path=row["relative_uri"], language=row["language"])
            for row in rows
        }

    # Edge store

    async def replace_all(self, owner_id: str, repo_url: str, edges: Iterable[DependencyEdge]) -> int:
        staged = merge_edges(edges)
        for edge in staged:
            if (edge.owner_id, edge.repo_url) != (owner_id, repo_url):
                raise InvalidParameter(
                    f"edge {edge.source_file} -> {edge.target_file} belongs to "
                    f"{edge.owner_id}/{edge.repo_url}, not {owner_id}/{repo_url}"
                )

        async with self.connection() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1 || '|' || $2))",
                        owner_id, repo_url,
                    )
                    await conn.execute("""
                        DELETE FROM code_graph.file_dependencies
                        WHERE owner_id = $1 AND repo_url = $2
                    """, owner_id, repo_url)
                    if staged:
                        await conn.executemany("""
                            INSERT INTO code_graph.file_dependencies
                            (owner_id, repo_url, source_file, target_file, dep_type)
                            VALUES ($1, $2, $3, $4, $5)
                        """, [
                            (owner_id, repo_url, edge.source_file, edge.target_file, edge.dep_type.value)
                            for edge in staged
                        ])
            except _UNAVAILABLE_ERRORS:
                # Mapped to StorageUnavailable by connection()
                raise
            except Exception as e:
                logger.error(
                    "edge_rebuild_rolled_back",
                    owner_id=owner_id,
                    repo_url=repo_url,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise PartialRebuildPrevented(
                    f"Edge rebuild for {owner_id}/{repo_url} aborted; previous edges kept"
                ) from e

        return len(staged)

    async def all_edges_for(self, owner_id: str, repo_url: str) -> Set[DependencyEdge]:
        async with self.connection() as conn:
            return await PostgresEdgeSnapshot(conn, owner_id, repo_url).all_edges()

    async def edges_from(self, owner_id: str, repo_url: str, source_file: str) -> Set[DependencyEdge]:
        async with self.connection() as conn:
            return await PostgresEdgeSnapshot(conn, owner_id, repo_url).edges_from(source_file)

    @asynccontextmanager
    async def snapshot(self, owner_id: str, repo_url: str) -> AsyncIterator[PostgresEdgeSnapshot]:
        async with self.connection() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                yield PostgresEdgeSnapshot(conn, owner_id, repo_url)
