"""SQLite storage backend for filedeps."""

import asyncio
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from ..exceptions import InvalidParameter, PartialRebuildPrevented, StorageUnavailable
from ..logging import get_logger
from ..models.edge import DependencyEdge, DepType, merge_edges
from ..models.graph import ReferenceResult
from ..models.occurrence import Document, DocumentInput, FileInfo, Occurrence, Position, SymbolRole
from .base import EdgeSnapshot, GraphStore

logger = get_logger(__name__)

# Stays well below SQLITE_MAX_VARIABLE_NUMBER on every build
_IN_CLAUSE_CHUNK = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    repo_url TEXT NOT NULL,
    relative_path TEXT NOT NULL,
    language TEXT,
    UNIQUE (owner_id, repo_url, relative_path)
);

CREATE TABLE IF NOT EXISTS occurrences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    symbol TEXT NOT NULL,
    role_flags INTEGER NOT NULL DEFAULT 0,
    start_line INTEGER NOT NULL DEFAULT 0,
    start_char INTEGER NOT NULL DEFAULT 0,
    end_line INTEGER NOT NULL DEFAULT 0,
    end_char INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_occurrences_symbol ON occurrences(symbol);
CREATE INDEX IF NOT EXISTS idx_occurrences_document ON occurrences(document_id);

CREATE TABLE IF NOT EXISTS file_dependencies (
    owner_id TEXT NOT NULL,
    repo_url TEXT NOT NULL,
    source_file TEXT NOT NULL,
    target_file TEXT NOT NULL,
    dep_type TEXT NOT NULL DEFAULT 'reference',
    PRIMARY KEY (owner_id, repo_url, source_file, target_file),
    CHECK (source_file <> target_file)
);

CREATE INDEX IF NOT EXISTS idx_file_dependencies_target
ON file_dependencies(owner_id, repo_url, target_file);
"""

_DERIVE_EDGES_SQL = """
    SELECT DISTINCT
        ref_doc.relative_path AS source_file,
        def_doc.relative_path AS target_file
    FROM occurrences ref_occ
    JOIN documents ref_doc ON ref_doc.id = ref_occ.document_id
    JOIN occurrences def_occ ON def_occ.symbol = ref_occ.symbol
    JOIN documents def_doc ON def_doc.id = def_occ.document_id
    WHERE ref_doc.owner_id = ?
      AND ref_doc.repo_url = ?
      AND def_doc.owner_id = ?
      AND def_doc.repo_url = ?
      AND (ref_occ.role_flags & ?) != 0
      AND (def_occ.role_flags & ?) != 0
      AND ref_doc.id <> def_doc.id
      AND ref_doc.relative_path <> def_doc.relative_path
    ORDER BY source_file, target_file
"""


def _chunks(values: List[str], size: int = _IN_CLAUSE_CHUNK) -> Iterator[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


@contextmanager
def _storage_errors(action: str):
    """Translate low-level SQLite failures into `StorageUnavailable`."""
    try:
        yield
    except sqlite3.DatabaseError as e:
        raise StorageUnavailable(f"SQLite {action} failed: {e}") from e


class SQLiteEdgeSnapshot(EdgeSnapshot):
    """Edge reads inside one open SQLite read transaction."""

    def __init__(self, conn: sqlite3.Connection, owner_id: str, repo_url: str):
        self.conn = conn
        self.owner_id = owner_id
        self.repo_url = repo_url

    def _edge(self, row) -> DependencyEdge:
        return DependencyEdge(
            owner_id=self.owner_id,
            repo_url=self.repo_url,
            source_file=row[0],
            target_file=row[1],
            dep_type=DepType(row[2]),
        )

    async def edges_from(self, source_file: str) -> Set[DependencyEdge]:
        with _storage_errors("edge read"):
            rows = self.conn.execute("""
                SELECT source_file, target_file, dep_type
                FROM file_dependencies
                WHERE owner_id = ? AND repo_url = ? AND source_file = ?
            """, (self.owner_id, self.repo_url, source_file)).fetchall()
        return {self._edge(row) for row in rows}

    async def edges_from_many(self, source_files: Iterable[str]) -> Dict[str, Set[DependencyEdge]]:
        sources = sorted(set(source_files))
        result: Dict[str, Set[DependencyEdge]] = {source: set() for source in sources}

        with _storage_errors("edge read"):
            for chunk in _chunks(sources):
                rows = self.conn.execute(f"""
                    SELECT source_file, target_file, dep_type
                    FROM file_dependencies
                    WHERE owner_id = ? AND repo_url = ?
                      AND source_file IN ({_placeholders(len(chunk))})
                """, (self.owner_id, self.repo_url, *chunk)).fetchall()
                for row in rows:
                    result[row[0]].add(self._edge(row))

        return result

    async def all_edges(self) -> Set[DependencyEdge]:
        with _storage_errors("edge read"):
            rows = self.conn.execute("""
                SELECT source_file, target_file, dep_type
                FROM file_dependencies
                WHERE owner_id = ? AND repo_url = ?
            """, (self.owner_id, self.repo_url)).fetchall()
        return {self._edge(row) for row in rows}


class SQLiteStorage(GraphStore):
    """SQLite storage backend.

    Runs in WAL mode so readers keep a consistent snapshot while a rebuild
    commits, and takes the database write lock (`BEGIN IMMEDIATE`) for
    every rebuild so concurrent writers from other processes serialize.
    """

    def __init__(self, db_path: str = "filedeps.db", busy_timeout: float = 30.0):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout

    def _open(self) -> sqlite3.Connection:
        try:
            # Autocommit mode: transactions are opened explicitly below
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open SQLite database {self.db_path}: {e}") from e
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self, conn: sqlite3.Connection):
        with _storage_errors("write lock"):
            conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    async def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create {self.db_path.parent}: {e}") from e

        with self._connection() as conn, _storage_errors("schema setup"):
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

        logger.info("storage_initialized", backend="sqlite", path=str(self.db_path))

    async def ping(self) -> None:
        with self._connection() as conn, _storage_errors("ping"):
            conn.execute("SELECT 1").fetchone()

    # Occurrence index

    async def load_index(self, owner_id: str, repo_url: str, documents: Sequence[DocumentInput]) -> int:
        paths = [doc.path for doc in documents]
        if len(paths) != len(set(paths)):
            raise InvalidParameter("index contains the same document path more than once")

        occurrence_count = await asyncio.to_thread(self._write_documents, owner_id, repo_url, documents)

        logger.info(
            "index_loaded",
            owner_id=owner_id,
            repo_url=repo_url,
            documents=len(documents),
            occurrences=occurrence_count,
        )
        return occurrence_count

    def _write_documents(self, owner_id: str, repo_url: str, documents: Sequence[DocumentInput]) -> int:
        occurrence_count = 0
        with self._connection() as conn, _storage_errors("index load"):
            with self._write_transaction(conn):
                conn.execute(
                    "DELETE FROM documents WHERE owner_id = ? AND repo_url = ?",
                    (owner_id, repo_url),
                )
                for doc in documents:
                    cursor = conn.execute("""
                        INSERT INTO documents (owner_id, repo_url, relative_path, language)
                        VALUES (?, ?, ?, ?)
                    """, (owner_id, repo_url, doc.path, doc.language))
                    document_id = cursor.lastrowid

                    conn.executemany("""
                        INSERT INTO occurrences
                        (document_id, symbol, role_flags, start_line, start_char, end_line, end_char)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, [
                        (document_id, occ.symbol, occ.roles, *occ.position.as_tuple())
                        for occ in doc.occurrences
                    ])
                    occurrence_count += len(doc.occurrences)
        return occurrence_count

    async def query_occurrences(self, owner_id: str, repo_url: str) -> AsyncIterator[Occurrence]:
        with self._connection() as conn, _storage_errors("occurrence read"):
            cursor = conn.execute("""
                SELECT o.document_id, o.symbol, o.role_flags,
                       o.start_line, o.start_char, o.end_line, o.end_char
                FROM occurrences o
                JOIN documents d ON d.id = o.document_id
                WHERE d.owner_id = ? AND d.repo_url = ?
                ORDER BY o.id
            """, (owner_id, repo_url))
            for row in cursor:
                yield Occurrence(
                    document_id=row[0],
                    symbol=row[1],
                    role_flags=row[2],
                    position=Position(start_line=row[3], start_char=row[4], end_line=row[5], end_char=row[6]),
                )

    async def derive_edges(self, owner_id: str, repo_url: str) -> AsyncIterator[DependencyEdge]:
        with self._connection() as conn, _storage_errors("edge derivation"):
            cursor = conn.execute(_DERIVE_EDGES_SQL, (
                owner_id, repo_url,
                owner_id, repo_url,
                int(SymbolRole.REFERENCE),
                int(SymbolRole.DEFINITION),
            ))
            for source_file, target_file in cursor:
                yield DependencyEdge(
                    owner_id=owner_id,
                    repo_url=repo_url,
                    source_file=source_file,
                    target_file=target_file,
                    dep_type=DepType.REFERENCE,
                )

    async def find_references(
        self,
        owner_id: str,
        repo_url: str,
        symbol: str,
        role: Optional[SymbolRole] = None,
    ) -> List[ReferenceResult]:
        query = """
            SELECT d.relative_path, o.start_line, o.start_char, o.end_line, o.end_char,
                   o.symbol, o.role_flags
            FROM occurrences o
            JOIN documents d ON d.id = o.document_id
            WHERE d.owner_id = ? AND d.repo_url = ? AND o.symbol = ?
        """
        params = [owner_id, repo_url, symbol]
        if role is not None:
            query += " AND (o.role_flags & ?) != 0"
            params.append(int(role))
        query += " ORDER BY d.relative_path, o.start_line, o.start_char"

        with self._connection() as conn, _storage_errors("reference lookup"):
            rows = conn.execute(query, params).fetchall()

        return [
            ReferenceResult(
                file_path=row[0],
                start_line=row[1],
                start_char=row[2],
                end_line=row[3],
                end_char=row[4],
                symbol=row[5],
                role_flags=row[6],
            )
            for row in rows
        ]

    async def lookup_document(self, document_id: int) -> Optional[Document]:
        with self._connection() as conn, _storage_errors("document lookup"):
            row = conn.execute("""
                SELECT id, owner_id, repo_url, relative_path, language
                FROM documents WHERE id = ?
            """, (document_id,)).fetchone()

        if row is None:
            return None
        return Document(id=row[0], owner_id=row[1], repo_url=row[2], relative_path=row[3], language=row[4])

    async def describe_files(self, owner_id: str, repo_url: str, paths: Iterable[str]) -> Dict[str, FileInfo]:
        wanted = sorted(set(paths))
        info: Dict[str, FileInfo] = {}

        with self._connection() as conn, _storage_errors("document lookup"):
            for chunk in _chunks(wanted):
                rows = conn.execute(f"""
                    SELECT relative_path, language
                    FROM documents
                    WHERE owner_id = ? AND repo_url = ?
                      AND relative_path IN ({_placeholders(len(chunk))})
                """, (owner_id, repo_url, *chunk)).fetchall()
                for path, language in rows:
                    info[path] = FileInfo(relative_path=path, language=language)

        return info

    # Edge store

    async def replace_all(self, owner_id: str, repo_url: str, edges: Iterable[DependencyEdge]) -> int:
        staged = merge_edges(edges)
        for edge in staged:
            if (edge.owner_id, edge.repo_url) != (owner_id, repo_url):
                raise InvalidParameter(
                    f"edge {edge.source_file} -> {edge.target_file} belongs to "
                    f"{edge.owner_id}/{edge.repo_url}, not {owner_id}/{repo_url}"
                )

        # Waiting on another process's write lock must not stall the event loop
        removed = await asyncio.to_thread(self._swap_edges, owner_id, repo_url, staged)

        logger.debug(
            "edges_replaced",
            owner_id=owner_id,
            repo_url=repo_url,
            removed=removed,
            inserted=len(staged),
        )
        return len(staged)

    def _swap_edges(self, owner_id: str, repo_url: str, staged: List[DependencyEdge]) -> int:
        with self._connection() as conn:
            with _storage_errors("write lock"):
                conn.execute("BEGIN IMMEDIATE")
            try:
                removed = self._delete_edges(conn, owner_id, repo_url)
                self._insert_edges(conn, owner_id, repo_url, staged)
                conn.execute("COMMIT")
            except Exception as e:
                # SQLite already rolled back on errors such as SQLITE_FULL
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
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
        return removed

    def _delete_edges(self, conn: sqlite3.Connection, owner_id: str, repo_url: str) -> int:
        cursor = conn.execute(
            "DELETE FROM file_dependencies WHERE owner_id = ? AND repo_url = ?",
            (owner_id, repo_url),
        )
        return cursor.rowcount

    def _insert_edges(
        self, conn: sqlite3.Connection, owner_id: str, repo_url: str, edges: List[DependencyEdge]
    ) -> None:
        conn.executemany("""
            INSERT INTO file_dependencies (owner_id, repo_url, source_file, target_file, dep_type)
            VALUES (?, ?, ?, ?, ?)
        """, [
            (owner_id, repo_url, edge.source_file, edge.target_file, edge.dep_type.value)
            for edge in edges
        ])

    async def all_edges_for(self, owner_id: str, repo_url: str) -> Set[DependencyEdge]:
        with self._connection() as conn:
            return await SQLiteEdgeSnapshot(conn, owner_id, repo_url).all_edges()

    async def edges_from(self, owner_id: str, repo_url: str, source_file: str) -> Set[DependencyEdge]:
        with self._connection() as conn:
            return await SQLiteEdgeSnapshot(conn, owner_id, repo_url).edges_from(source_file)

    @asynccontextmanager
    async def snapshot(self, owner_id: str, repo_url: str) -> AsyncIterator[SQLiteEdgeSnapshot]:
        with self._connection() as conn:
            with _storage_errors("snapshot"):
                conn.execute("BEGIN")
                # The first read pins the WAL snapshot for the rest of the transaction
                conn.execute(
                    "SELECT COUNT(*) FROM file_dependencies WHERE owner_id = ? AND repo_url = ?",
                    (owner_id, repo_url),
                ).fetchone()
            try:
                yield SQLiteEdgeSnapshot(conn, owner_id, repo_url)
            finally:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
