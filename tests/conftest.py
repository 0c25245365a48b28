"""Shared fixtures for filedeps tests."""

import pytest
import pytest_asyncio

from filedeps.models.edge import DependencyEdge, DepType
from filedeps.models.occurrence import DocumentInput, OccurrenceInput, SymbolRole
from filedeps.storage.sqlite import SQLiteStorage

OWNER = "owner-1"
REPO = "https://github.com/acme/widgets"

DEF = int(SymbolRole.DEFINITION)
REF = int(SymbolRole.REFERENCE)


def doc(path, *occurrences, language="python"):
    """Build an index document from `(symbol, roles)` pairs."""
    return DocumentInput(
        path=path,
        language=language,
        occurrences=[
            OccurrenceInput(symbol=symbol, roles=roles, range=[line, 0, line, len(symbol)])
            for line, (symbol, roles) in enumerate(occurrences)
        ],
    )


def edge(source, target, dep_type=DepType.REFERENCE, owner_id=OWNER, repo_url=REPO):
    return DependencyEdge(
        owner_id=owner_id,
        repo_url=repo_url,
        source_file=source,
        target_file=target,
        dep_type=dep_type,
    )


def edges(*pairs):
    """Edges for `"A->B"` style strings."""
    return [edge(*pair.split("->")) for pair in pairs]


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "filedeps.db"


@pytest_asyncio.fixture
async def store(db_path):
    """Initialized SQLite store in a temporary directory."""
    storage = SQLiteStorage(db_path=str(db_path), busy_timeout=1.0)
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def sample_documents():
    """Three files where main uses utils and config, and utils uses config."""
    return [
        doc(
            "src/main.py",
            ("pkg/main#run().", DEF),
            ("pkg/utils#helper().", REF),
            ("pkg/config#Settings#", REF),
        ),
        doc(
            "src/utils.py",
            ("pkg/utils#helper().", DEF),
            ("pkg/config#Settings#", REF),
        ),
        doc(
            "src/config.py",
            ("pkg/config#Settings#", DEF),
        ),
    ]
