"""API integration tests for filedeps endpoints."""

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from filedeps.api.server import create_app
from filedeps.config.parser import ProjectConfig
from filedeps.engine.assembler import node_id
from filedeps.exceptions import StorageUnavailable
from filedeps.storage.sqlite import SQLiteStorage

from conftest import OWNER, REPO, doc, edges


@pytest.fixture
def config(tmp_path):
    return ProjectConfig(
        storage={"backend": "sqlite", "sqlite_path": str(tmp_path / "api.db")},
        query={"default_max_depth": 3, "max_depth_limit": 10},
    )


@pytest_asyncio.fixture
async def store(config):
    storage = SQLiteStorage(db_path=config.storage.sqlite_path, busy_timeout=1.0)
    # ASGITransport does not run the lifespan
    await storage.initialize()
    return storage


@pytest.fixture
def app(config, store):
    return create_app(config, store)


@pytest_asyncio.fixture
async def client(app):
    """HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def index_payload():
    return {
        "main.py": [("pkg#helper.", 2), ("pkg#Config.", 2)],
        "helpers.py": [("pkg#helper.", 1), ("pkg#Config.", 2)],
        "config.py": [("pkg#Config.", 1), ("pkg#helper.", 2)],
    }


@pytest_asyncio.fixture
async def loaded(store, index_payload):
    await store.load_index(OWNER, REPO, [doc(path, *occs) for path, occs in index_payload.items()])


def params(**extra):
    return {"owner_id": OWNER, "repo_url": REPO, **extra}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "uptime_seconds" in data


@pytest.mark.asyncio
async def test_ready(client):
    response = await client.get("/ready")

    assert response.status_code == 200
    assert response.json()["checks"]["database"]["status"] == "ok"


@pytest.mark.asyncio
async def test_ready_reports_unavailable_store(client, store, monkeypatch):
    async def broken_ping():
        raise StorageUnavailable("database is locked")

    monkeypatch.setattr(store, "ping", broken_ping)

    response = await client.get("/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


@pytest.mark.asyncio
async def test_request_id_header(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/metrics")

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_extract_then_query(client, loaded):
    response = await client.post("/api/v1/graph/extract", json={"owner_id": OWNER, "repo_url": REPO})

    assert response.status_code == 200
    assert response.json() == {"owner_id": OWNER, "repo_url": REPO, "edge_count": 4}

    response = await client.get("/api/v1/graph/edges", params=params())
    assert [(e["source_file"], e["target_file"]) for e in response.json()["edges"]] == [
        ("config.py", "helpers.py"),
        ("helpers.py", "config.py"),
        ("main.py", "config.py"),
        ("main.py", "helpers.py"),
    ]

    response = await client.get("/api/v1/graph/edges", params=params(source_file="main.py"))
    assert {e["target_file"] for e in response.json()["edges"]} == {"config.py", "helpers.py"}


@pytest.mark.asyncio
async def test_dependencies_endpoint(client, store):
    await store.replace_all(OWNER, REPO, edges("A->B", "B->C", "C->A"))

    response = await client.get("/api/v1/graph/dependencies", params=params(root_file="A", max_depth=5))

    assert response.status_code == 200
    data = response.json()
    assert data["rootFile"] == "A"
    assert data["edges"] == [
        {"sourceFile": "A", "targetFile": "B", "depth": 0, "isCycle": False},
        {"sourceFile": "B", "targetFile": "C", "depth": 1, "isCycle": False},
        {"sourceFile": "C", "targetFile": "A", "depth": 2, "isCycle": True},
    ]
    assert data["cycles"] == ["C → A"]


@pytest.mark.asyncio
async def test_dependencies_default_depth_from_config(client, store):
    await store.replace_all(OWNER, REPO, edges("A->B", "B->C", "C->D", "D->E", "E->F"))

    response = await client.get("/api/v1/graph/dependencies", params=params(root_file="A"))

    data = response.json()
    assert data["maxDepth"] == 3
    assert max(edge["depth"] for edge in data["edges"]) == 3


@pytest.mark.asyncio
async def test_dependencies_depth_clamped_to_limit(client, store):
    await store.replace_all(OWNER, REPO, edges("A->B"))

    response = await client.get("/api/v1/graph/dependencies", params=params(root_file="A", max_depth=99))

    assert response.status_code == 200
    assert response.json()["maxDepth"] == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("max_depth", [0, -1])
async def test_dependencies_rejects_non_positive_depth(client, max_depth):
    response = await client.get("/api/v1/graph/dependencies", params=params(root_file="A", max_depth=max_depth))

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidParameter"


@pytest.mark.asyncio
async def test_graph_endpoint(client, store):
    await store.replace_all(OWNER, REPO, edges("A->B", "B->A", "B->C"))

    response = await client.get("/api/v1/graph", params=params())

    assert response.status_code == 200
    data = response.json()
    assert {node["filePath"] for node in data["nodes"]} == {"A", "B", "C"}
    cycle_edges = {(e["source"], e["target"]) for e in data["edges"] if e["isCycle"]}
    assert cycle_edges == {(node_id("A"), node_id("B")), (node_id("B"), node_id("A"))}
    assert data["cycles"] == ["A → B", "B → A"]


@pytest.mark.asyncio
async def test_references_endpoint(client, loaded):
    response = await client.get("/api/v1/graph/references", params=params(symbol="pkg#helper."))

    assert response.status_code == 200
    assert [r["filePath"] for r in response.json()] == ["config.py", "helpers.py", "main.py"]

    response = await client.get(
        "/api/v1/graph/references", params=params(symbol="pkg#helper.", role="definition")
    )
    assert [r["filePath"] for r in response.json()] == ["helpers.py"]


@pytest.mark.asyncio
async def test_references_rejects_unknown_role(client):
    response = await client.get("/api/v1/graph/references", params=params(symbol="pkg#x.", role="writes"))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_extract_rejected_while_running(client, app):
    async with app.state.extractor.locks.hold((OWNER, REPO)):
        response = await client.post(
            "/api/v1/graph/extract", json={"owner_id": OWNER, "repo_url": REPO, "wait": False}
        )

    assert response.status_code == 409
    assert response.json()["error"] == "ExtractionInProgress"


@pytest.mark.asyncio
async def test_storage_failure_maps_to_503(client, store, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise StorageUnavailable("disk gone")

    monkeypatch.setattr(store, "all_edges_for", unavailable)

    response = await client.get("/api/v1/graph/edges", params=params())

    assert response.status_code == 503
    assert response.json() == {"error": "StorageUnavailable", "detail": "disk gone"}


@pytest.mark.asyncio
async def test_missing_query_parameter(client):
    response = await client.get("/api/v1/graph/dependencies", params={"owner_id": OWNER})

    assert response.status_code == 422
