"""API endpoints for the file dependency graph."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..engine import ClosureEngine, EdgeExtractor, GraphAssembler
from ..engine.params import parse_role_filter, require_identifier
from ..models.graph import ClosureResult, GraphView, ReferenceResult
from ..storage.base import GraphStore

router = APIRouter(prefix="/api/v1/graph", tags=["graph"])


class ExtractRequest(BaseModel):
    """Request model for edge extraction."""
    owner_id: str
    repo_url: str
    wait: Optional[bool] = None


class ExtractResponse(BaseModel):
    owner_id: str
    repo_url: str
    edge_count: int


class EdgeResponse(BaseModel):
    source_file: str
    target_file: str
    dep_type: str


class EdgesResponse(BaseModel):
    owner_id: str
    repo_url: str
    edges: List[EdgeResponse]


def get_store(request: Request) -> GraphStore:
    return request.app.state.store


def get_extractor(request: Request) -> EdgeExtractor:
    return request.app.state.extractor


def get_closure_engine(request: Request) -> ClosureEngine:
    return request.app.state.closure_engine


def get_assembler(request: Request) -> GraphAssembler:
    return request.app.state.assembler


@router.post("/extract", response_model=ExtractResponse)
async def extract_edges(
    body: ExtractRequest,
    extractor: EdgeExtractor = Depends(get_extractor),
) -> ExtractResponse:
    """Rebuild the edge set of a repository from its occurrence index."""
    edge_count = await extractor.extract_edges(body.owner_id, body.repo_url, wait=body.wait)
    return ExtractResponse(owner_id=body.owner_id, repo_url=body.repo_url, edge_count=edge_count)


@router.get("/dependencies", response_model=ClosureResult)
async def get_dependencies(
    request: Request,
    owner_id: str,
    repo_url: str,
    root_file: str,
    max_depth: Optional[int] = None,
    engine: ClosureEngine = Depends(get_closure_engine),
) -> ClosureResult:
    """Transitive dependency tree of `root_file`, with cycle edges flagged."""
    if max_depth is None:
        max_depth = request.app.state.config.query.default_max_depth
    return await engine.compute_closure(owner_id, repo_url, root_file, max_depth)


@router.get("", response_model=GraphView)
async def get_graph(
    owner_id: str,
    repo_url: str,
    assembler: GraphAssembler = Depends(get_assembler),
) -> GraphView:
    """Full repository graph for the visualization client."""
    return await assembler.assemble_graph(owner_id, repo_url)


@router.get("/edges", response_model=EdgesResponse)
async def list_edges(
    owner_id: str,
    repo_url: str,
    source_file: Optional[str] = None,
    store: GraphStore = Depends(get_store),
) -> EdgesResponse:
    """Raw stored edges, optionally only those leaving one file."""
    require_identifier(owner_id, "owner_id")
    require_identifier(repo_url, "repo_url")

    if source_file is not None:
        require_identifier(source_file, "source_file")
        edges = await store.edges_from(owner_id, repo_url, source_file)
    else:
        edges = await store.all_edges_for(owner_id, repo_url)

    return EdgesResponse(
        owner_id=owner_id,
        repo_url=repo_url,
        edges=[
            EdgeResponse(source_file=e.source_file, target_file=e.target_file, dep_type=e.dep_type.value)
            for e in sorted(edges, key=lambda e: e.key)
        ],
    )


@router.get("/references", response_model=List[ReferenceResult])
async def find_references(
    owner_id: str,
    repo_url: str,
    symbol: str,
    role: Optional[str] = None,
    store: GraphStore = Depends(get_store),
) -> List[ReferenceResult]:
    """Every occurrence of a symbol, optionally only definitions or references."""
    require_identifier(owner_id, "owner_id")
    require_identifier(repo_url, "repo_url")
    require_identifier(symbol, "symbol")

    return await store.find_references(owner_id, repo_url, symbol, role=parse_role_filter(role))
