"""Assembly of the full repository graph for visualization."""

import hashlib
from pathlib import PurePosixPath
from typing import Dict, Iterable, Set, Tuple

import networkx as nx

from ..logging import get_logger
from ..metrics import GRAPH_NODES
from ..models.edge import DependencyEdge
from ..models.graph import GraphEdge, GraphNode, GraphView, format_cycle
from ..storage.base import GraphStore
from .params import require_identifier

logger = get_logger(__name__)

UNKNOWN_LANGUAGE = "unknown"


def node_id(path: str) -> str:
    """Stable node identifier derived from a file path."""
    return "n_" + hashlib.sha1(path.encode("utf-8")).hexdigest()[:16]


def edge_id(source: str, target: str) -> str:
    """Stable edge identifier derived from the two endpoint paths."""
    return "e_" + hashlib.sha1(f"{source}\0{target}".encode("utf-8")).hexdigest()[:16]


def build_digraph(edges: Iterable[DependencyEdge]) -> nx.DiGraph:
    """File-level directed graph of the given edges."""
    graph = nx.DiGraph()
    graph.add_edges_from(edge.key for edge in edges)
    return graph


def find_cycle_edges(edges: Iterable[DependencyEdge]) -> Set[Tuple[str, str]]:
    """File pairs whose edge lies on at least one dependency cycle."""
    edge_list = list(edges)
    graph = build_digraph(edge_list)

    component_of: Dict[str, int] = {}
    for number, component in enumerate(nx.strongly_connected_components(graph)):
        for member in component:
            component_of[member] = number

    # Self-loops are never stored, so a shared component means a real cycle
    return {
        edge.key for edge in edge_list
        if component_of[edge.source_file] == component_of[edge.target_file]
    }


class GraphAssembler:
    """Builds a `GraphView` of every stored edge of a repository."""

    def __init__(self, store: GraphStore):
        self.store = store

    async def assemble_graph(self, owner_id: str, repo_url: str) -> GraphView:
        require_identifier(owner_id, "owner_id")
        require_identifier(repo_url, "repo_url")

        async with self.store.snapshot(owner_id, repo_url) as view:
            edges = sorted(await view.all_edges(), key=lambda e: e.key)

        files = sorted({e.source_file for e in edges} | {e.target_file for e in edges})
        file_info = await self.store.describe_files(owner_id, repo_url, files)
        cyclic = find_cycle_edges(edges)

        nodes = []
        for path in files:
            info = file_info.get(path)
            nodes.append(GraphNode(
                id=node_id(path),
                label=PurePosixPath(path).name or path,
                file_path=path,
                language=(info.language if info and info.language else UNKNOWN_LANGUAGE),
            ))

        graph_edges = [
            GraphEdge(
                id=edge_id(edge.source_file, edge.target_file),
                source=node_id(edge.source_file),
                target=node_id(edge.target_file),
                type=edge.dep_type.value,
                is_cycle=edge.key in cyclic,
            )
            for edge in edges
        ]
        cycles = [format_cycle(source, target) for source, target in sorted(cyclic)]

        GRAPH_NODES.observe(len(nodes))
        logger.info(
            "graph_assembled",
            owner_id=owner_id,
            repo_url=repo_url,
            nodes=len(nodes),
            edges=len(graph_edges),
            cycle_edges=len(cycles),
        )
        return GraphView(nodes=nodes, edges=graph_edges, cycles=cycles)
