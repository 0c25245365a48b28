"""Dependency graph engine: edge extraction, closure queries and graph assembly."""

from .assembler import GraphAssembler, edge_id, find_cycle_edges, node_id
from .closure import ClosureEngine
from .extractor import EdgeExtractor, KeyedLocks

__all__ = [
    "ClosureEngine",
    "EdgeExtractor",
    "GraphAssembler",
    "KeyedLocks",
    "edge_id",
    "find_cycle_edges",
    "node_id",
]
