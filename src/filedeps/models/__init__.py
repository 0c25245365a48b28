"""Data models for occurrences, dependency edges and graph views."""

from .edge import DependencyEdge, DepType, merge_edges
from .graph import (
    ClosurePath,
    ClosureResult,
    GraphEdge,
    GraphNode,
    GraphView,
    ReferenceResult,
    format_cycle,
)
from .occurrence import (
    Document,
    DocumentInput,
    FileInfo,
    IndexFile,
    Occurrence,
    OccurrenceInput,
    Position,
    SymbolRole,
)

__all__ = [
    "ClosurePath",
    "ClosureResult",
    "DepType",
    "DependencyEdge",
    "Document",
    "DocumentInput",
    "FileInfo",
    "GraphEdge",
    "GraphNode",
    "GraphView",
    "IndexFile",
    "Occurrence",
    "OccurrenceInput",
    "Position",
    "ReferenceResult",
    "SymbolRole",
    "format_cycle",
    "merge_edges",
]
