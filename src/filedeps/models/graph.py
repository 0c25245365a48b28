"""Query-scoped views over the dependency graph.

None of these are persisted. They serialize with camelCase keys because
they are consumed by the graph visualization client.
"""

from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ClosurePath(CamelModel):
    """One edge reached while walking the transitive closure of a root file."""

    source_file: str
    target_file: str
    depth: int
    is_cycle: bool = False

    def as_tuple(self) -> Tuple[str, str, int, bool]:
        return (self.source_file, self.target_file, self.depth, self.is_cycle)


class ClosureResult(CamelModel):
    """Result of a bounded transitive closure query."""

    root_file: str
    max_depth: int
    edges: List[ClosurePath] = Field(default_factory=list)
    cycles: List[str] = Field(default_factory=list)


class GraphNode(CamelModel):
    id: str
    label: str
    file_path: str
    language: str


class GraphEdge(CamelModel):
    id: str
    source: str
    target: str
    type: str
    is_cycle: bool = False


class GraphView(CamelModel):
    """Visualization-ready graph: nodes, edges and human-readable cycles."""

    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)
    cycles: List[str] = Field(default_factory=list)


class ReferenceResult(CamelModel):
    """A single occurrence of a symbol, located by file and range."""

    file_path: str
    start_line: int
    start_char: int
    end_line: int
    end_char: int
    symbol: str
    role_flags: int


def format_cycle(source: str, target: str) -> str:
    return f"{source} → {target}"
