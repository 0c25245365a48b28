"""Data models for file-to-file dependency edges."""

from enum import Enum
from typing import Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, model_validator


class DepType(str, Enum):
    """Kinds of file-level dependency."""

    IMPORT = "import"
    REFERENCE = "reference"

    @property
    def rank(self) -> int:
        """Precedence when several kinds imply the same file pair."""
        return _DEP_TYPE_RANK[self]


_DEP_TYPE_RANK = {DepType.IMPORT: 2, DepType.REFERENCE: 1}


class DependencyEdge(BaseModel):
    """A directed dependency: `source_file` depends on `target_file`.

    Edges are unique per `(owner_id, repo_url, source_file, target_file)`
    and never point a file at itself.
    """

    model_config = ConfigDict(frozen=True)

    owner_id: str
    repo_url: str
    source_file: str
    target_file: str
    dep_type: DepType = DepType.REFERENCE

    @model_validator(mode="after")
    def validate_not_self_loop(self) -> "DependencyEdge":
        if self.source_file == self.target_file:
            raise ValueError(f"self-loop on {self.source_file!r} is not a dependency")
        return self

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source_file, self.target_file)


def merge_edges(edges: Iterable[DependencyEdge]) -> List[DependencyEdge]:
    """Collapse edges to one per file pair.

    When several dependency kinds contribute to the same pair, the
    highest-ranked kind is kept (`import` over `reference`).

    Returns:
        Edges sorted by `(source_file, target_file)`.
    """
    merged: Dict[Tuple[str, str], DependencyEdge] = {}
    for edge in edges:
        current = merged.get(edge.key)
        if current is None or edge.dep_type.rank > current.dep_type.rank:
            merged[edge.key] = edge
    return [merged[key] for key in sorted(merged)]
