"""Data models for the symbol occurrence index."""

from enum import IntFlag
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SymbolRole(IntFlag):
    """Role bits carried by an occurrence.

    Only the definition and reference bits have meaning here. Any other bit
    is reserved for future roles and is ignored, never rejected.
    """

    DEFINITION = 1
    REFERENCE = 2


def is_definition(role_flags: int) -> bool:
    return bool(role_flags & SymbolRole.DEFINITION)


def is_reference(role_flags: int) -> bool:
    return bool(role_flags & SymbolRole.REFERENCE)


class Position(BaseModel):
    """Zero-based source range of an occurrence."""

    model_config = ConfigDict(frozen=True)

    start_line: int = 0
    start_char: int = 0
    end_line: int = 0
    end_char: int = 0

    @classmethod
    def from_range(cls, values: Optional[List[int]]) -> "Position":
        """Build a position from a `[start_line, start_char, end_line, end_char]` list.

        Three-element ranges are single-line (`[line, start_char, end_char]`).
        """
        if not values:
            return cls()
        if len(values) == 3:
            line, start_char, end_char = values
            return cls(start_line=line, start_char=start_char, end_line=line, end_char=end_char)
        if len(values) == 4:
            return cls(
                start_line=values[0],
                start_char=values[1],
                end_line=values[2],
                end_char=values[3],
            )
        raise ValueError("range must have 3 or 4 integers")

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.start_line, self.start_char, self.end_line, self.end_char)


class Occurrence(BaseModel):
    """A recorded position where a symbol is defined or referenced in a document."""

    model_config = ConfigDict(frozen=True)

    document_id: int
    symbol: str
    role_flags: int = 0
    position: Position = Field(default_factory=Position)

    @property
    def is_definition(self) -> bool:
        return is_definition(self.role_flags)

    @property
    def is_reference(self) -> bool:
        return is_reference(self.role_flags)


class Document(BaseModel):
    """A file in an indexed repository, scoped by owner and repository."""

    id: int
    owner_id: str
    repo_url: str
    relative_path: str
    language: Optional[str] = None


class FileInfo(BaseModel):
    """Display metadata for a file path."""

    relative_path: str
    language: Optional[str] = None


class OccurrenceInput(BaseModel):
    """An occurrence as it appears in an index file handed over by the indexer."""

    symbol: str
    roles: int = 0
    range: Optional[List[int]] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("symbol must not be blank")
        return v

    @field_validator("range")
    @classmethod
    def validate_range(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v and len(v) not in (3, 4):
            raise ValueError("range must have 3 or 4 integers")
        return v

    @property
    def position(self) -> Position:
        return Position.from_range(self.range)


class DocumentInput(BaseModel):
    """A document with its occurrences as produced by the external indexer."""

    path: str
    language: Optional[str] = None
    occurrences: List[OccurrenceInput] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("path must not be blank")
        return v


class IndexFile(BaseModel):
    """Top-level layout of an index file loaded with `filedeps load-index`."""

    documents: List[DocumentInput] = Field(default_factory=list)
