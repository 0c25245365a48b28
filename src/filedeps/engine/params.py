"""Request parameter checks shared by the engines."""

from typing import Optional

from ..exceptions import InvalidParameter
from ..models.occurrence import SymbolRole


def require_identifier(value, name: str) -> str:
    """Reject missing or blank owner, repository, file and symbol identifiers."""
    if value is None or not str(value).strip():
        raise InvalidParameter(f"{name} must not be blank")
    return str(value)


def require_positive_depth(max_depth) -> int:
    if isinstance(max_depth, bool) or not isinstance(max_depth, int):
        raise InvalidParameter(f"max_depth must be an integer, got {max_depth!r}")
    if max_depth < 1:
        raise InvalidParameter(f"max_depth must be a positive integer, got {max_depth}")
    return max_depth


_ROLE_FILTERS = {
    "definition": SymbolRole.DEFINITION,
    "reference": SymbolRole.REFERENCE,
}


def parse_role_filter(role: Optional[str]) -> Optional[SymbolRole]:
    """Map `definition` / `reference` to a role bit; `None` means any role."""
    if role is None:
        return None
    try:
        return _ROLE_FILTERS[role.lower()]
    except KeyError:
        raise InvalidParameter(f"role must be one of {sorted(_ROLE_FILTERS)}, got {role!r}") from None
