"""Per-field resolution of layered info records."""
from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from ingest.schemas import INFO_FIELDS, EventInfo


# an empty join list means no join methods were given
EMPTY_MEANS_UNSET = frozenset({"join"})


def _is_set(name: str, value: Any) -> bool:
    if value is None:
        return False
    return not (name in EMPTY_MEANS_UNSET and value == [])


def resolve_field(
    name: str, layers: Sequence[Optional[EventInfo]], fallback: Mapping[str, Any] | None = None
) -> Any:
    """Return the first value set for ``name``, scanning from the most specific layer."""
    for layer in layers:
        if layer is None:
            continue
        value = getattr(layer, name)
        if _is_set(name, value):
            return value
    return (fallback or {}).get(name)


def resolve_info(
    layers: Sequence[Optional[EventInfo]], fallback: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Resolve every info field over ``layers``.

    ``fallback`` holds values that apply below the last layer, such as the
    name derived from the file name.
    """
    return {name: resolve_field(name, layers, fallback) for name in INFO_FIELDS}
