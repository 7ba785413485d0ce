"""
Sort resolution and null-sinking ordering of facilities
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from logging_config import get_logger

logger = get_logger(__name__)

SORT_ALIASES = {
    "rating": "rating",
    "overall_rating": "rating",
    "composite": "composite",
    "composite_score": "composite",
    "distance": "distance",
    "name": "name",
}

MODE_DEFAULTS = {
    "closest": "distance",
    "best": "composite",
}

VALID_ORDERS = ("asc", "desc")


@dataclass(frozen=True)
class SortSpec:
    by: str
    order: str

    def as_dict(self) -> Dict[str, str]:
        return {"by": self.by, "order": self.order}


def resolve_sort(mode: Optional[str] = None, sort_by: Optional[str] = None,
                 order: Optional[str] = None) -> SortSpec:
    """
    Turn request parameters into a concrete (by, order).

    ``mode`` picks the default key (closest -> distance, best -> composite).
    An explicit but unknown ``sort_by`` falls back to that default. Order
    defaults to asc for distance and desc for everything else.
    """
    default_by = MODE_DEFAULTS.get((mode or "").strip().lower(), "distance")
    requested = (sort_by or "").strip().lower()
    by = SORT_ALIASES.get(requested) if requested else default_by
    if by is None:
        logger.warning(f"Unknown sort key '{sort_by}', using '{default_by}'")
        by = default_by

    requested_order = (order or "").strip().lower()
    if requested_order in VALID_ORDERS:
        resolved_order = requested_order
    else:
        resolved_order = "asc" if by == "distance" else "desc"
    return SortSpec(by=by, order=resolved_order)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


SORT_VALUE_GETTERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "rating": lambda f: f.get("overall_rating") if f.get("overall_rating") is not None else f.get("Overall Rating"),
    "composite": lambda f: f.get("Composite_Score"),
    "distance": lambda f: f.get("distance"),
    "name": lambda f: (f.get("facility_name") or "").lower() or None,
}


def sort_facilities(facilities: Sequence[Dict[str, Any]], spec: SortSpec) -> List[Dict[str, Any]]:
    """
    Stable sort on ``spec``; facilities missing the key go last in either direction.
    """
    getter = SORT_VALUE_GETTERS[spec.by]
    present, missing = [], []
    for facility in facilities:
        value = getter(facility)
        (missing if _is_missing(value) else present).append((value, facility))

    present.sort(key=lambda pair: pair[0], reverse=spec.order == "desc")
    return [f for _, f in present] + [f for _, f in missing]
