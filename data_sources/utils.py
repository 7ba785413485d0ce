"""
Shared utilities for SNF referral data sources
Consolidates distance math, value coercion and identifier normalization
"""

import csv
import math
import re
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Union

EARTH_RADIUS_MILES = 3958.8


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate great-circle distance between two points in miles using the Haversine formula.

    Callers must pass finite coordinates; facilities lacking coordinates are
    filtered out before this is called.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in miles
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi/2)**2 + math.cos(phi1) * \
        math.cos(phi2) * math.sin(delta_lambda/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_MILES * c


def validate_coordinates(lat: Any, lon: Any) -> bool:
    """True when lat/lon are finite numbers within valid ranges."""
    if lat is None or lon is None or isinstance(lat, bool) or isinstance(lon, bool):
        return False
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        return False
    return -90 <= lat_f <= 90 and -180 <= lon_f <= 180


def to_number(value: Any) -> Optional[float]:
    """Coerce CSV/API values to float; blanks and junk become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        num = float(text)
    except ValueError:
        return None
    return num if math.isfinite(num) else None


def to_string(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def pick(*values: Any) -> Any:
    """Return the first value that is not None or an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def normalize_ccn(value: Any) -> Optional[str]:
    """
    Normalize a CMS Certification Number to its 6-character zero-padded form.

    "15009", 15009, 15009.0 and "015009" all become "015009". Blank values
    return None so callers can drop the row.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        value = int(value) if value.is_integer() else value
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    if not text:
        return None
    return text.zfill(6)


# Facility fields that may carry the CCN, in precedence order.
FACILITY_CCN_FIELDS = (
    "CCN",
    "CMS Certification Number (CCN)",
    "provider_id",
    "federal_provider_number",
    "provider_number",
)


def facility_ccn(facility: Mapping[str, Any]) -> Optional[str]:
    """Normalized CCN of a facility record, or None."""
    return normalize_ccn(pick(*(facility.get(f) for f in FACILITY_CCN_FIELDS)))


def normalize_name_key(value: Any) -> str:
    """Lowercase, alphanumeric-only match key used for names without a CCN."""
    text = to_string(value).lower()
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def read_csv_rows(path: Union[str, Path]) -> Iterator[Dict[str, str]]:
    """
    Stream rows of a CSV extract as dicts keyed by header.

    Raises:
        FileNotFoundError: if the extract is absent
    """
    with open(path, newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        for row in reader:
            if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
                continue
            yield row


def format_distance(distance_miles: Optional[float]) -> str:
    if distance_miles is None:
        return "distance n/a"
    return f"{distance_miles:.1f} mi"
