"""
Column alias table for CMS extracts and API payloads
One versioned mapping from canonical field names to the headers seen in the wild
"""

import re
from typing import Any, Callable, Dict, Mapping, Tuple

# Stamped on persisted directory rows; rows carrying another version are
# re-mapped from CMS or the local CSV at boot. Bump when an alias list changes.
FIELD_ALIASES_VERSION = 3

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    # identifiers
    "hospital_provider_id": (
        "provider_id", "provider_number", "ccn",
        "cms_certification_number_(ccn)", "federal_provider_number", "facility_id",
    ),
    "snf_provider_id": (
        "provider_id", "provider_number", "ccn",
        "cms_certification_number_(ccn)", "federal_provider_number",
    ),
    "historical_ccn": (
        "cms_certification_number_(ccn)", "federal_provider_number",
        "provider_number", "ccn", "federal provider number",
    ),

    # names and address
    "hospital_name": ("hospital_name", "facility_name", "provider_name", "name"),
    "snf_name": ("provider_name", "facility_name", "name"),
    "hospital_address": ("address", "address_line_1", "provider_address"),
    "snf_address": ("address", "provider_address", "address_line_1"),
    "hospital_city": ("city", "city_town", "city_town_name"),
    "snf_city": ("city", "city_town"),
    "state": ("state", "state_code"),
    "zip_code": ("zip_code", "zip", "postal_code"),
    "county_name": ("county_name", "county", "county_parish"),
    "phone_number": ("phone_number", "telephone_number", "phone"),

    # hospital attributes
    "hospital_type": ("hospital_type", "facility_type"),
    "hospital_ownership": ("hospital_ownership", "ownership_type"),
    "emergency_services": ("emergency_services", "emergency_service"),

    # snf attributes
    "ownership_type": ("ownership_type",),
    "overall_rating": ("overall_rating",),
    "staffing_rating": ("staffing_rating",),
    "qm_rating": ("qm_rating", "quality_measure_rating", "short_stay_qm_rating"),
    "health_inspection_rating": ("health_inspection_rating",),

    # coordinates
    "location": ("location", "location_1", "geocoded_location", "location1"),
    "latitude": ("latitude", "lat", "location_latitude", "latitude_x"),
    "longitude": ("longitude", "lon", "location_longitude", "longitude_x"),

    # historical provider descriptors
    "provider_name": ("provider_name",),
    "provider_address": ("provider_address",),
    "provider_city": ("provider_city", "city_town"),
    "provider_state": ("provider_state", "state"),
    "provider_zip_code": ("provider_zip_code", "zip_code"),
    "provider_county_name": ("provider_county_name", "county_parish"),
    "provider_phone_number": ("provider_phone_number", "telephone_number"),

    # historical measure rows
    "measure_code": ("measure_code",),
    "four_quarter_average_score": ("four_quarter_average_score",),
    "adjusted_score": ("adjusted_score",),
    "score": ("score",),

    # citations / penalties
    "scope_severity_code": ("scope_severity_code",),
    "infection_control_inspection_deficiency": ("infection_control_inspection_deficiency",),
    "deficiency_category": ("deficiency_category",),
    "penalty_type": ("penalty_type",),
    "fine_amount": ("fine_amount",),
    "payment_denial_start_date": ("payment_denial_start_date",),
}


def normalize_field_name(name: Any) -> str:
    """Lowercase and collapse non-alphanumeric runs to underscores."""
    text = re.sub(r"[^a-z0-9]+", "_", str(name).lower())
    return text.strip("_")


def row_accessor(row: Mapping[str, Any]) -> Callable[[str], Any]:
    """
    Build a lookup function for one row.

    The normalized header index is built once so repeated field reads
    on the same row don't re-scan its keys.
    """
    index = {}
    for key in row.keys():
        index.setdefault(normalize_field_name(key), key)

    def lookup(canonical: str) -> Any:
        for candidate in FIELD_ALIASES.get(canonical, (canonical,)):
            actual = index.get(normalize_field_name(candidate))
            if actual is None:
                continue
            value = row[actual]
            if value is not None and value != "":
                return value
        return None

    return lookup
