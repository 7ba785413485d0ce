"""
Historical SNF quality timelines from yearly CMS extracts (MDS, Claims, QRP)
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from logging_config import get_logger
from .field_aliases import row_accessor
from .utils import normalize_ccn, read_csv_rows, to_number, to_string

logger = get_logger(__name__)

PROVIDER_INFO_PATTERN = "NH_ProviderInfo_Jan{year}.csv"
QUALITY_MDS_PATTERN = "NH_QualityMsr_MDS_Jan{year}.csv"
QUALITY_CLAIMS_PATTERN = "NH_QualityMsr_Claims_Jan{year}.csv"
QRP_PROVIDER_PATTERN = "Skilled_Nursing_Facility_Quality_Reporting_Program_Provider_Data_Jan{year}.csv"

# measure code -> metric key
MDS_METRIC_CODES = {
    "453": "pressure_ulcer_rate",
    "410": "fall_with_major_injury_rate",
    "452": "medication_review_rate",
    "430": "discharge_to_community_rate",
    "407": "healthcare_associated_infection_rate",
}
CLAIMS_METRIC_CODES = {
    "521": "short_stay_rehospitalization_rate",
    "522": "short_stay_ed_visit_rate",
    "551": "long_stay_hospitalization_rate",
    "552": "long_stay_ed_visit_rate",
}
QRP_METRIC_CODES = {
    "S_024_04_OBS_RATE": "self_care_at_discharge",
    "S_025_04_OBS_RATE": "mobility_at_discharge",
}

# source family -> (code table, value column)
SOURCES = {
    "mds": (MDS_METRIC_CODES, "four_quarter_average_score"),
    "claims": (CLAIMS_METRIC_CODES, "adjusted_score"),
    "qrp": (QRP_METRIC_CODES, "score"),
}

DESCRIPTOR_FIELDS = {
    "facility_name": "provider_name",
    "address": "provider_address",
    "city": "provider_city",
    "state": "provider_state",
    "zip_code": "provider_zip_code",
    "county_name": "provider_county_name",
    "phone_number": "provider_phone_number",
}


def _merge_descriptors(entry: Dict[str, Any], row: Optional[Dict[str, Any]]):
    """Fill blank descriptive fields; never overwrite populated ones."""
    if not row:
        return
    field = row_accessor(row)
    for target, canonical in DESCRIPTOR_FIELDS.items():
        if not entry.get(target):
            entry[target] = to_string(field(canonical))


def _new_entry(ccn: str) -> Dict[str, Any]:
    entry = {"ccn": ccn, "metrics": {}}
    for target in DESCRIPTOR_FIELDS:
        entry[target] = ""
    return entry


def index_provider_info(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    index = {}
    for row in rows:
        ccn = normalize_ccn(row_accessor(row)("historical_ccn"))
        if ccn:
            index[ccn] = row
    return index


def aggregate_quality_year(sources: Dict[str, Iterable[Dict[str, Any]]],
                           provider_info: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Fold one year's measure rows into per-facility entries.

    Args:
        sources: {"mds" | "claims" | "qrp": rows}
        provider_info: normalized CCN -> provider info row

    Returns:
        {ccn: {ccn, facility_name, ..., metrics}} for facilities with at least one metric
    """
    provider_info = provider_info or {}
    entries: Dict[str, Dict[str, Any]] = {}

    for source, rows in sources.items():
        if source not in SOURCES:
            continue
        codes, value_field = SOURCES[source]
        for row in rows:
            field = row_accessor(row)
            ccn = normalize_ccn(field("historical_ccn"))
            if not ccn:
                continue
            metric_key = codes.get(to_string(field("measure_code")))
            if not metric_key:
                continue
            value = to_number(field(value_field))
            if value is None:
                continue

            entry = entries.get(ccn)
            if entry is None:
                entry = entries[ccn] = _new_entry(ccn)
            _merge_descriptors(entry, row)
            _merge_descriptors(entry, provider_info.get(ccn))
            entry["metrics"][metric_key] = value

    return {ccn: e for ccn, e in entries.items() if e["metrics"]}


def _read_rows(path: Path, label: str) -> List[Dict[str, Any]]:
    try:
        return list(read_csv_rows(path))
    except OSError as e:
        logger.warning(f"Unable to load {label} extract {path}: {e}")
        return []


def load_quality_year(year: int, base_dir: Union[str, Path]) -> Dict[str, Dict[str, Any]]:
    base = Path(base_dir)
    year_dir = base / str(year)
    provider_info = index_provider_info(
        _read_rows(year_dir / PROVIDER_INFO_PATTERN.format(year=year), f"{year} provider info"))

    sources = {
        "mds": _read_rows(year_dir / QUALITY_MDS_PATTERN.format(year=year), f"{year} MDS"),
        "claims": _read_rows(year_dir / QUALITY_CLAIMS_PATTERN.format(year=year), f"{year} claims"),
    }

    qrp_name = QRP_PROVIDER_PATTERN.format(year=year)
    for candidate in (year_dir / qrp_name, base / "raw" / str(year) / qrp_name):
        if candidate.exists():
            sources["qrp"] = _read_rows(candidate, f"{year} QRP")
            break
    else:
        logger.warning(f"QRP provider data missing for {year}")

    return aggregate_quality_year(sources, provider_info)


def build_quality_timelines(years: Sequence[int], base_dir: Union[str, Path]) -> Dict[str, Dict[str, Any]]:
    """
    Per-facility quality timelines across ``years``.

    Returns:
        {ccn: {ccn, facility_name, address, city, state, zip_code, county_name,
               phone_number, years: {year: {metric_key: value}}}}
    """
    timelines: Dict[str, Dict[str, Any]] = {}
    for year in years:
        for ccn, entry in load_quality_year(year, base_dir).items():
            timeline = timelines.get(ccn)
            if timeline is None:
                timeline = timelines[ccn] = {"ccn": ccn, "years": {}}
                for target in DESCRIPTOR_FIELDS:
                    timeline[target] = entry.get(target, "")
            else:
                for target in DESCRIPTOR_FIELDS:
                    if not timeline.get(target):
                        timeline[target] = entry.get(target, "")
            timeline["years"][int(year)] = dict(entry["metrics"])

    logger.info(f"Built quality timelines for {len(timelines)} facilities across {len(years)} years")
    return timelines
