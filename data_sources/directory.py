"""
Hospital and SNF directory loaders

Boot order per directory: persisted store, then the CMS provider catalog
(patching missing city/county/zip from the local CSV), then the local CSV
alone. Whatever is loaded from CMS or CSV is written back to the store.
"""

import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from logging_config import get_logger
from .cms_api import CMSDirectoryClient
from .error_handling import APIError
from .field_aliases import FIELD_ALIASES_VERSION, row_accessor
from .store import KeyValueStore
from .utils import normalize_ccn, normalize_name_key, pick, read_csv_rows, to_number, to_string

logger = get_logger(__name__)

_POINT_RE = re.compile(r"POINT\s*\((-?\d+(?:\.\d+)?)\s+(-?\d+(?:\.\d+)?)\)", re.IGNORECASE)
_PAIR_RE = re.compile(r"(-?\d+(?:\.\d+)?)[,\s]+(-?\d+(?:\.\d+)?)")

ALIASES_VERSION_FIELD = "_aliases_version"

SNF_RATING_FIELDS = ("overall_rating", "staffing_rating", "qm_rating", "health_inspection_rating")


def parse_location(row: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    """
    Latitude/longitude from explicit columns, else from a location field.

    Location fields may be ``POINT(lon lat)``, ``"lat, lon"``, a GeoJSON-like
    dict with ``coordinates`` [lon, lat], or a dict with lat/lon keys.
    """
    field = row_accessor(row)
    lat = to_number(field("latitude"))
    lon = to_number(field("longitude"))
    if lat is not None and lon is not None:
        return lat, lon

    loc = field("location")
    if isinstance(loc, str):
        point = _POINT_RE.search(loc)
        if point:
            lon = lon if lon is not None else to_number(point.group(1))
            lat = lat if lat is not None else to_number(point.group(2))
        else:
            pair = _PAIR_RE.search(loc)
            if pair:
                lat = lat if lat is not None else to_number(pair.group(1))
                lon = lon if lon is not None else to_number(pair.group(2))
    elif isinstance(loc, dict):
        coords = loc.get("coordinates")
        if isinstance(coords, (list, tuple)) and len(coords) >= 2:
            lon = lon if lon is not None else to_number(coords[0])
            lat = lat if lat is not None else to_number(coords[1])
        else:
            lat = lat if lat is not None else to_number(pick(loc.get("latitude"), loc.get("lat")))
            lon = lon if lon is not None else to_number(pick(loc.get("longitude"), loc.get("lon")))
    return lat, lon


def composite_score(ratings: List[Optional[float]]) -> Optional[float]:
    """Mean of the present 0-5 star ratings scaled to 0-100."""
    present = [r for r in ratings if r is not None]
    if not present:
        return None
    return sum(present) / len(present) * 20


def map_hospital_row(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    field = row_accessor(row)
    name = to_string(field("hospital_name"))
    if not name:
        return None

    provider_id = normalize_ccn(field("hospital_provider_id"))
    latitude, longitude = parse_location(row)
    emergency = field("emergency_services")
    key = normalize_name_key(name)

    return {
        "id": provider_id or key,
        "provider_id": provider_id,
        "hospital_name": name,
        "address": to_string(field("hospital_address")),
        "city": to_string(field("hospital_city")),
        "state": to_string(field("state")).upper(),
        "zip_code": to_string(field("zip_code")),
        "county_name": to_string(field("county_name")),
        "phone_number": to_string(field("phone_number")),
        "hospital_type": to_string(field("hospital_type")),
        "hospital_ownership": to_string(field("hospital_ownership")),
        "emergency_services": "" if emergency is None else str(emergency),
        "latitude": latitude,
        "longitude": longitude,
        "_key": key,
    }


def map_snf_row(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    field = row_accessor(row)
    name = to_string(field("snf_name"))
    if not name:
        return None

    ccn = normalize_ccn(field("snf_provider_id"))
    latitude, longitude = parse_location(row)
    ratings = {f: to_number(field(f)) for f in SNF_RATING_FIELDS}

    snf = {
        "id": ccn or normalize_name_key(name),
        "facility_name": name,
        "address": to_string(field("snf_address")),
        "city": to_string(field("snf_city")),
        "state": to_string(field("state")).upper(),
        "zip_code": to_string(field("zip_code")),
        "county_name": to_string(field("county_name")),
        "phone_number": to_string(field("phone_number")),
        "ownership_type": to_string(field("ownership_type")),
        "latitude": latitude,
        "longitude": longitude,
        "Composite_Score": composite_score(list(ratings.values())),
    }
    if ccn:
        snf["CCN"] = ccn
        snf["provider_id"] = ccn
    for name_, value in ratings.items():
        if value is not None:
            snf[name_] = value
    return snf


def _map_rows(rows, mapper) -> List[Dict[str, Any]]:
    return [record for record in (mapper(row) for row in rows) if record]


def load_csv_directory(path: Union[str, Path], mapper: Callable, kind: str) -> List[Dict[str, Any]]:
    try:
        records = _map_rows(read_csv_rows(path), mapper)
    except OSError as e:
        logger.warning(f"Local {kind} CSV fallback failed: {e}")
        return []
    logger.info(f"Loaded {len(records)} {kind} records (local CSV)")
    return records


def _patch_missing(records: List[Dict[str, Any]], fallback: List[Dict[str, Any]],
                   fields: Tuple[str, ...], key_fns: Tuple[Callable, ...], kind: str) -> int:
    index: Dict[str, Dict[str, Any]] = {}
    for record in fallback:
        for key_fn in key_fns:
            key = key_fn(record)
            if key:
                index.setdefault(key, record)

    patched = 0
    for record in records:
        if all(record.get(f) for f in fields):
            continue
        source = None
        for key_fn in key_fns:
            key = key_fn(record)
            if key and key in index:
                source = index[key]
                break
        if source is None:
            continue
        for f in fields:
            if not record.get(f) and source.get(f):
                record[f] = source[f]
                patched += 1
    if patched:
        logger.info(f"Filled {patched} missing {kind} fields from local CSV")
    return patched


def _load_directory(kind: str, namespace: str, store: KeyValueStore,
                    fetch_rows: Optional[Callable[[], List[Dict[str, Any]]]],
                    mapper: Callable, csv_path: Union[str, Path], use_local_fallback: bool,
                    force_refresh: bool, patch_fields: Tuple[str, ...],
                    key_fns: Tuple[Callable, ...]) -> List[Dict[str, Any]]:
    outdated: List[Dict[str, Any]] = []
    if not force_refresh:
        persisted = list(store.all(namespace).values())
        if persisted and all(r.get(ALIASES_VERSION_FIELD) == FIELD_ALIASES_VERSION for r in persisted):
            logger.info(f"Loaded {len(persisted)} {kind} records (store)")
            return persisted
        if persisted:
            logger.info(f"Persisted {kind} records predate field alias table v{FIELD_ALIASES_VERSION}; "
                        f"re-mapping from source")
            outdated = persisted

    records: List[Dict[str, Any]] = []
    if fetch_rows is not None:
        try:
            rows = fetch_rows()
            records = _map_rows(rows, mapper)
            dropped = len(rows) - len(records)
            logger.info(f"Normalized {len(records)} {kind} records from CMS"
                        + (f" (dropped {dropped} rows lacking a name)" if dropped else ""))
        except APIError as e:
            logger.error(f"CMS {kind} fetch failed: {e}")
            records = []

    if records:
        needs_patch = any(not all(r.get(f) for f in patch_fields) for r in records)
        if needs_patch and use_local_fallback:
            _patch_missing(records, load_csv_directory(csv_path, mapper, kind), patch_fields, key_fns, kind)
        elif needs_patch:
            logger.warning(f"Missing {kind} fields remain (local CSV fallback disabled)")
    elif use_local_fallback:
        records = load_csv_directory(csv_path, mapper, kind)

    if records:
        for record in records:
            record[ALIASES_VERSION_FIELD] = FIELD_ALIASES_VERSION
        store.clear(namespace)
        store.set_many(namespace, ((str(r["id"]), r) for r in records))
    elif outdated:
        logger.warning(f"CMS and local CSV unavailable; serving {len(outdated)} previously persisted {kind} records")
        return outdated
    else:
        logger.error(f"No {kind} records available from store, CMS or local CSV")
    return records


def load_hospitals(store: KeyValueStore, client: Optional[CMSDirectoryClient], csv_path: Union[str, Path],
                   use_local_fallback: bool = True, force_refresh: bool = False) -> List[Dict[str, Any]]:
    return _load_directory(
        "hospital", "hospitals", store,
        client.fetch_all_hospitals if client else None,
        map_hospital_row, csv_path, use_local_fallback, force_refresh,
        patch_fields=("city", "county_name", "zip_code"),
        key_fns=(lambda r: r.get("provider_id"), lambda r: r.get("_key")),
    )


def load_snfs(store: KeyValueStore, client: Optional[CMSDirectoryClient], csv_path: Union[str, Path],
              use_local_fallback: bool = True, force_refresh: bool = False) -> List[Dict[str, Any]]:
    return _load_directory(
        "SNF", "snfs", store,
        client.fetch_all_snfs if client else None,
        map_snf_row, csv_path, use_local_fallback, force_refresh,
        patch_fields=("city", "county_name", "zip_code"),
        key_fns=(lambda r: r.get("CCN"), lambda r: to_string(r.get("facility_name")).upper()),
    )


def load_place_id_seed(path: Optional[Union[str, Path]]) -> Dict[str, Dict[str, Any]]:
    """
    Seed table of known place ids keyed by normalized CCN.

    Returns {} when no path is configured or the file can't be read.
    """
    if not path:
        logger.info("Place id seed file disabled; relying on live resolution")
        return {}

    seed: Dict[str, Dict[str, Any]] = {}
    try:
        for row in read_csv_rows(path):
            ccn = None
            for column in ("CMS Certification Number (CCN)_x", "CMS Certification Number (CCN)_y",
                           "federal_provider_number", "provider_id", "CCN"):
                ccn = normalize_ccn(row.get(column) or None)
                if ccn:
                    break
            if not ccn:
                continue
            place_id = pick(row.get("google_place_id"), row.get("google_placeid"),
                            row.get("place_id"), row.get("googlePlaceId"))
            if not place_id:
                continue
            seed[ccn] = {
                "google_place_id": to_string(place_id),
                "google_name": pick(row.get("google_name"), row.get("googleName")),
            }
    except OSError as e:
        logger.warning(f"Failed to load place id seed {path}: {e}")
        return {}

    logger.info(f"Loaded {len(seed)} place ids from seed {Path(path).name}")
    return seed
