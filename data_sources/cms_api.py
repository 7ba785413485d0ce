"""
CMS Provider Data API Client
Pure API wrapper for the hospital and SNF provider catalogs, used at boot
and by the hospital search endpoint
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from logging_config import get_logger, log_api_call
from .error_handling import APIError
from .retry_config import RetryProfile, get_retry_config

logger = get_logger(__name__)

DEFAULT_LIMIT = 50
MAX_PAGE_SIZE = 500

HOSPITAL_COLUMNS = (
    "provider_id", "hospital_name", "address", "city", "city_town", "state",
    "zip_code", "county_name", "county_parish", "phone_number",
    "hospital_type", "hospital_ownership", "emergency_services",
)
SNF_COLUMNS = (
    "provider_id", "provider_name", "address", "city", "city_town", "state",
    "zip_code", "county_name", "county_parish", "phone_number", "ownership_type",
    "number_of_certified_beds", "number_of_residents_in_certified_beds",
)

_PROVIDER_DATA_PARAMS = {
    "$limit": "limit",
    "$offset": "offset",
    "$select": "select",
    "$where": "where",
    "$order": "order",
}


def normalize_limit(value: Any, fallback: int = DEFAULT_LIMIT) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return min(parsed, MAX_PAGE_SIZE)


def _escape_like(term: str) -> str:
    return term.replace("'", "''")


def _dedup_key(row: Dict[str, Any], id_fields: Sequence[str], name_fields: Sequence[str]) -> str:
    def first(fields):
        for f in fields:
            if row.get(f):
                return str(row[f]).strip().upper()
        return ""

    parts = [
        first(id_fields),
        first(name_fields),
        first(("address", "provider_address")),
        first(("city",)),
        first(("state",)),
    ]
    return "|".join(parts)


class CMSDirectoryClient:
    """Synchronous paging client for the CMS provider catalog."""

    def __init__(self, base_url: str, hospital_dataset: str, snf_dataset: str,
                 api_token: Optional[str] = None, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.datasets = {"hospitals": hospital_dataset, "snfs": snf_dataset}
        self.api_token = api_token
        self.session = session or requests.Session()
        self.is_provider_data = "provider-data/api/1/datastore/query" in self.base_url

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["X-App-Token"] = self.api_token
        return headers

    def _dataset_url(self, dataset_id: str) -> str:
        if self.is_provider_data:
            return f"{self.base_url}/{dataset_id}/0"
        return f"{self.base_url}/dataset/{dataset_id}/data"

    def _params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {k: v for k, v in params.items() if v is not None}
        if not self.is_provider_data:
            return cleaned
        return {_PROVIDER_DATA_PARAMS.get(k, k): v for k, v in cleaned.items()}

    def fetch_dataset(self, dataset_id: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Fetch one page of a dataset with retry on 429/5xx/timeouts.

        Raises:
            APIError: when every attempt fails
        """
        url = self._dataset_url(dataset_id)
        query = self._params(params)
        config = get_retry_config(RetryProfile.CMS_DIRECTORY)
        last_error = None
        last_status = None

        for attempt in range(config.max_attempts):
            is_last = attempt >= config.max_attempts - 1
            log_api_call(logger, "cms_directory", url, attempt=attempt)
            try:
                response = self.session.get(url, params=query, headers=self._headers(), timeout=config.timeout)

                if response.status_code == 429 and not is_last:
                    retry_after = response.headers.get("Retry-After")
                    wait = config.wait_for_attempt(attempt, float(retry_after) if retry_after and retry_after.isdigit() else None)
                    logger.warning(f"CMS API rate limited, waiting {wait}s...", extra={"api_name": "cms_directory"})
                    time.sleep(wait)
                    continue

                if response.status_code != 200:
                    last_status = response.status_code
                    last_error = f"status {response.status_code}"
                    if response.status_code >= 500 and not is_last:
                        time.sleep(config.wait_for_attempt(attempt))
                        continue
                    break

                data = response.json()
                if isinstance(data, dict) and isinstance(data.get("results"), list):
                    rows = data["results"]
                elif isinstance(data, list):
                    rows = data
                else:
                    rows = []
                logger.info(f"CMS dataset {dataset_id} returned {len(rows)} rows")
                return rows

            except requests.exceptions.Timeout:
                last_error = "timeout"
                last_status = 408
                if is_last:
                    break
                time.sleep(config.wait_for_attempt(attempt))
            except (requests.exceptions.RequestException, ValueError) as e:
                last_error = str(e)
                if is_last:
                    break
                time.sleep(config.wait_for_attempt(attempt))

        raise APIError(f"CMS dataset fetch failed: {last_error}", "cms_directory", last_status)

    def fetch_hospitals(self, name: Optional[str] = None, state: Optional[str] = None,
                        limit: Any = DEFAULT_LIMIT, offset: int = 0,
                        columns: Sequence[str] = HOSPITAL_COLUMNS) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "$limit": normalize_limit(limit),
            "$offset": offset,
            "$order": "provider_id ASC",
        }
        if columns:
            params["$select"] = ", ".join(columns)
        if state:
            params["state"] = state.upper()
        if name:
            params["$where"] = f"upper(hospital_name) like upper('%{_escape_like(name.strip())}%')"
        return self.fetch_dataset(self.datasets["hospitals"], params)

    def fetch_snfs(self, state: Optional[str] = None, limit: Any = DEFAULT_LIMIT, offset: int = 0,
                   columns: Sequence[str] = SNF_COLUMNS) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "$limit": normalize_limit(limit),
            "$offset": offset,
            "$order": "provider_id ASC",
        }
        if columns:
            params["$select"] = ", ".join(columns)
        if state:
            params["state"] = state.upper()
        return self.fetch_dataset(self.datasets["snfs"], params)

    def _fetch_all(self, kind: str, fetch_page, id_fields: Sequence[str], name_fields: Sequence[str],
                   max_records: int, max_offset: int) -> List[Dict[str, Any]]:
        page_size = MAX_PAGE_SIZE
        offset = 0
        seen = set()
        results: List[Dict[str, Any]] = []

        while True:
            if offset >= max_offset:
                logger.warning(f"CMS {kind} pagination hit offset cap ({max_offset}); stopping.")
                break
            page = fetch_page(limit=page_size, offset=offset)
            if not page:
                break

            unique = []
            for row in page:
                key = _dedup_key(row, id_fields, name_fields)
                if not key.strip("|") or key in seen:
                    continue
                seen.add(key)
                unique.append(row)

            if not unique:
                logger.warning(f"No new CMS {kind} rows at offset {offset}; stopping pagination.")
                break

            results.extend(unique)
            if len(results) >= max_records:
                logger.warning(f"Reached CMS {kind} pagination cap; stopping early.")
                break
            if len(page) < page_size:
                break
            offset += len(page)

        return results

    def fetch_all_hospitals(self, max_records: int = 20000, max_offset: int = 50000) -> List[Dict[str, Any]]:
        return self._fetch_all(
            "hospital", self.fetch_hospitals,
            ("provider_id", "provider_number", "ccn"), ("hospital_name", "facility_name"),
            max_records, max_offset,
        )

    def fetch_all_snfs(self, max_records: int = 25000, max_offset: int = 20000) -> List[Dict[str, Any]]:
        return self._fetch_all(
            "SNF", self.fetch_snfs,
            ("provider_id", "provider_number", "ccn", "CCN"), ("provider_name", "facility_name", "name"),
            max_records, max_offset,
        )

    def search_hospitals_by_name(self, name: str, limit: Any = 20) -> List[Dict[str, Any]]:
        """Hospital search against the live catalog, shaped for the search endpoint."""
        if not name or not name.strip():
            return []
        rows = self.fetch_hospitals(
            name=name,
            limit=normalize_limit(limit, 20),
            columns=("provider_id", "hospital_name", "address", "city", "state",
                     "zip_code", "county_name", "phone_number", "hospital_type"),
        )
        return [
            {
                "providerId": row.get("provider_id"),
                "name": row.get("hospital_name"),
                "address": row.get("address"),
                "city": row.get("city") or row.get("city_town"),
                "state": row.get("state"),
                "zipCode": row.get("zip_code"),
                "county": row.get("county_name") or row.get("county_parish"),
                "phoneNumber": row.get("phone_number"),
                "hospitalType": row.get("hospital_type"),
            }
            for row in rows
        ]
