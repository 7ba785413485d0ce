"""
Runtime configuration for the SNF referral API
All knobs come from environment variables (optionally loaded from .env)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_GEOCODER_ORDER = ("google", "nominatim", "census")
DEFAULT_HISTORICAL_YEARS = (2022, 2023, 2024)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _env_years(name: str, default: Tuple[int, ...]) -> List[int]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    years = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            years.append(int(part))
    return years or list(default)


def _env_path(name: str, default: Optional[Path]) -> Optional[Path]:
    raw = os.getenv(name)
    if raw:
        return Path(raw).expanduser().resolve()
    return default


@dataclass
class Settings:
    """Resolved service configuration."""
    google_places_api_key: Optional[str] = None
    google_maps_key: Optional[str] = None
    nominatim_user_agent: str = "SNF-Referrals/1.0"

    place_id_max_age_days: float = 30.0
    reviews_max_age_days: float = 7.0

    geocoder_order: List[str] = field(default_factory=lambda: list(DEFAULT_GEOCODER_ORDER))
    geocoder_timeout_seconds: float = 10.0
    enrichment_timeout_seconds: float = 10.0

    cms_base_url: str = "https://data.cms.gov/data-api/v1"
    cms_hospital_dataset: str = "xubh-q36u"
    cms_snf_dataset: str = "b27b-2uc7"
    cms_api_token: Optional[str] = None
    cms_force_refresh: bool = False

    use_local_hospital_fallback: bool = True
    use_local_snf_fallback: bool = True
    hospitals_csv_path: Path = BASE_DIR / "data" / "raw" / "hospitals.csv"
    snfs_csv_path: Path = BASE_DIR / "data" / "raw" / "snfs.csv"

    historical_dir: Path = BASE_DIR / "data" / "historical"
    historical_years: List[int] = field(default_factory=lambda: list(DEFAULT_HISTORICAL_YEARS))
    place_ids_seed_path: Optional[Path] = None

    cache_db_path: Path = BASE_DIR / "data_cache" / "snfreferral.sqlite"
    redis_url: Optional[str] = None

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            google_places_api_key=os.getenv("GOOGLE_PLACES_API_KEY") or None,
            google_maps_key=os.getenv("GOOGLE_MAPS_KEY") or None,
            nominatim_user_agent=os.getenv("NOMINATIM_USER_AGENT", defaults.nominatim_user_agent),
            place_id_max_age_days=_env_float("GOOGLE_PLACE_ID_MAX_AGE_DAYS", defaults.place_id_max_age_days),
            reviews_max_age_days=_env_float("GOOGLE_REVIEWS_MAX_AGE_DAYS", defaults.reviews_max_age_days),
            geocoder_order=_env_list("GEOCODER_ORDER", DEFAULT_GEOCODER_ORDER),
            geocoder_timeout_seconds=_env_float("GEOCODER_TIMEOUT_SECONDS", defaults.geocoder_timeout_seconds),
            enrichment_timeout_seconds=_env_float("ENRICHMENT_TIMEOUT_SECONDS", defaults.enrichment_timeout_seconds),
            cms_base_url=os.getenv("CMS_PROVIDER_BASE_URL", defaults.cms_base_url),
            cms_hospital_dataset=os.getenv("CMS_PROVIDER_HOSPITAL_DATASET", defaults.cms_hospital_dataset),
            cms_snf_dataset=os.getenv("CMS_PROVIDER_SNF_DATASET", defaults.cms_snf_dataset),
            cms_api_token=os.getenv("CMS_API_TOKEN") or None,
            cms_force_refresh=_env_flag("CMS_FORCE_REFRESH", False),
            use_local_hospital_fallback=_env_flag("USE_LOCAL_HOSPITAL_FALLBACK", True),
            use_local_snf_fallback=_env_flag("USE_LOCAL_SNF_FALLBACK", True),
            hospitals_csv_path=_env_path("HOSPITALS_CSV_PATH", defaults.hospitals_csv_path),
            snfs_csv_path=_env_path("SNFS_CSV_PATH", defaults.snfs_csv_path),
            historical_dir=_env_path("HISTORICAL_DATA_DIR", defaults.historical_dir),
            historical_years=_env_years("HISTORICAL_YEARS", DEFAULT_HISTORICAL_YEARS),
            place_ids_seed_path=_env_path("GOOGLE_PLACE_IDS_SEED_PATH", None),
            cache_db_path=_env_path("CACHE_DB_PATH", defaults.cache_db_path),
            redis_url=os.getenv("REDIS_URL") or None,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            log_json=_env_flag("LOG_JSON", True),
        )
