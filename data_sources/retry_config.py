"""
Centralized Retry Configuration for the SNF referral API
Provides configurable retry profiles for each upstream family.
"""

from dataclasses import dataclass
from typing import Dict, Optional
from enum import Enum
from logging_config import get_logger

logger = get_logger(__name__)


class RetryProfile(Enum):
    """Retry behavior profiles for different upstreams."""
    GEOCODING = "geocoding"          # Google / Nominatim / Census geocoders - fail fast, next provider takes over
    PLACES = "places"                # Google Places find/details - fail fast, stale cache covers it
    CMS_METRICS = "cms_metrics"      # Live CMS quality datasets per facility
    CMS_DIRECTORY = "cms_directory"  # Boot-time provider catalog paging - patient


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_wait: float = 1.0
    fail_fast: bool = False  # If True, give up after 2 attempts on rate limit
    max_wait: float = 10.0  # Maximum wait time between retries
    exponential_backoff: bool = True
    retry_on_timeout: bool = True
    retry_on_429: bool = True
    timeout: float = 10.0  # Per-request timeout in seconds

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_wait < 0:
            raise ValueError("base_wait must be >= 0")
        if self.max_wait < self.base_wait:
            raise ValueError("max_wait must be >= base_wait")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    def wait_for_attempt(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to sleep before the next attempt (0-based ``attempt``)."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_wait)
        if self.exponential_backoff:
            return min(self.base_wait * (2 ** attempt), self.max_wait)
        return min(self.base_wait, self.max_wait)

    def max_rate_limit_attempts(self) -> int:
        return min(2, self.max_attempts) if self.fail_fast else self.max_attempts


RETRY_PROFILES: Dict[RetryProfile, RetryConfig] = {
    RetryProfile.GEOCODING: RetryConfig(
        max_attempts=2,
        base_wait=0.5,
        fail_fast=True,
        max_wait=5.0,
        timeout=10.0,
    ),
    RetryProfile.PLACES: RetryConfig(
        max_attempts=2,
        base_wait=0.5,
        fail_fast=True,
        max_wait=5.0,
        timeout=8.0,
    ),
    RetryProfile.CMS_METRICS: RetryConfig(
        max_attempts=3,
        base_wait=1.0,
        fail_fast=False,
        max_wait=5.0,
        timeout=10.0,
    ),
    RetryProfile.CMS_DIRECTORY: RetryConfig(
        max_attempts=4,
        base_wait=2.0,
        fail_fast=False,
        max_wait=20.0,
        timeout=30.0,
    ),
}


def get_retry_config(profile: RetryProfile) -> RetryConfig:
    """
    Get retry configuration for an upstream profile.

    Args:
        profile: Retry profile

    Returns:
        RetryConfig for the profile
    """
    return RETRY_PROFILES[profile]
