"""
Error handling and fallback mechanisms for the SNF referral API
Provides graceful degradation when external APIs fail
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Generic, Optional, TypeVar

from logging_config import get_logger, log_error

logger = get_logger(__name__)

T = TypeVar("T")


class SNFReferralError(Exception):
    """Base exception for SNF referral errors."""
    pass


class APIError(SNFReferralError):
    """Exception for API-related errors."""
    def __init__(self, message: str, api_name: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.api_name = api_name
        self.status_code = status_code


class HospitalNotFoundError(SNFReferralError):
    """The requested hospital name has no exact match in the directory."""
    def __init__(self, hospital_name: str):
        super().__init__(f"Hospital not found: {hospital_name}")
        self.hospital_name = hospital_name


class GeocodingFailedError(SNFReferralError):
    """Every configured geocoder failed for an address."""
    def __init__(self, address: str, attempts: Optional[Dict[str, str]] = None):
        super().__init__(f"Geocoding failed for {address}")
        self.address = address
        self.attempts = attempts or {}


class EnrichmentDegraded(SNFReferralError):
    """
    An optional enrichment sub-call failed or timed out.

    Never propagated to API callers; it only carries context into the
    structured log record.
    """
    def __init__(self, operation: str, reason: str):
        super().__init__(f"{operation} degraded: {reason}")
        self.operation = operation
        self.reason = reason


@dataclass
class Result(Generic[T]):
    """Uniform outcome of one strategy in a fallback chain."""
    value: Optional[T] = None
    error: Optional[str] = None
    provider: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def success(cls, value: T, provider: Optional[str] = None) -> "Result[T]":
        return cls(value=value, provider=provider)

    @classmethod
    def failure(cls, error: str, provider: Optional[str] = None) -> "Result[T]":
        return cls(error=error, provider=provider)


def check_api_credentials(settings) -> Dict[str, bool]:
    """
    Check which API credentials are available.

    Returns:
        Dict mapping API names to availability status
    """
    return {
        "google_places": bool(settings.google_places_api_key),
        "google_geocoding": bool(settings.google_maps_key),
        "nominatim": True,  # no key required
        "census_geocoder": True,
        "cms": True,  # token only raises rate limits
    }


async def with_degraded_fallback(awaitable: Awaitable[T], fallback: Any, timeout: float,
                                 operation: str, **context) -> Any:
    """
    Await an enrichment sub-call, bounded by ``timeout``.

    Timeouts and failures are logged as ``enrichment_degraded`` and replaced
    with ``fallback``. Cancellation of the caller still propagates.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        degraded = EnrichmentDegraded(operation, f"timed out after {timeout}s")
    except Exception as e:
        degraded = EnrichmentDegraded(operation, str(e) or type(e).__name__)

    log_error(logger, "enrichment_degraded", str(degraded), operation=operation, **context)
    return fallback
