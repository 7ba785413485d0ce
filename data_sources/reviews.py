"""
Google review snapshots per place id
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from logging_config import get_logger
from .cache import DAY_SECONDS, EnrichmentCache, SingleFlight, is_fresh
from .error_handling import APIError
from .places_api import PlacesClient

logger = get_logger(__name__)

MAX_RECENT_REVIEWS = 5


def format_reviews(reviews: List[Dict[str, Any]]) -> List[str]:
    """Render up to five reviews as ``"4★: text (2 weeks ago)"``."""
    formatted = []
    for review in reviews[:MAX_RECENT_REVIEWS]:
        rating = f"{review['rating']}★" if review.get("rating") is not None else None
        text = (review.get("text") or "").strip()
        when = review.get("relative_time_description")
        line = ": ".join(part for part in (rating, text) if part)
        if when:
            line += f" ({when})"
        formatted.append(line)
    return formatted


def build_snapshot(place_id: str, result: Dict[str, Any], fetched_at: float) -> Dict[str, Any]:
    reviews = result.get("reviews") or []
    avg = None
    if reviews:
        avg = sum(r.get("rating") or 0 for r in reviews) / len(reviews)
    return {
        "google_place_id": place_id,
        "google_name": result.get("name"),
        "google_rating": result.get("rating"),
        "google_rating_count": result.get("user_ratings_total"),
        "recent_reviews": format_reviews(reviews),
        "recent_review_count": len(reviews),
        "recent_avg_rating": avg,
        "fetched_at": fetched_at,
    }


class ReviewSnapshotService:
    """
    Serves review snapshots from cache, refreshing them past ``max_age_days``.

    ``fetch_timeout`` bounds the live Place Details call; on timeout or
    upstream failure the stale snapshot is returned.
    """

    def __init__(self, cache: EnrichmentCache, places_client: Optional[PlacesClient],
                 max_age_days: float = 7.0,
                 clock: Callable[[], float] = time.time,
                 single_flight: Optional[SingleFlight] = None,
                 fetch_timeout: Optional[float] = None):
        self.cache = cache
        self.places_client = places_client
        self.max_age_seconds = max_age_days * DAY_SECONDS
        self.clock = clock
        self.single_flight = single_flight or SingleFlight()
        self.fetch_timeout = fetch_timeout

    async def get_review_snapshot(self, place_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Fresh cached snapshot, else a live one; stale cache or None when that fails."""
        if not place_id:
            return None

        cached = await self.cache.aget(place_id)
        if is_fresh(cached, "fetched_at", self.max_age_seconds, now=self.clock()):
            return cached

        if self.places_client is None or not self.places_client.configured:
            return cached or None

        return await self.single_flight.run(place_id, lambda: self._fetch(place_id, cached))

    async def _fetch(self, place_id: str, cached: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        try:
            result = await asyncio.wait_for(self.places_client.place_details(place_id),
                                            timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Place details timed out after {self.fetch_timeout}s",
                           extra={"place_id": place_id})
            return cached or None
        except APIError as e:
            logger.warning(f"Place details fetch failed: {e}", extra={"place_id": place_id})
            return cached or None

        snapshot = build_snapshot(place_id, result, self.clock())
        await self.cache.aset(place_id, snapshot)
        return snapshot
