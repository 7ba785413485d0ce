import asyncio

import pytest

from data_sources.cache import EnrichmentCache
from data_sources.reviews import ReviewSnapshotService, build_snapshot, format_reviews
from data_sources.store import MemoryStore

from conftest import DAY, NOW, FakePlaces

DETAILS = {
    "name": "Palms Post-Acute",
    "rating": 4.3,
    "user_ratings_total": 87,
    "reviews": [
        {"rating": 5, "text": "Wonderful therapists.", "relative_time_description": "2 weeks ago"},
        {"rating": 3, "text": "  Slow call buttons ", "relative_time_description": "a month ago"},
    ],
}


def _service(places, cached=None, fetch_timeout=None):
    cache = EnrichmentCache(MemoryStore(), "reviews")
    if cached is not None:
        cache.set("place-1", cached)
    return ReviewSnapshotService(cache, places, max_age_days=7, clock=lambda: NOW,
                                 fetch_timeout=fetch_timeout), cache


def test_format_reviews():
    assert format_reviews(DETAILS["reviews"]) == [
        "5★: Wonderful therapists. (2 weeks ago)",
        "3★: Slow call buttons (a month ago)",
    ]


def test_format_reviews_caps_at_five():
    reviews = [{"rating": 4, "text": str(i)} for i in range(8)]
    assert len(format_reviews(reviews)) == 5


def test_build_snapshot():
    snapshot = build_snapshot("place-1", DETAILS, NOW)
    assert snapshot["google_place_id"] == "place-1"
    assert snapshot["google_name"] == "Palms Post-Acute"
    assert snapshot["google_rating"] == 4.3
    assert snapshot["google_rating_count"] == 87
    assert snapshot["recent_review_count"] == 2
    assert snapshot["recent_avg_rating"] == pytest.approx(4.0)
    assert snapshot["fetched_at"] == NOW


def test_snapshot_without_reviews():
    snapshot = build_snapshot("place-1", {"name": "X"}, NOW)
    assert snapshot["recent_reviews"] == []
    assert snapshot["recent_avg_rating"] is None


def test_fresh_snapshot_served_from_cache():
    places = FakePlaces(details=DETAILS)
    cached = build_snapshot("place-1", DETAILS, NOW - DAY)
    service, _ = _service(places, cached)
    assert asyncio.run(service.get_review_snapshot("place-1")) == cached
    assert places.details_calls == []


def test_stale_snapshot_refreshed():
    places = FakePlaces(details=DETAILS)
    service, cache = _service(places, build_snapshot("place-1", {"name": "Old"}, NOW - 8 * DAY))
    snapshot = asyncio.run(service.get_review_snapshot("place-1"))
    assert snapshot["google_name"] == "Palms Post-Acute"
    assert snapshot["fetched_at"] == NOW
    assert places.details_calls == ["place-1"]
    assert cache.get("place-1")["fetched_at"] == NOW


def test_refresh_failure_keeps_stale_snapshot():
    stale = build_snapshot("place-1", {"name": "Old"}, NOW - 8 * DAY)
    service, _ = _service(FakePlaces(fail=True), stale)
    assert asyncio.run(service.get_review_snapshot("place-1")) == stale


def test_hanging_refresh_keeps_stale_snapshot():
    places = FakePlaces(details=DETAILS, delay=1.0)
    stale = build_snapshot("place-1", {"name": "Old"}, NOW - 30 * DAY)
    service, cache = _service(places, stale, fetch_timeout=0.05)
    assert asyncio.run(service.get_review_snapshot("place-1")) == stale
    assert places.details_calls == ["place-1"]
    assert cache.get("place-1") == stale


def test_refresh_failure_without_cache():
    service, _ = _service(FakePlaces(fail=True))
    assert asyncio.run(service.get_review_snapshot("place-1")) is None


def test_unconfigured_client_serves_cache_only():
    places = FakePlaces(details=DETAILS, configured=False)
    stale = build_snapshot("place-1", {"name": "Old"}, NOW - 30 * DAY)
    service, _ = _service(places, stale)
    assert asyncio.run(service.get_review_snapshot("place-1")) == stale
    assert places.details_calls == []


def test_blank_place_id():
    service, _ = _service(FakePlaces(details=DETAILS))
    assert asyncio.run(service.get_review_snapshot("")) is None
