import asyncio
from unittest.mock import patch

import pytest

from data_sources.cache import EnrichmentCache
from data_sources.error_handling import APIError, GeocodingFailedError, HospitalNotFoundError
from data_sources.reviews import ReviewSnapshotService
from data_sources.store import MemoryStore
from ranking.analysis import AnalysisEngine

from conftest import DAY, NOW, FakePlaces


class FakeMetricsClient:
    def __init__(self, metrics=None, fail=False, delay=0.0):
        self.metrics = metrics or {}
        self.fail = fail
        self.delay = delay
        self.calls = []

    async def fetch_quality_metrics(self, ccn):
        self.calls.append(ccn)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise APIError("cms down", "cms_quality", 503)
        return dict(self.metrics)


class FakeResolver:
    def __init__(self, place_id="place-1"):
        self.place_id = place_id

    async def get_place_id(self, facility):
        return {"place_id": self.place_id, "source": "seed"}


class FakeReviews:
    async def get_review_snapshot(self, place_id):
        return {"google_place_id": place_id, "google_rating": 4.6}


class FakeGeocoder:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def geocode_hospital(self, hospital):
        self.calls += 1
        if self.fail:
            raise GeocodingFailedError(hospital["hospital_name"])
        return {"lat": 34.0, "lon": -118.0, "provider": "fake", "resolved_at": 0}


def _names(result):
    return [f["facility_name"] for f in result["facilities"]]


def test_radius_filters_and_counts(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital", radius_miles=50))
    assert result["totalWithinRadius"] == 3
    assert "Mountain View SNF" not in _names(result)
    assert "Unmapped Manor" not in _names(result)


def test_default_sort_is_closest_first(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital"))
    assert _names(result) == ["Bayside Care Center", "Palms Post-Acute", "Hillcrest Rehab"]
    assert result["facilities"][0]["distance"] == pytest.approx(0.0)
    assert result["facilities"][1]["distance"] == pytest.approx(6.91, abs=0.01)


def test_best_mode_sinks_missing_composite(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital", mode="best"))
    assert _names(result) == ["Palms Post-Acute", "Bayside Care Center", "Hillcrest Rehab"]


def test_local_rank_and_limit(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital", limit=2))
    assert [f["Local_Rank"] for f in result["facilities"]] == [1, 2]
    assert result["totalWithinRadius"] == 3


def test_non_positive_limit_uses_default(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital", limit=0, radius_miles=100))
    assert len(result["facilities"]) == 4


def test_hospital_match_is_case_and_whitespace_insensitive(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("  harbor general HOSPITAL "))
    assert result["hospital"] == {
        "name": "Harbor General Hospital",
        "city": "Torrance",
        "state": "CA",
        "latitude": 34.0,
        "longitude": -118.0,
    }


def test_unknown_hospital(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    with pytest.raises(HospitalNotFoundError):
        asyncio.run(engine.analyze("Nowhere Memorial"))


def test_empty_hospital_name(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    with pytest.raises(ValueError):
        asyncio.run(engine.analyze("   "))


def test_empty_radius_returns_no_facilities(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.analyze("Harbor General Hospital", radius_miles=0.5))
    assert _names(result) == ["Bayside Care Center"]

    far = [s for s in snfs if s["facility_name"] == "Mountain View SNF"]
    result = asyncio.run(AnalysisEngine(hospitals, far).analyze("Harbor General Hospital"))
    assert result["facilities"] == []
    assert result["totalWithinRadius"] == 0


def test_hospital_without_coordinates_is_geocoded(hospitals, snfs):
    geocoder = FakeGeocoder()
    engine = AnalysisEngine(hospitals, snfs, geocoder=geocoder)
    result = asyncio.run(engine.analyze("Desert Valley Medical Center"))
    assert geocoder.calls == 1
    assert result["hospital"]["latitude"] == 34.0
    assert result["totalWithinRadius"] == 3

    asyncio.run(engine.analyze("Desert Valley Medical Center"))
    assert geocoder.calls == 1


def test_geocoding_failure_propagates(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs, geocoder=FakeGeocoder(fail=True))
    with pytest.raises(GeocodingFailedError):
        asyncio.run(engine.analyze("Desert Valley Medical Center"))


def test_no_geocoder_and_no_coordinates(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    with pytest.raises(GeocodingFailedError):
        asyncio.run(engine.analyze("Desert Valley Medical Center"))


def test_enrichment_joins_timelines_on_normalized_ccn(hospitals, snfs):
    quality = {"055002": {"ccn": "055002", "years": {2022: {"mobility_at_discharge": 55.0},
                                                     2024: {"mobility_at_discharge": 61.0}}}}
    regulatory = {"055002": {"ccn": "055002", "years": {2023: {"citations": {"total": 2}, "penalties": None}}}}
    snfs[1]["CCN"] = "55002"
    engine = AnalysisEngine(
        hospitals, snfs,
        quality_timelines=quality,
        regulatory_timelines=regulatory,
        metrics_client=FakeMetricsClient({"Mobility at Discharge": 63.0, "Fall with Major Injury Rate": None}),
        place_resolver=FakeResolver(),
        review_service=FakeReviews(),
    )
    result = asyncio.run(engine.analyze("Harbor General Hospital"))
    palms = result["facilities"][1]
    assert palms["facility_name"] == "Palms Post-Acute"
    assert palms["historical_metrics"] == quality["055002"]["years"]
    assert palms["historical_years_available"] == 2
    assert palms["regulatory_history"] == regulatory["055002"]
    assert palms["Mobility at Discharge"] == 63.0
    assert "Fall with Major Injury Rate" not in palms
    assert palms["review_enrichment"]["google_rating"] == 4.6

    bayside = result["facilities"][0]
    assert bayside["historical_metrics"] == {}
    assert bayside["historical_years_available"] == 0
    assert bayside["regulatory_history"] is None


def test_failed_enrichment_degrades_without_failing_request(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs, metrics_client=FakeMetricsClient(fail=True),
                            place_resolver=FakeResolver(), review_service=FakeReviews())
    result = asyncio.run(engine.analyze("Harbor General Hospital"))
    assert len(result["facilities"]) == 3
    assert "Mobility at Discharge" not in result["facilities"][0]
    assert result["facilities"][0]["review_enrichment"]["google_place_id"] == "place-1"


def test_slow_enrichment_times_out(hospitals, snfs):
    client = FakeMetricsClient({"Mobility at Discharge": 63.0}, delay=1.0)
    engine = AnalysisEngine(hospitals, snfs, metrics_client=client, enrichment_timeout=0.01)
    result = asyncio.run(engine.analyze("Harbor General Hospital"))
    assert all("Mobility at Discharge" not in f for f in result["facilities"])
    assert len(client.calls) == 3


def test_view_echoes_resolved_sort(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    result = asyncio.run(engine.view("Harbor General Hospital", sort_by="bogus", mode="best"))
    assert result["sort"] == {"by": "composite", "order": "desc"}
    assert _names(result)[0] == "Palms Post-Acute"


def test_analysis_does_not_mutate_directory(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    asyncio.run(engine.analyze("Harbor General Hospital"))
    assert all("distance" not in s and "Local_Rank" not in s for s in engine.snfs)


def test_search_and_by_name(hospitals, snfs):
    engine = AnalysisEngine(hospitals, snfs)
    assert [h["hospital_name"] for h in engine.search_hospitals("harbor")] == ["Harbor General Hospital"]
    assert engine.search_hospitals("") == []
    assert len(engine.search_hospitals("e", limit=1)) == 1
    assert engine.hospital_by_name("desert valley medical center")["id"] == "050002"
    assert engine.hospital_by_name("unknown") is None


def test_overlapping_requests_survive_a_shared_stalled_review_fetch(hospitals, snfs):
    places = FakePlaces(details={"name": "Palms", "rating": 4.1}, delay=0.5)
    reviews = ReviewSnapshotService(EnrichmentCache(MemoryStore(), "reviews"), places)
    engine = AnalysisEngine(hospitals, snfs, place_resolver=FakeResolver(), review_service=reviews,
                            enrichment_timeout=0.1)

    async def main():
        async def second_request():
            await asyncio.sleep(0.05)
            return await engine.analyze("Harbor General Hospital")

        return await asyncio.gather(engine.analyze("Harbor General Hospital"), second_request(),
                                    return_exceptions=True)

    with patch("ranking.analysis.LOOKUP_GRACE_SECONDS", 0.0):
        outcomes = asyncio.run(main())
    for result in outcomes:
        assert isinstance(result, dict)
        assert [f["review_enrichment"] for f in result["facilities"]] == [None, None, None]
    assert places.details_calls == ["place-1"]


def test_stalled_review_refresh_serves_stale_snapshot(hospitals, snfs):
    cache = EnrichmentCache(MemoryStore(), "reviews")
    stale = {"google_place_id": "place-1", "google_rating": 4.0, "fetched_at": NOW - 30 * DAY}
    cache.set("place-1", stale)
    places = FakePlaces(details={"rating": 4.8}, delay=1.0)
    reviews = ReviewSnapshotService(cache, places, clock=lambda: NOW, fetch_timeout=0.1)
    engine = AnalysisEngine(hospitals, snfs, place_resolver=FakeResolver(), review_service=reviews,
                            enrichment_timeout=0.1)
    result = asyncio.run(engine.analyze("Harbor General Hospital"))
    assert [f["review_enrichment"] for f in result["facilities"]] == [stale, stale, stale]
    assert places.details_calls == ["place-1"]
