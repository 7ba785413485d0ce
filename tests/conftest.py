import asyncio

import pytest

from data_sources.cache import EnrichmentCache
from data_sources.error_handling import APIError, Result
from data_sources.store import MemoryStore

NOW = 1_700_000_000.0
DAY = 24 * 3600


class FakeProvider:
    """Geocoder stand-in returning a canned Result (or raising / sleeping)."""

    def __init__(self, name, result=None, raises=None, delay=0.0, timeout=1.0):
        self.name = name
        self.timeout = timeout
        self._result = result
        self._raises = raises
        self._delay = delay
        self.calls = 0

    async def geocode(self, query):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._raises is not None:
            raise self._raises
        return self._result or Result.failure("no match", self.name)


class FakePlaces:
    """PlacesClient stand-in; records calls and replays canned payloads."""

    def __init__(self, find=None, details=None, fail=False, configured=True, delay=0.0):
        self._find = find
        self._details = details or {}
        self._fail = fail
        self._delay = delay
        self.configured = configured
        self.find_calls = []
        self.details_calls = []

    async def find_place(self, query, location_bias=None):
        self.find_calls.append((query, location_bias))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise APIError("boom", "google_find_place", 500)
        return self._find

    async def place_details(self, place_id):
        self.details_calls.append(place_id)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise APIError("boom", "google_place_details", 500)
        return self._details


class BrokenStore(MemoryStore):
    name = "broken"

    def get(self, namespace, key):
        raise RuntimeError("store down")

    def set(self, namespace, key, value):
        raise RuntimeError("store down")

    def count(self, namespace):
        raise RuntimeError("store down")


@pytest.fixture
def memory_cache():
    return EnrichmentCache(MemoryStore(), "test")


@pytest.fixture
def hospitals():
    return [
        {
            "id": "050001",
            "provider_id": "050001",
            "hospital_name": "Harbor General Hospital",
            "address": "1000 W Carson St",
            "city": "Torrance",
            "state": "CA",
            "zip_code": "90502",
            "latitude": 34.0,
            "longitude": -118.0,
        },
        {
            "id": "050002",
            "provider_id": "050002",
            "hospital_name": "Desert Valley Medical Center",
            "address": "16850 Bear Valley Rd",
            "city": "Victorville",
            "state": "CA",
            "zip_code": "92395",
            "latitude": None,
            "longitude": None,
        },
    ]


@pytest.fixture
def snfs():
    return [
        {"id": "055001", "CCN": "055001", "facility_name": "Bayside Care Center",
         "latitude": 34.0, "longitude": -118.0, "overall_rating": 3.0, "Composite_Score": 60.0},
        {"id": "055002", "CCN": "055002", "facility_name": "Palms Post-Acute",
         "latitude": 34.1, "longitude": -118.0, "overall_rating": 5.0, "Composite_Score": 90.0},
        {"id": "055003", "CCN": "055003", "facility_name": "Hillcrest Rehab",
         "latitude": 34.2, "longitude": -118.0, "Composite_Score": None},
        {"id": "055004", "CCN": "055004", "facility_name": "Mountain View SNF",
         "latitude": 35.0, "longitude": -118.0, "overall_rating": 5.0, "Composite_Score": 100.0},
        {"id": "no-coords", "facility_name": "Unmapped Manor", "latitude": None, "longitude": None,
         "Composite_Score": 95.0},
    ]
