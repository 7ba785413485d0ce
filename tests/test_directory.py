import csv

import pytest

from data_sources.directory import (
    ALIASES_VERSION_FIELD,
    composite_score,
    load_hospitals,
    load_place_id_seed,
    load_snfs,
    map_hospital_row,
    map_snf_row,
    parse_location,
)
from data_sources.error_handling import APIError
from data_sources.field_aliases import FIELD_ALIASES_VERSION
from data_sources.store import MemoryStore

CCN = "CMS Certification Number (CCN)"


class FakeDirectoryClient:
    def __init__(self, hospitals=None, snfs=None, fail=False):
        self.hospitals = hospitals or []
        self.snfs = snfs or []
        self.fail = fail
        self.calls = 0

    def fetch_all_hospitals(self):
        self.calls += 1
        if self.fail:
            raise APIError("CMS dataset fetch failed: status 503", "cms_directory", 503)
        return self.hospitals

    def fetch_all_snfs(self):
        self.calls += 1
        if self.fail:
            raise APIError("CMS dataset fetch failed: status 503", "cms_directory", 503)
        return self.snfs


def _write_csv(path, rows):
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(rows[0]))
        writer.writeheader()
        writer.writerows(rows)


HOSPITAL_CSV_ROW = {
    "Facility ID": "50123",
    "Facility Name": "Mercy General",
    "Address": "4001 J St",
    "City/Town": "Sacramento",
    "State": "ca",
    "ZIP Code": "95819",
    "County/Parish": "Sacramento",
    "Location": "POINT(-121.46 38.57)",
}


def test_map_hospital_row():
    hospital = map_hospital_row(HOSPITAL_CSV_ROW)
    assert hospital["id"] == "050123"
    assert hospital["provider_id"] == "050123"
    assert hospital["hospital_name"] == "Mercy General"
    assert hospital["city"] == "Sacramento"
    assert hospital["state"] == "CA"
    assert hospital["zip_code"] == "95819"
    assert hospital["county_name"] == "Sacramento"
    assert (hospital["latitude"], hospital["longitude"]) == (38.57, -121.46)
    assert hospital["_key"] == "mercy general"


def test_map_hospital_row_requires_name():
    assert map_hospital_row({"Facility ID": "1"}) is None


def test_map_snf_row_composite_and_ccn():
    snf = map_snf_row({
        CCN: "15009",
        "Provider Name": "Sunrise Care",
        "Overall Rating": "4",
        "Staffing Rating": "3",
        "QM Rating": "",
        "Health Inspection Rating": "5",
        "Latitude": "34.0",
        "Longitude": "-118",
    })
    assert snf["CCN"] == "015009"
    assert snf["provider_id"] == "015009"
    assert snf["Composite_Score"] == pytest.approx(80.0)
    assert snf["overall_rating"] == 4.0
    assert "qm_rating" not in snf
    assert (snf["latitude"], snf["longitude"]) == (34.0, -118.0)


def test_map_snf_row_without_ratings_or_ccn():
    snf = map_snf_row({"Provider Name": "Unrated Home"})
    assert snf["Composite_Score"] is None
    assert "CCN" not in snf
    assert snf["id"] == "unrated home"


@pytest.mark.parametrize("row,expected", [
    ({"latitude": "34.5", "longitude": "-118.2"}, (34.5, -118.2)),
    ({"location": "POINT (-118.2 34.5)"}, (34.5, -118.2)),
    ({"location": "34.5, -118.2"}, (34.5, -118.2)),
    ({"location": {"coordinates": [-118.2, 34.5]}}, (34.5, -118.2)),
    ({"location": {"latitude": "34.5", "longitude": "-118.2"}}, (34.5, -118.2)),
    ({}, (None, None)),
])
def test_parse_location(row, expected):
    assert parse_location(row) == expected


def test_composite_score():
    assert composite_score([5, None, 3]) == pytest.approx(80.0)
    assert composite_score([None, None]) is None


def test_store_wins_without_force_refresh(tmp_path):
    store = MemoryStore()
    store.set("hospitals", "050001", {"id": "050001", "hospital_name": "Cached",
                                      ALIASES_VERSION_FIELD: FIELD_ALIASES_VERSION})
    client = FakeDirectoryClient(hospitals=[{"hospital_name": "Live"}])
    hospitals = load_hospitals(store, client, tmp_path / "missing.csv")
    assert [h["hospital_name"] for h in hospitals] == ["Cached"]
    assert client.calls == 0


def test_records_from_older_alias_table_are_remapped(tmp_path):
    store = MemoryStore()
    store.set("hospitals", "050001", {"id": "050001", "hospital_name": "Cached",
                                      ALIASES_VERSION_FIELD: FIELD_ALIASES_VERSION - 1})
    client = FakeDirectoryClient(hospitals=[{"provider_id": "050002", "hospital_name": "Live",
                                             "city": "X", "county_name": "Y", "zip_code": "1"}])
    hospitals = load_hospitals(store, client, tmp_path / "missing.csv")
    assert [h["hospital_name"] for h in hospitals] == ["Live"]
    assert client.calls == 1
    assert store.get("hospitals", "050001") is None
    assert store.get("hospitals", "050002")[ALIASES_VERSION_FIELD] == FIELD_ALIASES_VERSION


def test_unstamped_records_served_when_sources_fail(tmp_path):
    store = MemoryStore()
    store.set("snfs", "015009", {"id": "015009", "facility_name": "Cached Care"})
    snfs = load_snfs(store, FakeDirectoryClient(fail=True), tmp_path / "missing.csv")
    assert [s["facility_name"] for s in snfs] == ["Cached Care"]
    assert store.get("snfs", "015009") == {"id": "015009", "facility_name": "Cached Care"}


def test_force_refresh_reloads_from_cms(tmp_path):
    store = MemoryStore()
    store.set("hospitals", "050001", {"id": "050001", "hospital_name": "Cached",
                                      ALIASES_VERSION_FIELD: FIELD_ALIASES_VERSION})
    client = FakeDirectoryClient(hospitals=[{"provider_id": "050002", "hospital_name": "Live",
                                             "city": "X", "county_name": "Y", "zip_code": "1"}])
    hospitals = load_hospitals(store, client, tmp_path / "missing.csv", force_refresh=True)
    assert [h["hospital_name"] for h in hospitals] == ["Live"]
    assert store.get("hospitals", "050002")["hospital_name"] == "Live"
    assert store.get("hospitals", "050001") is None


def test_cms_rows_patched_from_local_csv(tmp_path):
    csv_path = tmp_path / "hospitals.csv"
    _write_csv(csv_path, [HOSPITAL_CSV_ROW])
    client = FakeDirectoryClient(hospitals=[
        {"provider_id": "050123", "hospital_name": "Mercy General", "address": "4001 J St", "state": "CA"},
        {"provider_id": "", "hospital_name": ""},
    ])
    store = MemoryStore()
    hospitals = load_hospitals(store, client, csv_path)
    assert len(hospitals) == 1
    assert hospitals[0]["city"] == "Sacramento"
    assert hospitals[0]["zip_code"] == "95819"
    assert hospitals[0]["county_name"] == "Sacramento"
    assert store.count("hospitals") == 1


def test_cms_failure_falls_back_to_csv(tmp_path):
    csv_path = tmp_path / "snfs.csv"
    _write_csv(csv_path, [{CCN: "15009", "Provider Name": "Sunrise Care", "Overall Rating": "4"}])
    store = MemoryStore()
    snfs = load_snfs(store, FakeDirectoryClient(fail=True), csv_path)
    assert [s["CCN"] for s in snfs] == ["015009"]
    assert store.get("snfs", "015009")["facility_name"] == "Sunrise Care"


def test_csv_fallback_disabled(tmp_path):
    csv_path = tmp_path / "snfs.csv"
    _write_csv(csv_path, [{CCN: "15009", "Provider Name": "Sunrise Care"}])
    assert load_snfs(MemoryStore(), FakeDirectoryClient(fail=True), csv_path, use_local_fallback=False) == []


def test_no_client_reads_csv(tmp_path):
    csv_path = tmp_path / "snfs.csv"
    _write_csv(csv_path, [{CCN: "15009", "Provider Name": "Sunrise Care"}])
    assert len(load_snfs(MemoryStore(), None, csv_path)) == 1


def test_place_id_seed(tmp_path):
    path = tmp_path / "seed.csv"
    _write_csv(path, [
        {"federal_provider_number": "15009", "google_place_id": "abc", "google_name": "Sunrise"},
        {"federal_provider_number": "15010", "google_place_id": "", "google_name": ""},
        {"federal_provider_number": "", "google_place_id": "zzz", "google_name": ""},
    ])
    assert load_place_id_seed(path) == {"015009": {"google_place_id": "abc", "google_name": "Sunrise"}}


def test_place_id_seed_disabled_or_missing(tmp_path):
    assert load_place_id_seed(None) == {}
    assert load_place_id_seed(tmp_path / "missing.csv") == {}
