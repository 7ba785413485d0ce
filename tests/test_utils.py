import pytest

from data_sources.field_aliases import normalize_field_name, row_accessor
from data_sources.utils import (
    facility_ccn,
    format_distance,
    haversine_miles,
    normalize_ccn,
    normalize_name_key,
    pick,
    read_csv_rows,
    to_number,
    validate_coordinates,
)


def test_haversine_zero_distance():
    assert haversine_miles(34.0, -118.0, 34.0, -118.0) == 0.0


def test_haversine_one_degree_latitude():
    assert haversine_miles(0.0, 0.0, 1.0, 0.0) == pytest.approx(69.09, abs=0.01)


def test_haversine_symmetric():
    a = haversine_miles(34.05, -118.24, 37.77, -122.42)
    b = haversine_miles(37.77, -122.42, 34.05, -118.24)
    assert a == pytest.approx(b)
    assert 340 < a < 350


@pytest.mark.parametrize("value,expected", [
    ("15009", "015009"),
    (15009, "015009"),
    (15009.0, "015009"),
    ("15009.0", "015009"),
    ("015009", "015009"),
    (" 055001 ", "055001"),
    ("", None),
    (None, None),
])
def test_normalize_ccn(value, expected):
    assert normalize_ccn(value) == expected


def test_to_number():
    assert to_number("1,500.25") == 1500.25
    assert to_number(" 4 ") == 4.0
    assert to_number("") is None
    assert to_number("n/a") is None
    assert to_number(float("nan")) is None
    assert to_number(True) is None


def test_validate_coordinates():
    assert validate_coordinates(34.0, -118.0)
    assert validate_coordinates("34.0", "-118.0")
    assert not validate_coordinates(None, -118.0)
    assert not validate_coordinates(91, 0)
    assert not validate_coordinates(float("inf"), 0)


def test_pick_skips_none_and_blank():
    assert pick(None, "", 0, 5) == 0
    assert pick(None, "") is None


def test_normalize_name_key():
    assert normalize_name_key("  St. Mary's  Medical-Center ") == "st mary s medical center"
    assert normalize_name_key(None) == ""


def test_format_distance():
    assert format_distance(3.456) == "3.5 mi"
    assert format_distance(None) == "distance n/a"


def test_read_csv_rows_skips_blank_lines(tmp_path):
    path = tmp_path / "rows.csv"
    path.write_text("\ufeffname,city\nA,X\n,\nB,Y\n", encoding="utf-8")
    rows = list(read_csv_rows(path))
    assert [r["name"] for r in rows] == ["A", "B"]


def test_read_csv_rows_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        list(read_csv_rows(tmp_path / "missing.csv"))


def test_normalize_field_name():
    assert normalize_field_name("CMS Certification Number (CCN)") == "cms_certification_number_ccn"
    assert normalize_field_name("City/Town") == "city_town"


def test_row_accessor_resolves_aliases():
    row = {"Federal Provider Number": "15009", "Provider Name": "Sunrise", "City/Town": "Reno"}
    field = row_accessor(row)
    assert field("snf_provider_id") == "15009"
    assert field("snf_name") == "Sunrise"
    assert field("snf_city") == "Reno"
    assert field("zip_code") is None


def test_row_accessor_skips_blank_alias_values():
    row = {"provider_id": "", "ccn": "055001"}
    assert row_accessor(row)("snf_provider_id") == "055001"


def test_facility_ccn_reads_every_identifier_field():
    assert facility_ccn({"CCN": "55001", "provider_number": "999999"}) == "055001"
    assert facility_ccn({"CMS Certification Number (CCN)": 15009}) == "015009"
    assert facility_ccn({"provider_number": "55002"}) == "055002"
    assert facility_ccn({"federal_provider_number": "", "provider_id": "055003"}) == "055003"
    assert facility_ccn({"facility_name": "No Id"}) is None
