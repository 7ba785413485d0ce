"""
Historical regulatory timelines: health citations and penalties per year
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Union

from logging_config import get_logger
from .field_aliases import row_accessor
from .utils import normalize_ccn, read_csv_rows, to_number, to_string

logger = get_logger(__name__)

CITATIONS_PATTERN = "NH_HealthCitations_Jan{year}.csv"
PENALTIES_PATTERN = "NH_Penalties_Jan{year}.csv"

SEVERITY_BUCKETS = (
    ("JKL", "immediateJeopardy"),
    ("GHI", "actualHarm"),
    ("DEF", "potentialHarm"),
    ("ABC", "minimalHarm"),
)


def severity_bucket(scope_code: Any) -> str:
    code = to_string(scope_code).upper()
    if not code:
        return "unknown"
    for letters, bucket in SEVERITY_BUCKETS:
        if code[0] in letters:
            return bucket
    return "unknown"


def _empty_citations() -> Dict[str, int]:
    return {
        "total": 0,
        "immediateJeopardy": 0,
        "actualHarm": 0,
        "potentialHarm": 0,
        "minimalHarm": 0,
        "unknown": 0,
        "infectionControl": 0,
    }


def _empty_penalties() -> Dict[str, Any]:
    return {"penalties": 0, "finesCount": 0, "finesTotal": 0.0, "paymentDenials": 0}


def aggregate_citations(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    """Count citations per CCN by severity bucket plus infection-control flags."""
    summary: Dict[str, Dict[str, int]] = {}
    for row in rows:
        field = row_accessor(row)
        ccn = normalize_ccn(field("historical_ccn"))
        if not ccn:
            continue
        entry = summary.setdefault(ccn, _empty_citations())
        entry["total"] += 1
        entry[severity_bucket(field("scope_severity_code"))] += 1

        flagged = to_string(field("infection_control_inspection_deficiency")).upper() == "Y"
        category = to_string(field("deficiency_category")).lower()
        if flagged or "infection control" in category:
            entry["infectionControl"] += 1
    return summary


def aggregate_penalties(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Count penalties, non-zero fines and payment denials per CCN."""
    summary: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        field = row_accessor(row)
        ccn = normalize_ccn(field("historical_ccn"))
        if not ccn:
            continue
        entry = summary.setdefault(ccn, _empty_penalties())
        entry["penalties"] += 1

        fine = to_number(field("fine_amount"))
        if fine:
            entry["finesCount"] += 1
            entry["finesTotal"] += fine

        penalty_type = to_string(field("penalty_type")).lower()
        if "denial" in penalty_type or field("payment_denial_start_date"):
            entry["paymentDenials"] += 1
    return summary


def _read_rows(path: Path, label: str) -> List[Dict[str, Any]]:
    try:
        return list(read_csv_rows(path))
    except OSError as e:
        logger.warning(f"Unable to load {label} for {path.parent.name}: {e}")
        return []


def build_regulatory_timelines(years: Sequence[int], base_dir: Union[str, Path]) -> Dict[str, Dict[str, Any]]:
    """
    Per-facility regulatory timelines.

    Returns:
        {ccn: {ccn, years: {year: {citations: {...} | None, penalties: {...} | None}}}}
    """
    base = Path(base_dir)
    timelines: Dict[str, Dict[str, Any]] = {}

    for year in years:
        year_dir = base / str(year)
        citations = aggregate_citations(
            _read_rows(year_dir / CITATIONS_PATTERN.format(year=year), "citations"))
        penalties = aggregate_penalties(
            _read_rows(year_dir / PENALTIES_PATTERN.format(year=year), "penalties"))

        for ccn in set(citations) | set(penalties):
            timeline = timelines.setdefault(ccn, {"ccn": ccn, "years": {}})
            timeline["years"][int(year)] = {
                "citations": citations.get(ccn),
                "penalties": penalties.get(ccn),
            }

    logger.info(f"Built regulatory timelines for {len(timelines)} facilities")
    return timelines
