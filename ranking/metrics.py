"""
Quality metric catalog and current-vs-historical resolution
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class MetricDefinition:
    label: str
    current_key: Optional[str]
    historical_key: str
    higher_is_better: bool
    unit: str
    group: str
    description: str

    @property
    def preference(self) -> str:
        return "Higher is better" if self.higher_is_better else "Lower is better"


METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition("Mobility at Discharge", "Mobility at Discharge", "mobility_at_discharge",
                     True, "%", "outcomes", "Higher indicates patients regained more function"),
    MetricDefinition("Discharge to Community", "Discharge to Community Rate", "discharge_to_community_rate",
                     True, "%", "outcomes", "Share of residents successfully discharged home"),
    MetricDefinition("Self-Care at Discharge", "Self-Care at Discharge", "self_care_at_discharge",
                     True, "%", "outcomes", "Improvement in residents' ability to perform daily tasks"),
    MetricDefinition("Fall w/ Major Injury", "Fall with Major Injury Rate", "fall_with_major_injury_rate",
                     False, "%", "safety", "Lower is safer; serious fall incidents"),
    MetricDefinition("Pressure Ulcer Rate", "Pressure Ulcer Rate", "pressure_ulcer_rate",
                     False, "%", "safety", "Lower indicates better wound prevention"),
    MetricDefinition("Preventable Readmission", "Preventable Readmission Rate", "preventable_readmission_rate",
                     False, "%", "safety", "Lower suggests fewer residents bounce back to hospitals"),
    MetricDefinition("Medication Review", "Medication Review Rate", "medication_review_rate",
                     True, "%", "process", "Residents receiving appropriate med reviews"),
    MetricDefinition("Infection Rate", "Healthcare-Associated Infection Rate", "healthcare_associated_infection_rate",
                     False, "%", "safety", "Lower is better; infection control indicator"),
    MetricDefinition("Short-stay Rehospitalization", None, "short_stay_rehospitalization_rate",
                     False, "%", "utilization", "After SNF admission, lower rehospitalization is better"),
    MetricDefinition("Short-stay ED Visit", None, "short_stay_ed_visit_rate",
                     False, "%", "utilization", "ED visits after SNF admission (short-stay)"),
    MetricDefinition("Long-stay Hospitalizations", None, "long_stay_hospitalization_rate",
                     False, "", "utilization", "Per 1000 long-stay resident days"),
    MetricDefinition("Long-stay ED Visits", None, "long_stay_ed_visit_rate",
                     False, "", "utilization", "Per 1000 long-stay resident days"),
)

_BY_HISTORICAL_KEY = {m.historical_key: m for m in METRIC_DEFINITIONS}


def get_metric(historical_key: str) -> MetricDefinition:
    """Look up a catalog entry; raises KeyError for unknown keys."""
    return _BY_HISTORICAL_KEY[historical_key]


def _year_values(history: Mapping[Any, Any], key: str) -> List[Tuple[int, Any]]:
    """(year, value) pairs holding a non-null value for ``key``, ascending by year."""
    pairs = []
    for year, metrics in (history or {}).items():
        if not isinstance(metrics, Mapping):
            continue
        value = metrics.get(key)
        if value is None:
            continue
        try:
            pairs.append((int(year), value))
        except (TypeError, ValueError):
            continue
    pairs.sort(key=lambda pair: pair[0])
    return pairs


def resolve_metric(facility: Mapping[str, Any], metric: MetricDefinition) -> Dict[str, Any]:
    """
    Current value for ``metric`` when present, else the latest historical one.

    Only years that actually carry this metric count toward "latest" and
    toward trend eligibility, so a year that exists for other metrics
    doesn't blank this one.

    Returns:
        {value, source, latest_historical_year, trend}
    """
    current = facility.get(metric.current_key) if metric.current_key else None
    years = _year_values(facility.get("historical_metrics") or {}, metric.historical_key)

    latest_year, latest_value = years[-1] if years else (None, None)

    if current is not None:
        value, source = current, "current"
    elif latest_value is not None:
        value, source = latest_value, "historical"
    else:
        value, source = None, "none"

    trend = None
    if len(years) >= 2:
        earliest_year, earliest_value = years[0]
        try:
            delta = float(latest_value) - float(earliest_value)
        except (TypeError, ValueError):
            delta = None
        if delta is not None:
            trend = {
                "delta": delta,
                "direction_is_good": (delta > 0) == metric.higher_is_better,
                "year_span": f"{earliest_year}→{latest_year}",
                "earliest_year": earliest_year,
                "latest_year": latest_year,
            }

    return {
        "value": value,
        "source": source,
        "latest_historical_year": latest_year,
        "trend": trend,
    }
