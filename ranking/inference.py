"""
Free-text question heuristics for the chat route
Maps a question to sort parameters or a trend focus and renders
deterministic replies from already-ranked facilities
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from data_sources.utils import format_distance

from .metrics import MetricDefinition, get_metric, resolve_metric

DESC_HINTS = ("highest", "greatest", "top", "best", "high to low", "desc")
ASC_HINTS = ("lowest", "least", "low to high", "asc", "smallest")
TREND_HINTS = ("trend", "improve", "increase", "change", "delta")

# trend focus -> catalog historical key
TREND_METRICS = {
    "self_care": "self_care_at_discharge",
    "mobility": "mobility_at_discharge",
    "discharge": "discharge_to_community_rate",
    "pressure_ulcer": "pressure_ulcer_rate",
    "infection": "healthcare_associated_infection_rate",
}

SORT_LABELS = {
    "rating": "overall rating",
    "distance": "distance",
    "composite": "composite score",
    "name": "name",
}


def infer_sort(question: Optional[str], sort_by: Optional[str] = None,
               order: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
    """
    Explicit parameters win; otherwise read ordering/subject words from the question.

    Returns:
        (sort_by, order); sort_by is None when the question isn't a sort request
    """
    if sort_by:
        return sort_by, order

    q = (question or "").lower()
    hinted = None
    if any(h in q for h in DESC_HINTS):
        hinted = "desc"
    elif any(h in q for h in ASC_HINTS):
        hinted = "asc"

    if "composite" in q:
        return "composite", hinted or "desc"
    if "rating" in q or "stars" in q:
        return "rating", hinted or "desc"
    if "distance" in q or "closest" in q or "nearest" in q:
        return "distance", "asc"
    return None, order


def detect_trend_focus(question: Optional[str]) -> Optional[str]:
    q = (question or "").lower()
    if not any(h in q for h in TREND_HINTS):
        return None
    if "self-care" in q or "self care" in q:
        return "self_care"
    if "mobility" in q:
        return "mobility"
    if "discharge" in q:
        return "discharge"
    if "ulcer" in q:
        return "pressure_ulcer"
    if "infection" in q:
        return "infection"
    return "mobility"


def _trend_metric(focus: str) -> MetricDefinition:
    return get_metric(TREND_METRICS[focus])


def _format_number(value: Any) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def build_trend_answer(facilities: Sequence[Mapping[str, Any]], focus: str,
                       hospital_name: str) -> Optional[str]:
    """
    Top three facilities by signed improvement in the focus metric.

    Improvement is the delta flipped for lower-is-better metrics; ties go
    to the closer facility. None when no facility has a trend.
    """
    if not facilities or focus not in TREND_METRICS:
        return None
    metric = _trend_metric(focus)

    ranked = []
    for facility in facilities:
        trend = resolve_metric(facility, metric)["trend"]
        if not trend:
            continue
        improvement = trend["delta"] if metric.higher_is_better else -trend["delta"]
        ranked.append((improvement, facility, trend))
    if not ranked:
        return None

    ranked.sort(key=lambda item: (-item[0], item[1].get("distance") or 0))
    lines = []
    for idx, (_, facility, trend) in enumerate(ranked[:3], start=1):
        sign = "+" if trend["delta"] > 0 else ""
        lines.append(
            f"{idx}. {facility.get('facility_name')} – {sign}{trend['delta']:.1f}{metric.unit} "
            f"{trend['year_span']}, {format_distance(facility.get('distance'))}"
        )
    return f"Biggest improvement in {metric.label} near {hospital_name}:\n" + "\n".join(lines)


def format_sorted_facilities(facilities: Sequence[Mapping[str, Any]], sort_by: Optional[str],
                             order: Optional[str], hospital_name: Optional[str]) -> str:
    if not facilities:
        return f"I couldn't find any skilled nursing facilities for {hospital_name or 'that hospital'}."

    label = SORT_LABELS.get(sort_by or "", "composite score")
    direction = "lowest to highest" if order == "asc" else "highest to lowest"
    lines = []
    for idx, facility in enumerate(facilities[:5], start=1):
        stars = facility.get("overall_rating")
        if stars is None:
            stars = facility.get("Overall Rating")
        lines.append(
            f"{idx}. {facility.get('facility_name')} – Composite {_format_number(facility.get('Composite_Score'))}, "
            f"Stars {_format_number(stars)}, {format_distance(facility.get('distance'))}"
        )
    return f"Here are the SNFs ordered by {label} ({direction}):\n" + "\n".join(lines)


def fallback_answer(hospital: Mapping[str, Any], facilities: Sequence[Mapping[str, Any]]) -> str:
    if not facilities:
        return "I couldn't find any skilled nursing facilities within range of that hospital."
    top = facilities[0]
    distance = top.get("distance")
    miles = f"{distance:.1f}" if isinstance(distance, (int, float)) else "?"
    return (
        f"{top.get('facility_name')} (Composite {_format_number(top.get('Composite_Score'))}, "
        f"{miles} miles away) appears to be one of the stronger options near {hospital.get('name')}."
    )


def compose_reply(question: str, analysis: Mapping[str, Any], hospital_name: str,
                  sort_by: Optional[str], order: Optional[str]) -> Dict[str, Any]:
    """
    Deterministic chat reply: sorted listing, then trend ranking, then fallback.

    Returns:
        {reply, kind} where kind is "sorted", "trend" or "fallback"
    """
    facilities: List[Mapping[str, Any]] = analysis.get("facilities") or []
    if sort_by:
        return {
            "reply": format_sorted_facilities(facilities, sort_by, order, hospital_name),
            "kind": "sorted",
        }

    focus = detect_trend_focus(question)
    if focus:
        answer = build_trend_answer(facilities, focus, hospital_name)
        if answer:
            return {"reply": answer, "kind": "trend"}

    return {"reply": fallback_answer(analysis.get("hospital") or {}, facilities), "kind": "fallback"}
