from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from carbon_core.aggregator import AggregationOutcome, GroupKey, aggregate
from carbon_core.data import ROUND_DIGITS, RecordSource, round_half_up
from carbon_core.filters import DimensionFilter, is_unconstrained

MONTH_LABELS = {1: "Jan", 2: "Feb", 3: "Mar", 4: "Apr", 5: "May", 6: "Jun",
                7: "Jul", 8: "Aug", 9: "Sep", 10: "Oct", 11: "Nov", 12: "Dec"}
TOP_DEVICES = 6
OTHERS_LABEL = "Others"


def _ranked(values: Mapping[GroupKey, float]) -> pd.DataFrame:
    if not values:
        return pd.DataFrame(columns=["name", "value"])
    df = pd.DataFrame({"name": [str(k) for k in values.keys()], "value": list(values.values())})
    return df.sort_values(["value", "name"], ascending=[False, True]).reset_index(drop=True)


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return [{"name": str(r["name"]), "value": float(r["value"])} for r in df.to_dict(orient="records")]


def _round(value: Optional[float]) -> Optional[float]:
    return round_half_up(value, ROUND_DIGITS) if value is not None else None


def device_breakdown(device_totals: Mapping[GroupKey, float], *, top_n: int = TOP_DEVICES) -> List[Dict[str, Any]]:
    ranked = _ranked(device_totals)
    top = _records(ranked.head(top_n))
    other_value = float(ranked["value"].iloc[top_n:].sum()) if len(ranked) > top_n else 0.0
    if other_value > 0:
        top.append({"name": OTHERS_LABEL, "value": _round(other_value)})
    return top


def trend_points(trend: Mapping[GroupKey, float], *, monthly: bool) -> List[Dict[str, Any]]:
    points = []
    for key in sorted(trend.keys(), key=lambda k: int(k)):
        label = MONTH_LABELS.get(int(key), str(key)) if monthly else str(key)
        points.append({"period": int(key), "name": label, "total": float(trend[key])})
    return points


async def load_overview(source: RecordSource, filt: DimensionFilter) -> Dict[str, AggregationOutcome]:
    """Run every aggregation the overview needs against ``source``."""
    year = filt.year_value()
    monthly = year is not None
    campus = None if is_unconstrained(filt.campus) else filt.campus

    jobs = {
        "campuses": aggregate(source, DimensionFilter(year=year), ["campus"]),
        "devices": aggregate(source, DimensionFilter(campus=campus, year=year), ["device"]),
        "trend": aggregate(source, DimensionFilter(campus=campus, year=year), ["month" if monthly else "year"]),
    }
    if campus is not None:
        jobs["buildings"] = aggregate(source, DimensionFilter(campus=campus, year=year), ["building", "room"])
    if year is not None:
        jobs["previous_campuses"] = aggregate(source, DimensionFilter(year=year - 1), ["campus"])

    outcomes = await asyncio.gather(*jobs.values())
    return dict(zip(jobs.keys(), outcomes))


def compute_overview(filt: DimensionFilter, outcomes: Mapping[str, AggregationOutcome]) -> Dict[str, Any]:
    year = filt.year_value()
    campus = None if is_unconstrained(filt.campus) else filt.campus
    empty = AggregationOutcome()

    campus_totals = outcomes.get("campuses", empty).totals()
    campuses = _ranked(campus_totals)
    buildings = _ranked(outcomes.get("buildings", empty).totals())

    if campus is None:
        total = _round(float(campuses["value"].sum())) if not campuses.empty else 0.0
        top_emitter = str(campuses["name"].iloc[0]) if not campuses.empty else None
    else:
        total = float(campus_totals.get(campus, 0.0))
        top_emitter = str(buildings["name"].iloc[0]) if not buildings.empty else None

    previous_total = None
    percentage_change = None
    if year is not None:
        prev_totals = outcomes.get("previous_campuses", empty).totals()
        previous_total = float(prev_totals.get(campus, 0.0)) if campus is not None else _round(sum(prev_totals.values()))
        if total and previous_total:
            percentage_change = (total - previous_total) / previous_total * 100

    skipped = sum(outcome.skipped_count for outcome in outcomes.values())

    return {
        "filter": filt.as_query(),
        "kpis": {
            "total_emissions": total,
            "top_emitter": top_emitter,
            "average_monthly_emission": (total / 12) if year is not None and total else None,
            "previous_total": previous_total,
            "percentage_change": percentage_change,
        },
        "campuses": _records(campuses),
        "buildings": _records(buildings),
        "devices": device_breakdown(outcomes.get("devices", empty).totals()),
        "trend": trend_points(outcomes.get("trend", empty).totals(), monthly=year is not None),
        "skipped_count": skipped,
    }


async def available_filters(source: RecordSource) -> Dict[str, List[Any]]:
    outcome = await aggregate(source, DimensionFilter(), ["campus", "year"])
    campuses = sorted(str(k) for k in outcome.result.keys())
    years = set()
    for group in outcome.result.values():
        years.update(int(y) for y in (group.children or {}).keys())
    return {"campuses": campuses, "years": sorted(years, reverse=True)}
