from __future__ import annotations

import logging
import math
from typing import Any, Dict, Literal

import numpy as np
import pandas as pd
from fastapi import FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carbon_api.schemas import DimensionFilterModel
from carbon_core.aggregator import AggregationOutcome, aggregate
from carbon_core.data import FrameRecordSource, RecordSource, SourceUnavailable, load_emissions_data
from carbon_core.filters import DimensionFilter, normalize_filter
from carbon_core.metrics_debug import compute_debug
from carbon_core.metrics_overview import available_filters, compute_overview, load_overview


app = FastAPI(title="Campus Carbon Emissions API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_record_source() -> RecordSource:
    return FrameRecordSource(load_emissions_data().get("records", pd.DataFrame()))


def _filter_from_model(model: DimensionFilterModel) -> DimensionFilter:
    return normalize_filter(model.model_dump())


def _json(data: object) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
            },
        )
    )


def _unavailable(name: str, exc: SourceUnavailable) -> JSONResponse:
    logger.warning("%s: record source unavailable: %s", name, exc)
    return JSONResponse(
        status_code=503,
        content={"error": str(exc), "type": type(exc).__name__, "retryable": True},
    )


def _failed(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed", name)
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


def _aggregation_payload(filt: DimensionFilter, outcome: AggregationOutcome) -> Dict[str, Any]:
    return {
        "filter": filt.as_query(),
        "result": outcome.to_dict(),
        "skipped_count": outcome.skipped_count,
        "total_sum": outcome.total_sum,
    }


@app.get("/meta/filters")
async def meta_filters():
    try:
        return _json(await available_filters(get_record_source()))
    except SourceUnavailable as exc:
        return _unavailable("meta_filters", exc)
    except Exception as exc:
        return _failed("meta_filters", exc)


@app.post("/emissions/campus")
async def campus_emissions(
    filters: DimensionFilterModel,
    aggregate_by: Literal["total", "yearly_total", "monthly_total"] = Query(default="total", alias="aggregate"),
):
    try:
        f = _filter_from_model(filters)
        if aggregate_by == "total":
            dims = ["campus"]
        else:
            dims = ["campus", "month" if f.year_value() is not None else "year"]
        outcome = await aggregate(get_record_source(), f, dims)
        return _json(_aggregation_payload(f, outcome))
    except SourceUnavailable as exc:
        return _unavailable("campus_emissions", exc)
    except Exception as exc:
        return _failed("campus_emissions", exc)


@app.post("/emissions/building")
async def building_emissions(filters: DimensionFilterModel):
    try:
        f = _filter_from_model(filters)
        outcome = await aggregate(get_record_source(), f, ["building", "room"])
        return _json(_aggregation_payload(f, outcome))
    except SourceUnavailable as exc:
        return _unavailable("building_emissions", exc)
    except Exception as exc:
        return _failed("building_emissions", exc)


@app.post("/emissions/device")
async def device_emissions(filters: DimensionFilterModel):
    try:
        f = _filter_from_model(filters)
        outcome = await aggregate(get_record_source(), f, ["device"])
        return _json(_aggregation_payload(f, outcome))
    except SourceUnavailable as exc:
        return _unavailable("device_emissions", exc)
    except Exception as exc:
        return _failed("device_emissions", exc)


@app.post("/overview")
async def overview(filters: DimensionFilterModel):
    try:
        f = _filter_from_model(filters)
        outcomes = await load_overview(get_record_source(), f)
        return _json(compute_overview(f, outcomes))
    except SourceUnavailable as exc:
        return _unavailable("overview", exc)
    except Exception as exc:
        return _failed("overview", exc)


@app.get("/debug")
def debug():
    try:
        return _json(compute_debug(load_emissions_data()))
    except Exception as exc:
        return _failed("debug", exc)
