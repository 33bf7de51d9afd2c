from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Literal, Optional

import numpy as np
import pandas as pd
from fastapi import FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from ivv_api.schemas import DashboardFiltersModel, MetaListResponse, MetaStatusResponse
from ivv_core.data import group_values, load_dashboard_data, prepare_context, refresh_dashboard_data
from ivv_core.export import EXPORT_VIEWS, export_chart, export_filename, export_rows, to_csv, to_image
from ivv_core.filters import DashboardFilters, normalize_filters
from ivv_core.metrics_category import compute_categories
from ivv_core.metrics_duration import compute_duration, drilldown_rows
from ivv_core.metrics_overview import compute_overview
from ivv_core.metrics_trend import compute_trend


app = FastAPI(title="IVV Dashboard API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5175", "http://127.0.0.1:5175"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

COMPUTE: Dict[str, Callable[[DashboardFilters, Dict[str, Any]], Dict[str, Any]]] = {
    "overview": compute_overview,
    "trend": compute_trend,
    "duration": compute_duration,
    "categories": compute_categories,
}


def _context(model: DashboardFiltersModel) -> tuple[DashboardFilters, Dict[str, Any]]:
    data_ctx = load_dashboard_data()
    filters = normalize_filters(model.model_dump(), time_index=data_ctx.get("time_index"))
    return filters, prepare_context(filters, data_ctx)


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
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        )
    )


def _error(exc: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc), "type": type(exc).__name__})


@app.get("/meta/years", response_model=MetaListResponse)
def meta_years():
    try:
        data_ctx = load_dashboard_data()
        return _json({"values": list(data_ctx.get("years", []) or [])})
    except Exception as exc:
        logger.exception("meta_years failed")
        return _error(exc)


@app.get("/meta/months", response_model=MetaListResponse)
def meta_months(year: str = Query(default="ALL")):
    try:
        data_ctx = load_dashboard_data()
        time_index = data_ctx.get("time_index")
        months = time_index.months_for(year) if time_index is not None else []
        return _json({"values": months})
    except Exception as exc:
        logger.exception("meta_months failed")
        return _error(exc)


@app.get("/meta/groups", response_model=MetaListResponse)
def meta_groups(group_by: Literal["none", "category", "module"] = Query(default="none")):
    try:
        return _json({"values": group_values(load_dashboard_data(), group_by)})
    except Exception as exc:
        logger.exception("meta_groups failed")
        return _error(exc)


@app.get("/meta/status", response_model=MetaStatusResponse)
def meta_status():
    try:
        return _json({"datasets": load_dashboard_data().get("status", {})})
    except Exception as exc:
        logger.exception("meta_status failed")
        return _error(exc)


@app.post("/refresh")
def refresh():
    refresh_dashboard_data()
    return _json({"refreshed": True})


@app.post("/overview")
def overview(filters: DashboardFiltersModel):
    try:
        f, ctx = _context(filters)
        return _json(compute_overview(f, ctx))
    except Exception as exc:
        logger.exception("overview failed")
        return _error(exc)


@app.post("/trend")
def trend(filters: DashboardFiltersModel):
    try:
        f, ctx = _context(filters)
        return _json(compute_trend(f, ctx))
    except Exception as exc:
        logger.exception("trend failed")
        return _error(exc)


@app.post("/duration")
def duration(filters: DashboardFiltersModel):
    try:
        f, ctx = _context(filters)
        return _json(compute_duration(f, ctx))
    except Exception as exc:
        logger.exception("duration failed")
        return _error(exc)


@app.post("/duration/drilldown")
def duration_drilldown(
    filters: DashboardFiltersModel,
    label: str = Query(...),
    group: Optional[str] = Query(default=None),
):
    try:
        f, ctx = _context(filters)
        payload = compute_duration(f, ctx)
        return _json({"label": label, "group": group, "rows": drilldown_rows(ctx, payload, label, group or None)})
    except Exception as exc:
        logger.exception("duration_drilldown failed")
        return _error(exc)


@app.post("/categories")
def categories(filters: DashboardFiltersModel):
    try:
        f, ctx = _context(filters)
        return _json(compute_categories(f, ctx))
    except Exception as exc:
        logger.exception("categories failed")
        return _error(exc)


@app.post("/export/{view}")
def export_view(view: str, filters: DashboardFiltersModel, fmt: Literal["csv", "png"] = Query(default="csv")):
    if view not in EXPORT_VIEWS:
        return _error(KeyError(f"unknown view: {view}"), status_code=404)
    try:
        f, ctx = _context(filters)
        family, _, _ = EXPORT_VIEWS[view]
        payload = COMPUTE[family](f, ctx)
        filename = export_filename(view, f, fmt)
        if fmt == "png":
            spec = export_chart(view, payload)
            if spec is None:
                return _error(LookupError(f"no chart for view {view} in this scope"), status_code=404)
            content = to_image(spec)
            media_type = "image/png"
        else:
            content = to_csv(export_rows(view, payload)).encode("utf-8")
            media_type = "text/csv"
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )
    except Exception as exc:
        logger.exception("export %s failed", view)
        return _error(exc)
