from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

import altair as alt
import pandas as pd

from ivv_core.charts import CHART_HEIGHT, hover_selection, to_vega_spec
from ivv_core.data import round_half_up
from ivv_core.filters import ALL, DashboardFilters

MA_WINDOWS = (7, 30)
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
# Business rule: this weekday is always reported as zero, whatever the data says.
EXCLUDED_WEEKDAY = "Sat"


def moving_average(counts: Sequence[float], window: int) -> List[Optional[float]]:
    """Trailing simple moving average; ``None`` until ``window`` points are available."""
    if window < 1:
        raise ValueError("window must be >= 1")
    rolled = pd.Series(list(counts), dtype=float).rolling(window=window, min_periods=window).sum()
    return [None if pd.isna(total) else round_half_up(total / window, 2) for total in rolled]


def add_moving_averages(trend: pd.DataFrame, windows: Sequence[int] = MA_WINDOWS) -> pd.DataFrame:
    out = trend.sort_values("date", kind="stable").reset_index(drop=True)
    counts = out["count"].tolist() if "count" in out.columns else []
    for window in windows:
        out[f"ma{window}"] = pd.Series(moving_average(counts, window), index=out.index, dtype=object)
    return out


def _day(row: pd.Series) -> Dict[str, Any]:
    return {"date": str(row["date"]), "count": int(row["count"])}


def monthly_totals(trend: pd.DataFrame) -> List[Dict[str, Any]]:
    """Per month: summed count, observed days, and the first max/min day."""
    if trend is None or trend.empty:
        return []
    ordered = trend.dropna(subset=["month"]).sort_values("date", kind="stable")
    out: List[Dict[str, Any]] = []
    for month, grp in ordered.groupby("month", sort=True):
        counts = grp["count"].astype(int)
        out.append(
            {
                "month": str(month),
                "total": int(counts.sum()),
                "days": int(grp["date"].nunique()),
                "max": _day(grp.loc[counts.idxmax()]),
                "min": _day(grp.loc[counts.idxmin()]),
            }
        )
    return out


def shift_month_key(month: str, *, years: int = 0, months: int = 0) -> str:
    year, mon = int(month[:4]), int(month[5:7])
    index = year * 12 + (mon - 1) + years * 12 + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def pct_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous in (None, 0):
        return None
    return (current - previous) / previous * 100


def period_comparison(monthly_all: List[Dict[str, Any]], filters: DashboardFilters) -> Dict[str, Any]:
    """Month-over-month and year-over-year deltas for the active period.

    The current month is the selected month, else the latest month in scope.
    The previous month is the preceding entry of the active list (the global
    list when no year is selected, the within-year list otherwise). The
    year-ago month is looked up by key, independent of list position.
    """
    empty = {
        "current_month": None,
        "current_total": None,
        "previous_month": None,
        "previous_total": None,
        "mom_pct": None,
        "year_ago_month": None,
        "year_ago_total": None,
        "yoy_pct": None,
    }
    if filters.year == ALL:
        active = list(monthly_all)
    else:
        active = [m for m in monthly_all if m["month"].startswith(filters.year)]
    if not active:
        return empty

    if filters.month != ALL:
        positions = [i for i, m in enumerate(active) if m["month"] == filters.month]
        if not positions:
            return empty
        pos = positions[0]
    else:
        pos = len(active) - 1

    current = active[pos]
    previous = active[pos - 1] if pos > 0 else None
    year_ago_key = shift_month_key(current["month"], years=-1)
    year_ago = next((m for m in monthly_all if m["month"] == year_ago_key), None)

    return {
        "current_month": current["month"],
        "current_total": current["total"],
        "previous_month": previous["month"] if previous else None,
        "previous_total": previous["total"] if previous else None,
        "mom_pct": pct_change(current["total"], previous["total"] if previous else None),
        "year_ago_month": year_ago["month"] if year_ago else None,
        "year_ago_total": year_ago["total"] if year_ago else None,
        "yoy_pct": pct_change(current["total"], year_ago["total"] if year_ago else None),
    }


def weekday_seasonality(trend: pd.DataFrame) -> List[Dict[str, Any]]:
    """Average daily count per weekday, Mon..Sun. ``EXCLUDED_WEEKDAY`` is zeroed by policy."""
    totals = {d: 0 for d in WEEKDAYS}
    days = {d: 0 for d in WEEKDAYS}
    if trend is not None and not trend.empty:
        weekday = pd.to_datetime(trend["date"], errors="coerce").dt.dayofweek
        valid = weekday.notna()
        names = weekday[valid].astype(int).map(lambda i: WEEKDAYS[i])
        grouped = trend.loc[valid, "count"].groupby(names.values)
        for name, total in grouped.sum().items():
            totals[name] = int(total)
        for name, n in grouped.size().items():
            days[name] = int(n)

    out: List[Dict[str, Any]] = []
    for name in WEEKDAYS:
        if name == EXCLUDED_WEEKDAY:
            out.append({"weekday": name, "total": 0, "days": 0, "avg": 0.0, "excluded": True})
            continue
        avg = round_half_up(totals[name] / days[name], 1) if days[name] else 0.0
        out.append({"weekday": name, "total": totals[name], "days": days[name], "avg": avg, "excluded": False})
    return out


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    rows = []
    for rec in df.to_dict(orient="records"):
        rows.append({k: (None if v is None or (not isinstance(v, str) and pd.isna(v)) else v) for k, v in rec.items()})
    return rows


def compute_trend(filters: DashboardFilters, ctx: Dict[str, Any]) -> Dict[str, Any]:
    trend_all: pd.DataFrame = ctx.get("trend", pd.DataFrame())
    trend_year: pd.DataFrame = ctx.get("trend_year", pd.DataFrame())
    trend_filtered: pd.DataFrame = ctx.get("trend_filtered", pd.DataFrame())

    monthly_all = monthly_totals(trend_all)
    monthly_active = monthly_all if filters.year == ALL else monthly_totals(trend_year)
    comparison = period_comparison(monthly_all, filters)
    weekday = weekday_seasonality(trend_filtered)

    if trend_filtered is None or trend_filtered.empty:
        return {
            "filters": asdict(filters),
            "rows": [],
            "monthly": monthly_active,
            "weekday": weekday,
            "comparison": comparison,
            "charts": {},
        }

    with_ma = add_moving_averages(trend_filtered[["date", "month", "count"]])
    rows = _records(with_ma[["date", "count"] + [f"ma{w}" for w in MA_WINDOWS]])

    long_df = with_ma.melt(
        id_vars=["date"],
        value_vars=["count"] + [f"ma{w}" for w in MA_WINDOWS],
        var_name="series",
        value_name="value",
    ).dropna(subset=["value"])
    long_df["value"] = long_df["value"].astype(float)
    series_hover = hover_selection("series")
    daily = (
        alt.Chart(long_df)
        .mark_line(point={"filled": True, "size": 30})
        .encode(
            x=alt.X("date:T", title="日期", axis=alt.Axis(format="%m/%d", grid=False)),
            y=alt.Y("value:Q", title="件數", axis=alt.Axis(gridDash=[4, 4], domain=False, ticks=False)),
            color=alt.Color("series:N", title="Series", sort=["count"] + [f"ma{w}" for w in MA_WINDOWS]),
            opacity=alt.condition(series_hover, alt.value(1), alt.value(0.2)),
            tooltip=[
                alt.Tooltip("date:T", title="日期"),
                alt.Tooltip("series:N", title="Series"),
                alt.Tooltip("value:Q", title="值", format=",.2f"),
            ],
        )
        .add_params(series_hover)
        .properties(height=CHART_HEIGHT)
    )

    charts: Dict[str, Any] = {"daily_trend": to_vega_spec(daily)}

    if monthly_active:
        monthly_df = pd.DataFrame(
            [{"month": m["month"], "total": m["total"], "days": m["days"]} for m in monthly_active]
        )
        monthly_bar = (
            alt.Chart(monthly_df)
            .mark_bar()
            .encode(
                x=alt.X("month:O", title="月份"),
                y=alt.Y("total:Q", title="件數", axis=alt.Axis(format="~s")),
                tooltip=["month", alt.Tooltip("total:Q", format=","), "days"],
            )
            .properties(height=CHART_HEIGHT)
        )
        charts["monthly_totals"] = to_vega_spec(monthly_bar)

    weekday_bar = (
        alt.Chart(pd.DataFrame(weekday))
        .mark_bar()
        .encode(
            x=alt.X("weekday:N", title="星期", sort=list(WEEKDAYS)),
            y=alt.Y("avg:Q", title="日均件數"),
            tooltip=["weekday", alt.Tooltip("avg:Q", format=".1f"), "days"],
        )
        .properties(height=CHART_HEIGHT)
    )
    charts["weekday"] = to_vega_spec(weekday_bar)

    return {
        "filters": asdict(filters),
        "rows": rows,
        "monthly": monthly_active,
        "weekday": weekday,
        "comparison": comparison,
        "charts": charts,
    }
