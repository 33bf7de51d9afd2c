from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import altair as alt
import pandas as pd

from ivv_core.charts import CHART_HEIGHT, to_vega_spec
from ivv_core.data import round_half_up
from ivv_core.filters import DashboardFilters, DurationOptions, GroupConfig, facet_allowed
from ivv_core.metrics_category import top_n_ranking

FIXED_DURATION_EDGES = (0, 3, 5, 10, 15, 20, 30, 45, 60, 90, 120, 180)
FOCUS_LIMIT_MINUTES = 30
AUTO_MIN_BINS = 4
AUTO_MAX_BINS = 12
FACET_TOP_GROUPS = 5

MINUTE_UNIT = "分"
ALL_SERIES = "全部"
OTHERS_SERIES = "其他"


@dataclass(frozen=True)
class DurationBin:
    min: float
    max: Optional[float]
    label: str

    def contains(self, value: float) -> bool:
        # both ends inclusive; callers take the first matching bin
        return value >= self.min and (self.max is None or value <= self.max)


def _fmt(value: float) -> str:
    rounded = round_half_up(value, 1)
    return f"{int(rounded)}" if float(rounded).is_integer() else f"{rounded:.1f}"


def range_label(lo: float, hi: float) -> str:
    return f"{_fmt(lo)}-{_fmt(hi)} {MINUTE_UNIT}"


def overflow_label(lo: float) -> str:
    return f"{_fmt(lo)}+ {MINUTE_UNIT}"


def _overflow_bin(limit: float) -> DurationBin:
    return DurationBin(float(limit), None, overflow_label(limit))


def fixed_bins(*, focus: bool = False, limit: float = FOCUS_LIMIT_MINUTES) -> List[DurationBin]:
    edges = FIXED_DURATION_EDGES
    bins = [DurationBin(float(lo), float(hi), range_label(lo, hi)) for lo, hi in zip(edges, edges[1:])]
    bins.append(_overflow_bin(edges[-1]))
    if focus:
        bins = [b for b in bins if b.max is not None and b.max <= limit]
        bins.append(_overflow_bin(limit))
    return bins


def auto_bins(values: Sequence[float], *, focus: bool = False, limit: float = FOCUS_LIMIT_MINUTES) -> List[DurationBin]:
    """Equal-width bins over the observed range, ``clamp(ceil(sqrt(n)), 4, 12)`` of them.

    A single distinct value gets one bin of width ``max(1, value)`` centred on it.
    With ``focus`` only values up to ``limit`` are binned; the rest land in a
    final overflow bin.
    """
    head = [float(v) for v in values if not focus or v <= limit]
    bins: List[DurationBin] = []
    if head:
        lo, hi = min(head), max(head)
        if lo == hi:
            width = max(1.0, lo)
            start = max(0.0, lo - width / 2)
            end = start + width
            if focus:
                end = min(end, float(limit))
            bins.append(DurationBin(start, end, range_label(start, end)))
        else:
            count = min(AUTO_MAX_BINS, max(AUTO_MIN_BINS, math.ceil(math.sqrt(len(head)))))
            width = (hi - lo) / count
            for i in range(count):
                start = lo + i * width
                end = hi if i == count - 1 else lo + (i + 1) * width
                bins.append(DurationBin(start, end, range_label(start, end)))
    if focus:
        bins.append(_overflow_bin(limit))
    return bins


def build_bins(values: Sequence[float], options: DurationOptions) -> List[DurationBin]:
    if not len(values):
        return []
    if options.bin_mode == "fixed":
        return fixed_bins(focus=options.focus)
    return auto_bins(values, focus=options.focus)


def assign_bin(bins: Sequence[DurationBin], value: float) -> Optional[int]:
    for i, b in enumerate(bins):
        if b.contains(value):
            return i
    return None


def _bin_label(bins: Sequence[DurationBin], value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    idx = assign_bin(bins, value)
    return bins[idx].label if idx is not None else None


def facet_series(calls: pd.DataFrame, group: GroupConfig) -> Tuple[pd.Series, List[str]]:
    """Series label per in-scope call: the top groups by volume, the rest folded into ``OTHERS_SERIES``.

    Volume counts every in-scope call, with or without a duration.
    """
    top = [r["name"] for r in top_n_ranking(calls, group.group_by, n=FACET_TOP_GROUPS)]
    labels = calls[group.group_by].astype(str)
    labels = labels.where(labels.isin(top), OTHERS_SERIES)
    order = list(top)
    if (labels == OTHERS_SERIES).any() and OTHERS_SERIES not in order:
        order.append(OTHERS_SERIES)
    return labels, order


def duration_distribution(calls: pd.DataFrame, filters: DashboardFilters) -> Dict[str, Any]:
    """Histogram of in-scope call durations.

    ``calls`` must already be narrowed to the period and group selection.
    Rows without a finite duration are counted in ``missing_count`` only.
    Every (bin, series) cell keeps the ``row_id`` of its calls for drill-down.
    """
    options = filters.duration
    facet = facet_allowed(filters.group) and filters.group.facet
    result: Dict[str, Any] = {
        "bins": [],
        "edges": [],
        "groups": [],
        "facet": facet,
        "metric": options.metric,
        "bin_mode": options.bin_mode,
        "focus": options.focus,
        "missing_count": 0,
        "total_count": 0,
        "binned_count": 0,
        "stats": {"mean": None, "median": None, "mean_bin": None, "median_bin": None},
    }
    if calls is None or calls.empty:
        return result

    valid = calls[calls["minutes"].notna()]
    result["total_count"] = int(len(calls))
    result["missing_count"] = int(len(calls) - len(valid))
    result["binned_count"] = int(len(valid))
    if valid.empty:
        return result

    values = valid["minutes"].astype(float).tolist()
    bins = build_bins(values, options)

    if facet and filters.group.group_by in valid.columns:
        labels, order = facet_series(calls, filters.group)
        series = labels.loc[valid.index]
    else:
        facet = False
        series = pd.Series(ALL_SERIES, index=valid.index)
        order = [ALL_SERIES]

    cells: Dict[Tuple[int, str], List[int]] = {}
    for row_id, minutes, label in zip(valid["row_id"].tolist(), values, series.tolist()):
        idx = assign_bin(bins, minutes)
        if idx is None:
            continue
        cells.setdefault((idx, label), []).append(int(row_id))

    series_totals = series.value_counts().to_dict()
    rows: List[Dict[str, Any]] = []
    for idx, b in enumerate(bins):
        for label in order:
            ids = cells.get((idx, label), [])
            count = len(ids)
            if options.metric == "percent":
                denom = series_totals.get(label, 0) if facet else len(valid)
                value = round_half_up(count / denom * 100, 2) if denom else 0.0
            else:
                value = count
            rows.append(
                {
                    "bin": idx,
                    "label": b.label,
                    "min": b.min,
                    "max": b.max,
                    "group": label,
                    "count": count,
                    "value": value,
                    "row_ids": ids,
                }
            )

    mean = float(pd.Series(values).mean())
    median = float(pd.Series(values).median())
    result.update(
        {
            "bins": rows,
            "edges": [asdict(b) for b in bins],
            "groups": order,
            "facet": facet,
            "stats": {
                "mean": round_half_up(mean, 1),
                "median": round_half_up(median, 1),
                "mean_bin": _bin_label(bins, mean),
                "median_bin": _bin_label(bins, median),
            },
        }
    )
    return result


def drilldown_rows(ctx: Dict[str, Any], distribution: Dict[str, Any], label: str, group: Optional[str] = None) -> List[Dict[str, Any]]:
    """Resolve the calls behind one bin (optionally one series) back to their raw rows."""
    ids: List[int] = []
    for cell in distribution.get("bins", []):
        if cell["label"] == label and (group is None or cell["group"] == group):
            ids.extend(cell["row_ids"])
    if not ids:
        return []
    raw: pd.DataFrame = ctx.get("calls_raw", pd.DataFrame())
    if raw is None or raw.empty:
        raw = ctx.get("calls", pd.DataFrame()).set_index("row_id", drop=False)
    present = [i for i in ids if i in raw.index]
    return raw.loc[present].to_dict(orient="records")


def monthly_average_duration(ctx: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], str]:
    """Average handling minutes per month: the published sheet, else computed from raw calls."""
    avg: pd.DataFrame = ctx.get("avg_duration_year", pd.DataFrame())
    if avg is not None and not avg.empty:
        rows = avg.dropna(subset=["minutes"]).groupby("month", sort=True)["minutes"].mean()
        source = "avg_duration"
    else:
        calls: pd.DataFrame = ctx.get("calls_year", pd.DataFrame())
        if calls is None or calls.empty:
            return [], "none"
        rows = calls.dropna(subset=["minutes"]).groupby("month", sort=True)["minutes"].mean()
        source = "calls"
    return [{"month": str(m), "minutes": round_half_up(v, 1)} for m, v in rows.items()], source


def _histogram_chart(dist: Dict[str, Any]) -> alt.LayerChart:
    df = pd.DataFrame([{k: v for k, v in r.items() if k != "row_ids"} for r in dist["bins"]])
    order = [e["label"] for e in dist["edges"]]
    percent = dist["metric"] == "percent"
    y_title = "比例 (%)" if percent else "件數"
    encoding: Dict[str, Any] = {
        "x": alt.X("label:N", title="處理時長", sort=order),
        "y": alt.Y("value:Q", title=y_title),
        "tooltip": [
            alt.Tooltip("label:N", title="區間"),
            alt.Tooltip("group:N", title="群組"),
            alt.Tooltip("count:Q", title="件數", format=","),
            alt.Tooltip("value:Q", title=y_title, format=",.2f" if percent else ","),
        ],
    }
    if dist["facet"]:
        encoding["color"] = alt.Color("group:N", title="群組", sort=dist["groups"])
        encoding["xOffset"] = alt.XOffset("group:N", sort=dist["groups"])
    bars = alt.Chart(df).mark_bar().encode(**encoding).properties(height=CHART_HEIGHT)

    refs = [
        {"stat": name, "label": dist["stats"][f"{name}_bin"], "minutes": dist["stats"][name]}
        for name in ("mean", "median")
        if dist["stats"][f"{name}_bin"] is not None
    ]
    if not refs:
        return alt.layer(bars)
    rules = (
        alt.Chart(pd.DataFrame(refs))
        .mark_rule(strokeDash=[4, 4])
        .encode(
            x=alt.X("label:N", sort=order),
            color=alt.value("#6b7280"),
            tooltip=["stat", alt.Tooltip("minutes:Q", format=".1f")],
        )
    )
    return alt.layer(bars, rules)


def compute_duration(filters: DashboardFilters, ctx: Dict[str, Any]) -> Dict[str, Any]:
    dist = duration_distribution(ctx.get("calls_in_scope", pd.DataFrame()), filters)
    monthly_avg, avg_source = monthly_average_duration(ctx)

    charts: Dict[str, Any] = {}
    if dist["bins"]:
        charts["histogram"] = to_vega_spec(_histogram_chart(dist))
    if monthly_avg:
        line = (
            alt.Chart(pd.DataFrame(monthly_avg))
            .mark_line(point=True)
            .encode(
                x=alt.X("month:O", title="月份"),
                y=alt.Y("minutes:Q", title="平均處理時長 (分)"),
                tooltip=["month", alt.Tooltip("minutes:Q", format=".1f")],
            )
            .properties(height=CHART_HEIGHT)
        )
        charts["monthly_average"] = to_vega_spec(line)

    return {
        "filters": asdict(filters),
        **dist,
        "monthly_average": monthly_avg,
        "monthly_average_source": avg_source,
        "charts": charts,
    }
