from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

import altair as alt
import pandas as pd

from ivv_core.charts import CHART_HEIGHT, hover_selection, to_vega_spec
from ivv_core.filters import ALL, TOP_N_DEFAULT, DashboardFilters

STACK_TOP_CATEGORIES = 5


def top_n_ranking(
    df: pd.DataFrame, key: str, *, value: Optional[str] = None, n: int = TOP_N_DEFAULT
) -> List[Dict[str, Any]]:
    """Sum ``value`` (or count rows) per ``key``; descending, ties keep first-seen order."""
    if df is None or df.empty or key not in df.columns:
        return []
    if value is not None and value in df.columns:
        weights = pd.to_numeric(df[value], errors="coerce").fillna(0)
    else:
        weights = pd.Series(1, index=df.index)
    sums = weights.groupby(df[key].astype(str).values, sort=False).sum()
    ranked = sums.sort_values(ascending=False, kind="stable").head(max(0, int(n)))
    return [
        {"rank": i + 1, "name": str(name), "value": int(total) if float(total).is_integer() else float(total)}
        for i, (name, total) in enumerate(ranked.items())
    ]


def module_ranking(ctx: Dict[str, Any], n: int) -> Tuple[List[Dict[str, Any]], str]:
    """Module top-N from the first source that has rows: monthly module counts, raw calls, ranked sheet."""
    module_filtered: pd.DataFrame = ctx.get("module_filtered", pd.DataFrame())
    if module_filtered is not None and not module_filtered.empty:
        return top_n_ranking(module_filtered, "module", value="count", n=n), "module_by_month"
    calls: pd.DataFrame = ctx.get("calls_filtered", pd.DataFrame())
    if calls is not None and not calls.empty:
        return top_n_ranking(calls, "module", n=n), "calls"
    sheet: pd.DataFrame = ctx.get("module_top5", pd.DataFrame())
    if sheet is not None and not sheet.empty:
        return top_n_ranking(sheet, "name", value="value", n=n), "module_top5"
    return [], "none"


def category_source(ctx: Dict[str, Any]) -> Tuple[pd.DataFrame, str]:
    """Dated category counts: the category trend sheet, else raw calls weighted one per row."""
    category_filtered: pd.DataFrame = ctx.get("category_filtered", pd.DataFrame())
    if category_filtered is not None and not category_filtered.empty:
        return category_filtered, "category_trend"
    calls: pd.DataFrame = ctx.get("calls_filtered", pd.DataFrame())
    if calls is not None and not calls.empty:
        return calls.assign(count=1)[["date", "month", "category", "count"]], "calls"
    return pd.DataFrame(columns=["date", "month", "category", "count"]), "none"


def category_ranking(ctx: Dict[str, Any], n: int) -> List[Dict[str, Any]]:
    df, _ = category_source(ctx)
    return top_n_ranking(df, "category", value="count", n=n)


def category_stack(df: pd.DataFrame, filters: DashboardFilters) -> Tuple[List[Dict[str, Any]], str]:
    """Counts per (bucket, category) for the overall top categories only.

    Buckets are days when a month is selected, months otherwise. Rows of
    categories outside the top are dropped, not merged into an "other" series.
    """
    granularity = "day" if filters.month != ALL else "month"
    bucket_col = "date" if granularity == "day" else "month"
    if df is None or df.empty or bucket_col not in df.columns:
        return [], granularity
    base = df.dropna(subset=[bucket_col])
    top = [r["name"] for r in top_n_ranking(base, "category", value="count", n=STACK_TOP_CATEGORIES)]
    if not top:
        return [], granularity
    kept = base[base["category"].astype(str).isin(top)]
    grouped = (
        kept.assign(category=kept["category"].astype(str))
        .groupby([bucket_col, "category"], sort=False)["count"]
        .sum()
        .reset_index()
    )
    order = {name: i for i, name in enumerate(top)}
    grouped["_rank"] = grouped["category"].map(order)
    grouped = grouped.sort_values([bucket_col, "_rank"], kind="stable")
    rows = [
        {"bucket": str(r[bucket_col]), "category": str(r["category"]), "count": int(r["count"])}
        for _, r in grouped.iterrows()
    ]
    return rows, granularity


def _ranking_bar(rows: List[Dict[str, Any]], title: str) -> alt.Chart:
    hover = hover_selection("name")
    return (
        alt.Chart(pd.DataFrame(rows))
        .mark_bar()
        .encode(
            x=alt.X("value:Q", title="件數", axis=alt.Axis(format="~s")),
            y=alt.Y("name:N", title=title, sort="-x"),
            opacity=alt.condition(hover, alt.value(1), alt.value(0.5)),
            tooltip=["rank", "name", alt.Tooltip("value:Q", format=",")],
        )
        .add_params(hover)
        .properties(height=CHART_HEIGHT)
    )


def compute_categories(filters: DashboardFilters, ctx: Dict[str, Any]) -> Dict[str, Any]:
    module_top, module_source = module_ranking(ctx, filters.top_n)
    cat_df, cat_source = category_source(ctx)
    category_top = top_n_ranking(cat_df, "category", value="count", n=filters.top_n)
    stacked, granularity = category_stack(cat_df, filters)

    charts: Dict[str, Any] = {}
    if module_top:
        charts["module_top"] = to_vega_spec(_ranking_bar(module_top, "模組"))
    if category_top:
        charts["category_top"] = to_vega_spec(_ranking_bar(category_top, "類別"))
    if stacked:
        x_type = "T" if granularity == "day" else "O"
        area = (
            alt.Chart(pd.DataFrame(stacked))
            .mark_area()
            .encode(
                x=alt.X(f"bucket:{x_type}", title="日期" if granularity == "day" else "月份"),
                y=alt.Y("count:Q", stack="zero", title="件數"),
                color=alt.Color("category:N", title="類別", sort=[r["name"] for r in category_top]),
                tooltip=["bucket", "category", alt.Tooltip("count:Q", format=",")],
            )
            .properties(height=CHART_HEIGHT)
        )
        charts["category_stack"] = to_vega_spec(area)

    return {
        "filters": asdict(filters),
        "module_top": module_top,
        "category_top": category_top,
        "stacked": stacked,
        "granularity": granularity,
        "sources": {"module": module_source, "category": cat_source},
        "charts": charts,
    }
