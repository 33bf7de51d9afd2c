from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import pandas as pd

from ivv_core.data import round_half_up
from ivv_core.filters import ALL, DashboardFilters
from ivv_core.metrics_category import category_ranking
from ivv_core.metrics_trend import monthly_totals, period_comparison


def _scope_label(filters: DashboardFilters) -> str:
    if filters.month != ALL:
        return filters.month
    if filters.year != ALL:
        return f"{filters.year} 年"
    return "全部期間"


def _first_extreme(trend: pd.DataFrame, *, highest: bool) -> Optional[Dict[str, Any]]:
    if trend is None or trend.empty:
        return None
    ordered = trend.sort_values("date", kind="stable")
    counts = ordered["count"].astype(int)
    row = ordered.loc[counts.idxmax() if highest else counts.idxmin()]
    return {"date": str(row["date"]), "count": int(row["count"])}


def period_kpis(trend: pd.DataFrame) -> Dict[str, Any]:
    if trend is None or trend.empty:
        return {"total": 0, "days": 0, "daily_avg": None, "peak": None, "low": None}
    total = int(trend["count"].sum())
    days = int(trend["date"].nunique())
    return {
        "total": total,
        "days": days,
        "daily_avg": round_half_up(total / days, 1) if days else None,
        "peak": _first_extreme(trend, highest=True),
        "low": _first_extreme(trend, highest=False),
    }


def build_insights(
    filters: DashboardFilters,
    kpis: Dict[str, Any],
    comparison: Dict[str, Any],
    top_category: Optional[Dict[str, Any]],
) -> List[str]:
    """Summary lines in a fixed order; a line whose inputs are missing is skipped."""
    lines: List[str] = []
    if kpis.get("days"):
        lines.append(f"{_scope_label(filters)}共 {kpis['total']:,} 件，日均 {kpis['daily_avg']:.1f} 件。")
    if comparison.get("previous_month") and comparison.get("mom_pct") is not None:
        lines.append(
            f"{comparison['current_month']} 較上月（{comparison['previous_month']}）{comparison['mom_pct']:+.1f}%。"
        )
    if comparison.get("year_ago_month") and comparison.get("yoy_pct") is not None:
        lines.append(
            f"{comparison['current_month']} 較去年同期（{comparison['year_ago_month']}）{comparison['yoy_pct']:+.1f}%。"
        )
    peak, low = kpis.get("peak"), kpis.get("low")
    if peak:
        lines.append(f"單日最高為 {peak['date']}，共 {peak['count']:,} 件。")
    if low and (not peak or low["date"] != peak["date"]):
        lines.append(f"單日最低為 {low['date']}，共 {low['count']:,} 件。")
    if top_category:
        lines.append(f"件數最多的類別為「{top_category['name']}」，共 {top_category['value']:,} 件。")
    return lines


def compute_overview(filters: DashboardFilters, ctx: Dict[str, Any]) -> Dict[str, Any]:
    trend_filtered: pd.DataFrame = ctx.get("trend_filtered", pd.DataFrame())
    comparison = period_comparison(monthly_totals(ctx.get("trend", pd.DataFrame())), filters)
    kpis = period_kpis(trend_filtered)
    kpis["mom_pct"] = comparison["mom_pct"]
    kpis["yoy_pct"] = comparison["yoy_pct"]

    top_categories = category_ranking(ctx, 1)
    top_category = top_categories[0] if top_categories else None

    return {
        "filters": asdict(filters),
        "kpis": kpis,
        "sheet_kpis": dict(ctx.get("kpi", {}) or {}),
        "comparison": comparison,
        "top_category": top_category,
        "insights": build_insights(filters, kpis, comparison, top_category),
        "status": ctx.get("status", {}),
    }
