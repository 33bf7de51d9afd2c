from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from ivv_core.data import group_values, load_dashboard_data, prepare_context, refresh_dashboard_data
from ivv_core.export import chart_fingerprint, export_chart, export_filename, export_rows, to_csv, to_image
from ivv_core.filters import ALL, normalize_filters
from ivv_core.metrics_category import compute_categories
from ivv_core.metrics_duration import compute_duration, drilldown_rows
from ivv_core.metrics_overview import compute_overview
from ivv_core.metrics_trend import compute_trend


# ---------- UI / layout helpers ----------
def inject_base_styles():
    if st.session_state.get("_base_css_injected"):
        return
    st.markdown(
        """
        <style>
        .card {border: 1px solid #e5e7eb;border-radius: 12px;padding: 16px;background: #ffffff;
               box-shadow: 0 1px 2px rgba(0,0,0,0.04); margin-bottom: 12px;}
        .card-title {font-weight: 600;font-size: 1.0rem;color: #111827;margin-bottom: 8px;}
        .chip-row {display: flex;flex-wrap: wrap;gap: 6px;margin-top: 6px;}
        .chip {background: #f3f4f6;border: 1px solid #e5e7eb;border-radius: 14px;padding: 4px 10px;font-size: 0.85rem;color: #374151;}
        </style>
        """,
        unsafe_allow_html=True,
    )
    st.session_state["_base_css_injected"] = True


@contextmanager
def card(title: str):
    container = st.container()
    container.markdown(f"<div class='card'><div class='card-title'>{title}</div>", unsafe_allow_html=True)
    body = container.container()
    with body:
        yield body
    container.markdown("</div>", unsafe_allow_html=True)


@st.cache_data(show_spinner=False, max_entries=64)
def chart_png(fingerprint: str, _spec: Dict[str, Any]) -> bytes:
    """Rasterize once per distinct chart; reruns with unchanged data reuse the bytes."""
    return to_image(_spec)


def export_buttons(view: str, payload: Dict[str, Any], key: str):
    """CSV + PNG download for one panel, named ``<view>-<scope>``."""
    cols = st.columns(2)
    rows = export_rows(view, payload)
    if rows:
        cols[0].download_button(
            "CSV",
            data=to_csv(rows).encode("utf-8"),
            file_name=export_filename(view, filters, "csv"),
            mime="text/csv",
            key=f"{key}_csv",
        )
    spec = export_chart(view, payload)
    if spec is not None:
        try:
            png = chart_png(chart_fingerprint(spec), spec)
        except RuntimeError as exc:
            cols[1].caption(f"PNG unavailable: {exc}")
        else:
            cols[1].download_button(
                "PNG", data=png, file_name=export_filename(view, filters, "png"), mime="image/png", key=f"{key}_png"
            )


def show_chart(payload: Dict[str, Any], chart_key: str, empty_text: str = "沒有資料。"):
    spec = (payload.get("charts") or {}).get(chart_key)
    if spec is None:
        st.info(empty_text)
    else:
        st.vega_lite_chart(spec, use_container_width=True)


def fmt_pct(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:+.1f}%"


# ---------- UI setup ----------
st.set_page_config(page_title="IVV 客服儀表板", layout="wide")
inject_base_styles()
st.title("IVV 客服儀表板")

data_ctx = load_dashboard_data()
time_index = data_ctx["time_index"]
status = data_ctx.get("status", {})
failed = [name for name, s in status.items() if s.get("state") == "error"]
if failed:
    st.warning("無法載入資料集：" + ", ".join(failed))

# ----- Sidebar: filters -----
with st.sidebar:
    if st.button("重新整理資料"):
        refresh_dashboard_data()
        st.rerun()

    st.markdown("### 期間")
    year_options: List[str] = [ALL] + list(time_index.years)
    year = st.selectbox("年份", year_options, key="year")
    month_options: List[str] = [ALL] + time_index.months_for(year)
    if st.session_state.get("month") not in month_options:
        st.session_state["month"] = ALL
    month = st.selectbox("月份", month_options, key="month", disabled=(year == ALL))

    st.markdown("---")
    st.markdown("### 處理時長")
    metric = st.radio("顯示", ["count", "percent"], format_func={"count": "件數", "percent": "比例"}.get, horizontal=True)
    bin_mode = st.radio("分組方式", ["auto", "fixed"], format_func={"auto": "自動", "fixed": "固定"}.get, horizontal=True)
    focus = st.checkbox("聚焦 0–30 分", value=False)
    group_by = st.selectbox("群組", ["none", "category", "module"], format_func={"none": "無", "category": "類別", "module": "模組"}.get)
    selection = ALL
    if group_by != "none":
        selection = st.selectbox("群組值", [ALL] + group_values(data_ctx, group_by))
    facet = st.checkbox("分面顯示", value=False, disabled=(group_by == "none" or selection != ALL))
    top_n = st.slider("Top N", min_value=3, max_value=15, value=5)

filters = normalize_filters(
    {
        "year": year,
        "month": month,
        "group_by": group_by,
        "selection": selection,
        "facet": facet,
        "metric": metric,
        "bin_mode": bin_mode,
        "focus": focus,
        "top_n": top_n,
    },
    time_index=time_index,
)
ctx = prepare_context(filters, data_ctx)

overview = compute_overview(filters, ctx)
trend = compute_trend(filters, ctx)
duration = compute_duration(filters, ctx)
categories = compute_categories(filters, ctx)

chips = [f"年份: {filters.year}", f"月份: {filters.month}", f"群組: {filters.group.group_by}"]
st.markdown("<div class='chip-row'>" + "".join(f"<span class='chip'>{c}</span>" for c in chips) + "</div>", unsafe_allow_html=True)

# ----- KPIs + insights -----
kpis = overview["kpis"]
k1, k2, k3, k4 = st.columns(4)
k1.metric("總件數", f"{kpis['total']:,}")
k2.metric("日均件數", "-" if kpis["daily_avg"] is None else f"{kpis['daily_avg']:.1f}")
k3.metric("月增率", fmt_pct(kpis["mom_pct"]))
k4.metric("年增率", fmt_pct(kpis["yoy_pct"]))
if overview["sheet_kpis"]:
    sheet_cols = st.columns(len(overview["sheet_kpis"]))
    for col, (name, value) in zip(sheet_cols, overview["sheet_kpis"].items()):
        col.metric(name, "-" if value is None else str(value))
if overview["insights"]:
    with card("重點摘要"):
        for line in overview["insights"]:
            st.markdown(f"- {line}")

# ----- Trend -----
with card("日趨勢（件數, MA7 / MA30）"):
    show_chart(trend, "daily_trend")
    export_buttons("trend", trend, "trend")

left, right = st.columns(2)
with left:
    with card("月份總量"):
        show_chart(trend, "monthly_totals")
        export_buttons("monthly", trend, "monthly")
with right:
    with card("星期分布（日均）"):
        show_chart(trend, "weekday")
        export_buttons("weekday", trend, "weekday")

# ----- Duration -----
with card("處理時長分布"):
    show_chart(duration, "histogram")
    stats = duration["stats"]
    st.caption(
        f"平均 {stats['mean'] if stats['mean'] is not None else '-'} 分・中位數 {stats['median'] if stats['median'] is not None else '-'} 分・"
        f"缺少時長 {duration['missing_count']} 件"
    )
    export_buttons("duration", duration, "duration")
    labels = [e["label"] for e in duration["edges"]]
    if labels:
        chosen = st.selectbox("查看區間明細", ["-"] + labels)
        if chosen != "-":
            st.dataframe(pd.DataFrame(drilldown_rows(ctx, duration, chosen)), hide_index=True)
with card("月平均處理時長"):
    show_chart(duration, "monthly_average")

# ----- Categories -----
with card("類別趨勢（Top 5）"):
    show_chart(categories, "category_stack")
    export_buttons("category-stack", categories, "category_stack")
left, right = st.columns(2)
with left:
    with card(f"模組別 Top {filters.top_n}"):
        show_chart(categories, "module_top")
        export_buttons("module-top", categories, "module_top")
with right:
    with card(f"類別 Top {filters.top_n}"):
        show_chart(categories, "category_top")
        export_buttons("category-top", categories, "category_top")
