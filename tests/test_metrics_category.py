from __future__ import annotations

import pandas as pd

from ivv_core.data import build_dashboard_data, prepare_context
from ivv_core.metrics_category import (
    category_ranking,
    category_stack,
    category_source,
    compute_categories,
    module_ranking,
    top_n_ranking,
)


def test_top_n_ranking_breaks_ties_by_first_appearance() -> None:
    df = pd.DataFrame({"module": ["b", "a", "b", "c", "a", "d"], "count": [1, 2, 1, 5, 0, 2]})

    ranked = top_n_ranking(df, "module", value="count", n=3)

    assert ranked == [
        {"rank": 1, "name": "c", "value": 5},
        {"rank": 2, "name": "b", "value": 2},
        {"rank": 3, "name": "a", "value": 2},
    ]
    assert top_n_ranking(df, "module", n=0) == []
    assert top_n_ranking(pd.DataFrame(), "module") == []


def test_module_ranking_falls_back_to_raw_calls(make_ctx) -> None:
    _, ctx = make_ctx(year="2024", month="2024-06")

    rows, source = module_ranking(ctx, 5)

    assert source == "calls"
    assert [(r["name"], r["value"]) for r in rows] == [("登入", 3), ("付款", 1), ("未指派", 1)]


def test_module_ranking_prefers_monthly_module_sheet(raw_trend: pd.DataFrame) -> None:
    by_month = pd.DataFrame({"月份": ["2024-06", "2024-06", "2024-05"], "模組": ["付款", "登入", "登入"], "件數": ["8", "3", "50"]})
    data_ctx = build_dashboard_data({"trend": raw_trend, "module_by_month": by_month})

    ctx = prepare_context({"year": "2024", "month": "2024-06"}, data_ctx)
    rows, source = module_ranking(ctx, 5)

    assert source == "module_by_month"
    assert [(r["name"], r["value"]) for r in rows] == [("付款", 8), ("登入", 3)]


def test_module_ranking_uses_ranked_sheet_last() -> None:
    sheet = pd.DataFrame({"模組": ["登入", "付款"], "件數": ["9", "4"]})
    ctx = prepare_context({}, build_dashboard_data({"module_top5": sheet}))

    rows, source = module_ranking(ctx, 1)

    assert source == "module_top5"
    assert rows == [{"rank": 1, "name": "登入", "value": 9}]


def test_category_ranking_counts_calls(make_ctx) -> None:
    _, ctx = make_ctx(year="2024")

    assert category_source(ctx)[1] == "calls"
    assert [(r["name"], r["value"]) for r in category_ranking(ctx, 5)] == [("帳務", 3), ("系統", 2), ("未分類", 1)]


def test_category_stack_uses_day_buckets_for_a_month(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06")
    df, _ = category_source(ctx)

    rows, granularity = category_stack(df, filters)

    assert granularity == "day"
    assert rows == [
        {"bucket": "2024-06-01", "category": "帳務", "count": 1},
        {"bucket": "2024-06-02", "category": "帳務", "count": 1},
        {"bucket": "2024-06-03", "category": "系統", "count": 2},
        {"bucket": "2024-06-04", "category": "未分類", "count": 1},
    ]


def test_category_stack_uses_month_buckets_and_drops_minor_categories(raw_trend: pd.DataFrame) -> None:
    cats = pd.DataFrame(
        {
            "日期": ["2024-05-01"] * 7 + ["2024-06-01"] * 2,
            "類別": ["a", "b", "c", "d", "e", "f", "a", "b", "f"],
            "件數": ["10", "9", "8", "7", "6", "1", "5", "1", "1"],
        }
    )
    ctx = prepare_context({"year": "2024"}, build_dashboard_data({"trend": raw_trend, "category_trend": cats}))

    rows, granularity = category_stack(ctx["category_filtered"], ctx["filters"])

    assert granularity == "month"
    assert "f" not in {r["category"] for r in rows}
    assert rows[0] == {"bucket": "2024-05", "category": "a", "count": 15}
    assert rows[-1] == {"bucket": "2024-06", "category": "b", "count": 1}


def test_compute_categories_payload(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06", top_n=2)

    payload = compute_categories(filters, ctx)

    assert [r["name"] for r in payload["module_top"]] == ["登入", "付款"]
    assert [r["name"] for r in payload["category_top"]] == ["帳務", "系統"]
    assert payload["sources"] == {"module": "calls", "category": "calls"}
    assert set(payload["charts"]) == {"module_top", "category_top", "category_stack"}


def test_compute_categories_without_any_source() -> None:
    ctx = prepare_context({}, build_dashboard_data({}))

    payload = compute_categories(ctx["filters"], ctx)

    assert payload["module_top"] == []
    assert payload["stacked"] == []
    assert payload["sources"] == {"module": "none", "category": "none"}
    assert payload["charts"] == {}
