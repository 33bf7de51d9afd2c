from __future__ import annotations

import pandas as pd
import pytest

from ivv_core.data import normalize_trend
from ivv_core.filters import DashboardFilters, FilterState
from ivv_core.metrics_trend import (
    EXCLUDED_WEEKDAY,
    add_moving_averages,
    compute_trend,
    monthly_totals,
    moving_average,
    period_comparison,
    shift_month_key,
    weekday_seasonality,
)


def _trend(counts: list[int], start: str = "2024-01-01") -> pd.DataFrame:
    dates = pd.date_range(start, periods=len(counts), freq="D").strftime("%Y-%m-%d")
    return normalize_trend(pd.DataFrame({"date": list(dates), "count": counts}))


def test_moving_average_eight_day_scenario() -> None:
    counts = [10, 20, 30, 40, 50, 60, 70, 10]

    ma7 = moving_average(counts, 7)
    ma30 = moving_average(counts, 30)

    assert len(ma7) == len(counts)
    assert ma7[:6] == [None] * 6
    assert ma7[6] == 40.0
    assert ma7[7] == pytest.approx(sum(counts[1:8]) / 7)
    assert ma30 == [None] * 8


def test_moving_average_rounds_to_two_decimals() -> None:
    assert moving_average([1, 2, 2], 3) == [None, None, 1.67]
    with pytest.raises(ValueError, match="window must be >= 1"):
        moving_average([1], 0)


def test_add_moving_averages_runs_both_windows_on_the_same_series() -> None:
    trend = _trend(list(range(1, 36)))

    out = add_moving_averages(trend)

    assert out["ma7"].iloc[6] == 4.0
    assert out["ma30"].iloc[29] == 15.5
    assert out["ma30"].iloc[34] == 20.5
    assert out["ma30"].iloc[28] is None


def test_monthly_totals_sum_counts_and_days(data_ctx: dict) -> None:
    monthly = monthly_totals(data_ctx["trend"])

    assert [m["month"] for m in monthly] == ["2023-06", "2024-05", "2024-06"]
    june = monthly[-1]
    assert june["total"] == 150
    assert june["days"] == 5
    assert june["max"] == {"date": "2024-06-02", "count": 50}
    assert june["min"] == {"date": "2024-06-01", "count": 10}
    # ties keep the first day
    assert monthly[0]["min"] == {"date": "2023-06-01", "count": 30}
    assert monthly_totals(pd.DataFrame()) == []


def test_year_over_year_uses_key_arithmetic(data_ctx: dict) -> None:
    monthly = monthly_totals(data_ctx["trend"])
    filters = DashboardFilters(period=FilterState(year="2024", month="2024-06"))

    comparison = period_comparison(monthly, filters)

    assert comparison["year_ago_month"] == "2023-06"
    assert comparison["yoy_pct"] == pytest.approx(50.0)
    assert comparison["previous_month"] == "2024-05"
    assert comparison["mom_pct"] == pytest.approx(275.0)


def test_month_over_month_stays_within_selected_year(data_ctx: dict) -> None:
    monthly = monthly_totals(data_ctx["trend"])

    first_of_year = period_comparison(monthly, DashboardFilters(period=FilterState(year="2024", month="2024-05")))
    whole_year = period_comparison(monthly, DashboardFilters(period=FilterState(year="2024")))
    global_latest = period_comparison(monthly, DashboardFilters())

    assert first_of_year["previous_month"] is None
    assert first_of_year["mom_pct"] is None
    assert first_of_year["yoy_pct"] is None
    assert whole_year["current_month"] == "2024-06"
    assert global_latest["current_month"] == "2024-06"
    assert global_latest["previous_month"] == "2024-05"


def test_percent_change_undefined_for_zero_previous() -> None:
    monthly = [
        {"month": "2024-01", "total": 0, "days": 1},
        {"month": "2024-02", "total": 10, "days": 1},
    ]

    comparison = period_comparison(monthly, DashboardFilters())

    assert comparison["previous_total"] == 0
    assert comparison["mom_pct"] is None


def test_shift_month_key() -> None:
    assert shift_month_key("2024-06", years=-1) == "2023-06"
    assert shift_month_key("2024-01", months=-1) == "2023-12"


def test_weekday_seasonality_zeroes_excluded_weekday(make_ctx) -> None:
    _, ctx = make_ctx(year="2024", month="2024-06")

    weekday = {row["weekday"]: row for row in weekday_seasonality(ctx["trend_filtered"])}

    assert list(weekday) == ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    # 2024-06-01 is a Saturday with 10 calls, still reported as zero
    assert weekday[EXCLUDED_WEEKDAY]["avg"] == 0.0
    assert weekday[EXCLUDED_WEEKDAY]["excluded"] is True
    assert weekday["Sun"]["avg"] == 50.0
    assert weekday["Mon"] == {"weekday": "Mon", "total": 30, "days": 1, "avg": 30.0, "excluded": False}
    assert weekday["Thu"]["avg"] == 0.0


def test_compute_trend_payload(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06")

    payload = compute_trend(filters, ctx)

    assert [r["date"] for r in payload["rows"]] == ["2024-06-01", "2024-06-02", "2024-06-03", "2024-06-04", "2024-06-05"]
    assert all(r["ma7"] is None for r in payload["rows"])
    assert [m["month"] for m in payload["monthly"]] == ["2024-05", "2024-06"]
    assert payload["comparison"]["yoy_pct"] == pytest.approx(50.0)
    assert set(payload["charts"]) == {"daily_trend", "monthly_totals", "weekday"}
    assert payload["filters"]["period"] == {"year": "2024", "month": "2024-06"}


def test_compute_trend_tolerates_empty_data() -> None:
    empty = {"trend": pd.DataFrame(), "trend_year": pd.DataFrame(), "trend_filtered": pd.DataFrame()}

    payload = compute_trend(DashboardFilters(), empty)

    assert payload["rows"] == []
    assert payload["monthly"] == []
    assert payload["comparison"]["current_month"] is None
    assert payload["charts"] == {}
