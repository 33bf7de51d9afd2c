from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from ivv_core.export import CSV_BOM, EXPORT_VIEWS, chart_fingerprint, export_chart, export_filename, export_rows, to_csv, to_image
from ivv_core.filters import DashboardFilters, FilterState
from ivv_core.metrics_category import compute_categories
from ivv_core.metrics_duration import compute_duration
from ivv_core.metrics_trend import compute_trend


def test_to_csv_quotes_every_field_as_json() -> None:
    text = to_csv([{"date": "2024-06-01", "count": 10, "ma7": None}, {"date": "2024-06-02", "count": 5.5, "ma7": 7.25}])

    assert text.startswith(CSV_BOM)
    assert text[len(CSV_BOM):].split("\n") == [
        "date,count,ma7",
        '"2024-06-01",10,""',
        '"2024-06-02",5.5,7.25',
    ]


def test_to_csv_escapes_text_and_nested_values() -> None:
    text = to_csv([{"name": 'say "hi", ok', "extra": {"a": 1}, "missing": math.nan, "n": np.int64(3)}])

    body = text[len(CSV_BOM):].split("\n")[1]
    assert body == '"say \\"hi\\", ok","{\\"a\\": 1}","",3'


def test_to_csv_of_nothing_is_empty() -> None:
    assert to_csv([]) == ""
    assert to_csv(pd.DataFrame()) == ""


def test_to_csv_accepts_dataframes_and_keeps_unicode() -> None:
    text = to_csv(pd.DataFrame({"類別": ["帳務"], "件數": [2]}))

    assert text == CSV_BOM + '類別,件數\n"帳務",2'


def test_export_filename_uses_scope() -> None:
    assert export_filename("trend", DashboardFilters(period=FilterState(year="2024", month="2024-06")), "csv") == "trend-2024-06.csv"
    assert export_filename("duration", DashboardFilters(), ".png") == "duration-all.png"


def test_export_rows_flattens_nested_and_drops_row_ids(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06", bin_mode="fixed", focus=True)
    duration = compute_duration(filters, ctx)
    trend = compute_trend(filters, ctx)

    bins = export_rows("duration", duration)
    monthly = export_rows("monthly", trend)

    assert "row_ids" not in bins[0]
    assert len(bins) == 7
    assert monthly[-1]["max_date"] == "2024-06-02"
    assert monthly[-1]["min_count"] == 10
    assert "max" not in monthly[-1]


def test_export_chart_picks_the_view_chart(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06")
    trend = compute_trend(filters, ctx)

    assert export_chart("weekday", trend) == trend["charts"]["weekday"]
    assert export_chart("trend", {"charts": {}}) is None
    assert set(EXPORT_VIEWS) == {"trend", "monthly", "weekday", "duration", "module-top", "category-top", "category-stack"}


def test_to_image_renders_png(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06")
    spec = compute_trend(filters, ctx)["charts"]["weekday"]

    png = to_image(spec, scale=1)

    assert png[:8] == b"\x89PNG\r\n\x1a\n"


def test_to_image_wraps_render_errors() -> None:
    with pytest.raises(RuntimeError, match="PNG export failed"):
        to_image("{not json")


def test_chart_fingerprint_ignores_generated_names(make_ctx) -> None:
    filters, ctx = make_ctx(year="2024", month="2024-06")
    first = compute_categories(filters, ctx)["charts"]["module_top"]
    rebuilt = compute_categories(filters, ctx)["charts"]["module_top"]
    other = compute_categories(*make_ctx(year="2024"))["charts"]["module_top"]

    assert chart_fingerprint(first) == chart_fingerprint(rebuilt)
    assert chart_fingerprint(first) != chart_fingerprint(other)
    assert chart_fingerprint({"params": [{"name": "param_3"}]}) == chart_fingerprint({"params": [{"name": "param_12"}]})
