from __future__ import annotations

import pandas as pd
import pytest

from ivv_core.data import build_dashboard_data, prepare_context


@pytest.fixture()
def raw_trend() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "日期": [
                "2023-06-01",
                "2023-06-02",
                "2023-06-03",
                "2024-05-30",
                "2024-05-31",
                "2024-06-01",
                "2024-06-02",
                "2024-06-03",
                "2024-06-04",
                "2024-06-05",
            ],
            "件數": ["30", "40", "30", "20", "20", "10", "50", "30", "30", "30"],
        }
    )


@pytest.fixture()
def raw_calls() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "日期": ["2024-06-01", "2024-06-02", "2024-06-03", "2024-06-03", "2024-06-04", "2024-05-31", "bad"],
            "類別": ["帳務", "帳務", "系統", "系統", "", "帳務", "帳務"],
            "模組": ["登入", "付款", "登入", "登入", "", "付款", "登入"],
            "處理時長(分)": ["5", "12", "45", "200", "", "abc", "3"],
        }
    )


@pytest.fixture()
def data_ctx(raw_trend: pd.DataFrame, raw_calls: pd.DataFrame) -> dict:
    return build_dashboard_data({"trend": raw_trend, "calls": raw_calls})


@pytest.fixture()
def make_ctx(data_ctx):
    def _make(**raw):
        ctx = prepare_context(raw, data_ctx)
        return ctx["filters"], ctx

    return _make
