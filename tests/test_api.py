from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ivv_api import main

JUNE = {"year": "2024", "month": "2024-06"}


@pytest.fixture()
def client(monkeypatch, data_ctx: dict) -> TestClient:
    monkeypatch.setattr(main, "load_dashboard_data", lambda: data_ctx)
    return TestClient(main.app)


def test_meta_routes(client: TestClient) -> None:
    assert client.get("/meta/years").json() == {"values": ["2023", "2024"]}
    assert client.get("/meta/months", params={"year": "2024"}).json() == {"values": ["2024-05", "2024-06"]}
    assert client.get("/meta/months").json() == {"values": []}
    assert client.get("/meta/groups", params={"group_by": "category"}).json() == {"values": ["帳務", "系統", "未分類"]}
    status = client.get("/meta/status").json()["datasets"]
    assert status["calls"]["state"] == "ready"
    assert status["kpi"]["state"] == "missing"


def test_trend_route_repairs_filters(client: TestClient) -> None:
    body = client.post("/trend", json={"year": "2023", "month": "2024-06"}).json()

    assert body["filters"]["period"] == {"year": "2023", "month": "ALL"}
    assert [r["date"] for r in body["rows"]] == ["2023-06-01", "2023-06-02", "2023-06-03"]


def test_overview_route(client: TestClient) -> None:
    body = client.post("/overview", json=JUNE).json()

    assert body["kpis"]["total"] == 150
    assert body["kpis"]["yoy_pct"] == pytest.approx(50.0)
    assert len(body["insights"]) == 6


def test_duration_and_drilldown_routes(client: TestClient) -> None:
    filters = {**JUNE, "bin_mode": "fixed", "focus": True}

    body = client.post("/duration", json=filters).json()
    drill = client.post("/duration/drilldown", params={"label": "30+ 分"}, json=filters).json()

    assert body["missing_count"] == 1
    assert body["stats"]["median"] == 28.5
    assert [r["處理時長(分)"] for r in drill["rows"]] == ["45", "200"]


def test_categories_route(client: TestClient) -> None:
    body = client.post("/categories", json={**JUNE, "top_n": 1}).json()

    assert body["module_top"] == [{"rank": 1, "name": "登入", "value": 3}]
    assert body["granularity"] == "day"


def test_export_csv(client: TestClient) -> None:
    resp = client.post("/export/trend", json=JUNE)

    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == "attachment; filename=trend-2024-06.csv"
    assert resp.content.startswith(b"\xef\xbb\xbf")
    assert resp.content.decode("utf-8-sig").split("\n")[0] == "date,count,ma7,ma30"


def test_export_unknown_view_is_404(client: TestClient) -> None:
    resp = client.post("/export/bogus", json=JUNE)

    assert resp.status_code == 404
    assert resp.json()["type"] == "KeyError"


def test_compute_failure_returns_500(monkeypatch) -> None:
    def boom():
        raise OSError("sheet unreachable")

    monkeypatch.setattr(main, "load_dashboard_data", boom)
    resp = TestClient(main.app).post("/trend", json={})

    assert resp.status_code == 500
    assert resp.json() == {"error": "sheet unreachable", "type": "OSError"}
