"""
Unit tests for the emissions API endpoints.

The record source is swapped for in-memory fixtures so no data files are needed.
"""
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from carbon_api import main
from carbon_core.data import FrameRecordSource, SourceUnavailable
from tests.conftest import CAMPUS_ROWS, FailingSource


@pytest.fixture
def client(monkeypatch):
    source = FrameRecordSource(pd.DataFrame(CAMPUS_ROWS))
    monkeypatch.setattr(main, "get_record_source", lambda: source)
    return TestClient(main.app)


@pytest.fixture
def offline_client(monkeypatch):
    monkeypatch.setattr(main, "get_record_source", lambda: FailingSource(SourceUnavailable("storage timed out")))
    return TestClient(main.app)


def test_building_emissions(client):
    response = client.post("/emissions/building", json={"campus": "Ganesha", "year": "All"})

    assert response.status_code == 200
    body = response.json()
    assert body["filter"]["campus"] == "Ganesha"
    assert body["result"]["Lab"] == {"total": 15.0, "children": {"R1": 10.0, "R2": 5.0}}
    assert body["result"]["Library"]["total"] == 7.5
    assert body["skipped_count"] == 0
    assert body["total_sum"] == 22.5


def test_campus_totals(client):
    response = client.post("/emissions/campus", json={})

    assert response.status_code == 200
    result = response.json()["result"]
    assert {name: group["total"] for name, group in result.items()} == {"Ganesha": 22.5, "Jatinangor": 6.25}
    assert "children" not in result["Ganesha"]


def test_campus_trend_switches_to_months_when_a_year_is_selected(client):
    yearly = client.post("/emissions/campus", params={"aggregate": "yearly_total"}, json={}).json()
    monthly = client.post("/emissions/campus", params={"aggregate": "monthly_total"}, json={"year": 2023}).json()

    assert yearly["result"]["Ganesha"]["children"] == {"2023": 15.0, "2024": 7.5}
    assert monthly["result"]["Ganesha"]["children"] == {"1": 10.0, "2": 5.0}
    assert monthly["filter"]["year"] == 2023


def test_device_emissions(client):
    response = client.post("/emissions/device", json={"campus": "Jatinangor"})

    assert response.status_code == 200
    assert {k: v["total"] for k, v in response.json()["result"].items()} == {"AC": 4.25, "PC": 2.0}


def test_meta_filters(client):
    response = client.get("/meta/filters")

    assert response.status_code == 200
    assert response.json() == {"campuses": ["Ganesha", "Jatinangor"], "years": [2024, 2023]}


def test_overview(client):
    response = client.post("/overview", json={"campus": "Ganesha", "year": 2023})

    assert response.status_code == 200
    kpis = response.json()["kpis"]
    assert kpis["total_emissions"] == 15.0
    assert kpis["top_emitter"] == "Lab"


def test_source_unavailable_is_a_retryable_503(offline_client):
    response = offline_client.post("/emissions/building", json={"campus": "Ganesha"})

    assert response.status_code == 503
    body = response.json()
    assert body["type"] == "SourceUnavailable"
    assert body["retryable"] is True


def test_unexpected_failures_are_500(monkeypatch):
    def broken_source():
        raise RuntimeError("boom")

    monkeypatch.setattr(main, "get_record_source", broken_source)
    response = TestClient(main.app).post("/emissions/device", json={})

    assert response.status_code == 500
    assert response.json() == {"error": "boom", "type": "RuntimeError"}


def test_debug(monkeypatch):
    records = pd.DataFrame(CAMPUS_ROWS)
    monkeypatch.setattr(main, "load_emissions_data", lambda: {"files": ["emissions.csv"], "records": records})

    response = TestClient(main.app).get("/debug")

    assert response.status_code == 200
    assert response.json()["row_counts"] == {"records": 5}
