import pytest
from fastapi.testclient import TestClient

from api import app, get_store
from datahub.models import StoredVideoArticle
from engine.analyzer import analyze_series
from engine.report import build_market_report, render_report_mdx, to_report_highlights

from conftest import make_series


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def published(store, daily_only_config, rising_bars):
    analyzed = analyze_series(make_series(bars=rising_bars), daily_only_config, analyzed_at="2024-03-01T21:00:00Z")
    store.write_analyzed_series("2024-03-01", analyzed)
    for date in ("2024-02-29", "2024-03-01"):
        report = build_market_report(date, ["AAPL"], ["1d"], [analyzed], generated_at=f"{date}T21:05:00Z")
        store.write_report(date, report, render_report_mdx(report), to_report_highlights(report))
    return store


def test_health(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/api/healthz").status_code == 200


def test_list_reports_newest_first(client, published):
    response = client.get("/reports", params={"limit": 1})
    assert response.status_code == 200
    assert response.json() == {"dates": ["2024-03-01"]}
    assert client.get("/api/reports").json()["dates"] == ["2024-03-01", "2024-02-29"]


def test_report_by_date_and_latest(client, published):
    latest = client.get("/reports/latest").json()
    assert latest["date"] == "2024-03-01"
    assert latest["picks"][0]["symbol"] == "AAPL"
    assert client.get("/api/reports/2024-02-29").json()["date"] == "2024-02-29"


def test_report_errors(client, store):
    assert client.get("/reports/latest").status_code == 404
    assert client.get("/reports/2024-03-01").status_code == 404
    assert client.get("/reports/2024-13-01").status_code == 400


def test_highlights_fall_back_to_full_report(client, published):
    published.report_highlights_path("2024-03-01").unlink()
    body = client.get("/reports/2024-03-01/highlights").json()
    assert body["version"] == "v2-highlights"
    assert body["picks"][0]["trade"]["side"] == "sell"


def test_corrupt_report_is_server_error(client, published):
    published.report_json_path("2024-03-01").write_text("{", encoding="utf-8")
    assert client.get("/reports/2024-03-01").status_code == 500


def test_analysis_routes(client, published):
    body = client.get("/analysis/2024-03-01/aapl/1d").json()
    assert body["symbol"] == "AAPL"
    assert body["indicators"]["rsi14"][-1] == 100.0
    assert client.get("/analysis/2024-03-01").json() == ["AAPL.1d"]
    assert client.get("/analysis/2024-03-01/AAPL/4h").status_code == 400
    assert client.get("/analysis/2024-03-01/MSFT/1d").status_code == 404
    assert client.get("/analysis/2024-03-02").status_code == 404


def test_videos_accept_compact_dates(client, store):
    article = StoredVideoArticle(
        id="cnbc:20240301:wrap",
        title="Wrap",
        url="https://www.cnbc.com/video/2024/03/01/wrap.html",
        publisher="CNBC",
        publishedAt="2024-03-01T20:00:00Z",
        mainIdea="Wrap",
        summary="CNBC: Wrap.",
        provider="cnbc",
        fetchedAt="2024-03-01T21:00:00Z",
        asOfDate="2024-03-01",
    )
    store.write_video_articles("2024-03-01", [article], today="2024-03-01")

    body = client.get("/videos/20240301").json()
    assert [item["id"] for item in body] == ["cnbc:20240301:wrap"]
    assert "provider" not in body[0]
    assert client.get("/videos/2024-03-02").status_code == 404
    assert client.get("/videos/yesterday").status_code == 400
