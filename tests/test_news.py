import asyncio
from datetime import datetime, timezone

import numpy as np
import pandas as pd
import pytest
import requests

from datahub import cnbc
from datahub.cnbc import CnbcVideoProvider, build_video_id, parse_video_url_date
from datahub.errors import ProviderError
from datahub.news import (
    HtmlMeta,
    build_news_summary,
    clamp_related_tickers,
    fetch_text,
    infer_news_topic,
    is_recent_news,
    parse_html_meta,
    score_news_hype,
    truncate_words,
)
from datahub.providers import YFinanceProvider, frame_to_bars, parse_yfinance_news_item

PAGE = (
    "<html><head><title>Fallback</title>"
    '<meta property="og:title" content="Fed &amp; markets"/>'
    '<meta name="description" content="Stocks   moved."/>'
    '<meta property="article:published_time" content="2024-03-05T14:00:00+0000"/>'
    '<meta name="keywords" content="Fed, Markets, fed"/>'
    "</head></html>"
)


def test_parse_html_meta():
    meta = parse_html_meta(PAGE)
    assert meta.title == "Fed & markets"
    assert meta.description == "Stocks moved."
    assert meta.published_time == "2024-03-05T14:00:00+0000"
    assert meta.keywords == ["Fed", "Markets"]
    assert parse_html_meta("<title> Only  title </title>").title == "Only title"


def test_topic_rules_and_tag_fallback():
    assert infer_news_topic("Fed signals a rate cut") == "rate cut"
    assert infer_news_topic("Nvidia earnings preview") == "ai"
    assert infer_news_topic("Morning update", tags=["CNBC", "Small Caps (Russell 2000)"]) == "small caps"
    assert infer_news_topic("Morning update") is None


def test_hype_score():
    assert score_news_hype("Stocks SURGE to record!") == 40
    assert score_news_hype("calm day") == 0
    assert score_news_hype("BREAKING!!! $$$ MASSIVE CRASH") == 90


def test_text_shaping():
    assert truncate_words("one two three four", 2) == "one two…"
    assert truncate_words("a  b", 5) == "a b"
    assert build_news_summary("Apple rises.", "Reuters") == "Reuters: Apple rises."
    assert build_news_summary("Apple rises", "Reuters", "Shares up.", ["MSFT"]) == (
        "Reuters: Apple rises. Shares up. Related tickers mentioned: MSFT."
    )


def test_recent_news_window():
    utc = timezone.utc
    assert is_recent_news("2024-03-05", datetime(2024, 3, 3, 0, 0, tzinfo=utc), 3)
    assert not is_recent_news("2024-03-05", datetime(2024, 3, 2, 23, 59, tzinfo=utc), 3)
    assert not is_recent_news("2024-03-05", datetime(2024, 3, 6, 0, 0, tzinfo=utc), 3)


def test_related_tickers_exclude_self():
    assert clamp_related_tickers(["msft", " aapl ", "", None, "NVDA"], "AAPL") == ["MSFT", "NVDA"]


def test_yfinance_news_content_shape():
    item = {
        "id": "abc",
        "content": {
            "title": "Apple beats estimates",
            "canonicalUrl": {"url": "https://finance.yahoo.com/news/apple"},
            "provider": {"displayName": "Reuters"},
            "summary": "Revenue topped forecasts.",
            "pubDate": "2024-03-05T12:00:00Z",
            "finance": {"stockTickers": [{"symbol": "MSFT"}, {"symbol": "AAPL"}]},
        },
    }
    article = parse_yfinance_news_item(item, "AAPL")
    assert article.id == "abc"
    assert article.publisher == "Reuters"
    assert article.publishedAt == "2024-03-05T12:00:00Z"
    assert article.relatedTickers == ["MSFT"]
    assert article.summary.startswith("Reuters: Apple beats estimates. Revenue topped forecasts.")


def test_yfinance_news_legacy_shape():
    item = {
        "uuid": "u1",
        "title": "Apple event",
        "link": "https://finance.yahoo.com/news/event",
        "publisher": "Yahoo",
        "providerPublishTime": 1709640000,
        "relatedTickers": ["AAPL"],
    }
    article = parse_yfinance_news_item(item, "AAPL")
    assert article.publishedAt == "2024-03-05T12:00:00Z"
    assert article.relatedTickers == []
    assert parse_yfinance_news_item({"uuid": "u2", "link": "x"}, "AAPL") is None


def test_frame_to_bars_drops_non_finite_rows():
    index = pd.to_datetime(["2024-03-05 14:30", "2024-03-05 14:45", "2024-03-05 15:00"], utc=True)
    columns = pd.MultiIndex.from_tuples([(name, "AAPL") for name in ["Open", "High", "Low", "Close", "Volume"]])
    frame = pd.DataFrame(
        [
            [1.0, 2.0, 0.5, 1.5, 100],
            [np.nan, 2.0, 0.5, 1.5, 100],
            [1.5, 2.5, 1.0, 2.0, 200],
        ],
        index=index,
        columns=columns,
    )
    bars = frame_to_bars(frame)
    assert [bar.timestamp for bar in bars] == ["2024-03-05T14:30:00.000Z", "2024-03-05T15:00:00.000Z"]
    assert bars[1].close == 2.0
    assert frame_to_bars(pd.DataFrame()) == []


def test_frame_to_bars_missing_columns():
    frame = pd.DataFrame({"Close": [1.0]}, index=pd.to_datetime(["2024-03-05"]))
    with pytest.raises(ProviderError):
        frame_to_bars(frame)


def test_fetch_text_wraps_request_errors(monkeypatch):
    def _boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr("datahub.news.requests.get", _boom)
    with pytest.raises(ProviderError, match="refused"):
        fetch_text("https://www.cnbc.com/latest-video/", 1.0)


def test_video_url_helpers():
    url = "https://www.cnbc.com/video/2024/03/05/fed-decision.html"
    assert parse_video_url_date(url) == "2024-03-05"
    assert build_video_id(url) == "cnbc:20240305:fed-decision"
    assert build_video_id("https://www.cnbc.com/other") == "cnbc:https://www.cnbc.com/other"


def test_cnbc_provider_collects_articles(monkeypatch):
    good = "https://www.cnbc.com/video/2024/03/05/fed-decision.html"
    bad = "https://www.cnbc.com/video/2024/03/04/broken.html"
    listing = f'<a href="{good}?__source=x">a</a><a href="{good}">b</a><a href="{bad}">c</a>'

    def _meta(url, timeout):
        if url == bad:
            raise ProviderError("timeout")
        return HtmlMeta(title="Fed holds rates", published_time="2024-03-05T14:00:00+0000")

    monkeypatch.setattr(cnbc, "fetch_text", lambda url, timeout: listing)
    monkeypatch.setattr(cnbc, "fetch_article_meta", _meta)

    provider = CnbcVideoProvider()
    assert provider.fetch_latest_video_urls() == [good, bad]

    articles = asyncio.run(provider.fetch_recent_articles("2024-03-05"))
    assert len(articles) == 1
    article = articles[0]
    assert article.id == "cnbc:20240305:fed-decision"
    assert article.provider == "cnbc"
    assert article.symbol is None
    assert article.asOfDate == "2024-03-05"
    assert article.publishedAt == "2024-03-05T14:00:00Z"
    assert article.topic == "rate cut"


def test_cnbc_provider_skips_articles_not_newer_than_since(monkeypatch):
    older = "https://www.cnbc.com/video/2024/03/04/yesterday.html"
    same_day = "https://www.cnbc.com/video/2024/03/05/fed-decision.html"
    listing = f'<a href="{older}">a</a><a href="{same_day}">b</a>'
    requested = []

    def _meta(url, timeout):
        requested.append(url)
        return HtmlMeta(title="Fed holds rates", published_time="2024-03-05T14:00:00+0000")

    monkeypatch.setattr(cnbc, "fetch_text", lambda url, timeout: listing)
    monkeypatch.setattr(cnbc, "fetch_article_meta", _meta)

    provider = CnbcVideoProvider()
    cutoff = datetime(2024, 3, 5, 14, 0, tzinfo=timezone.utc)
    assert asyncio.run(provider.fetch_recent_articles("2024-03-05", since=cutoff)) == []
    assert requested == [same_day]


def test_cnbc_provider_without_urls(monkeypatch):
    monkeypatch.setattr(cnbc, "fetch_text", lambda url, timeout: "<html></html>")
    with pytest.raises(ProviderError):
        CnbcVideoProvider().fetch_latest_video_urls()


def test_yfinance_download_receives_timeout(monkeypatch):
    captured = {}

    def _download(symbol, **kwargs):
        captured.update(kwargs)
        return pd.DataFrame()

    monkeypatch.setattr("datahub.providers.yf.download", _download)
    series = YFinanceProvider(timeout=4.0).fetch_bars("AAPL", "1d", "2024-03-05")
    assert captured["timeout"] == 4.0
    assert series.bars == []
    assert series.provider == "yfinance"
