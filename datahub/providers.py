"""
行情数据提供方适配器。

统一接口 ``MarketDataProvider`` 负责按 (symbol, interval, as_of_date) 返回
``RawSeries``，以及按 (symbol, as_of_date) 返回新闻快照。默认实现基于
yfinance；调用是同步阻塞的，管线层通过 ``asyncio.to_thread`` 调度。
"""

from __future__ import annotations

import abc
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import yfinance as yf

from .dates import parse_iso_date
from .errors import ProviderError
from .models import Bar, MarketInterval, NewsArticle, NewsSnapshot, RawSeries
from .news import (
    build_news_main_idea,
    build_news_summary,
    clamp_related_tickers,
    infer_news_topic,
    is_recent_news,
    score_news_hype,
)

logger = logging.getLogger(__name__)

# yfinance 对分钟级数据的可回溯天数有限制（15m 不超过 60 天）
LOOKBACK_DAYS: Dict[str, int] = {
    "1m": 5,
    "5m": 30,
    "15m": 59,
    "1h": 180,
    "1d": 730,
}

MAX_BARS: Dict[str, int] = {
    "1m": 500,
    "5m": 500,
    "15m": 500,
    "1h": 700,
    "1d": 900,
}

NEWS_MAX_AGE_DAYS = 3
DEFAULT_DOWNLOAD_TIMEOUT = 30.0
NEWS_MAX_ARTICLES = 20


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _format_timestamp(ts: pd.Timestamp) -> str:
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").strftime("%Y-%m-%dT%H:%M:%S.000Z")


def frame_to_bars(df: Optional[pd.DataFrame]) -> List[Bar]:
    """将 yfinance 的 DataFrame 转为按时间升序的 Bar 列表，丢弃含非有限值的行。"""
    if df is None or df.empty:
        return []
    data = df.copy()
    if isinstance(data.columns, pd.MultiIndex):
        data.columns = data.columns.get_level_values(0)
    data = data.loc[:, ~data.columns.duplicated()]

    required = ["Open", "High", "Low", "Close", "Volume"]
    missing = [col for col in required if col not in data.columns]
    if missing:
        raise ProviderError(f"yfinance 返回缺少列：{missing}")

    data = data[required].apply(pd.to_numeric, errors="coerce")
    data.index = pd.to_datetime(data.index)
    data = data.sort_index()

    bars: List[Bar] = []
    for ts, row in data.iterrows():
        values = [float(row[col]) for col in required]
        if not all(math.isfinite(v) for v in values):
            continue
        open_, high, low, close, volume = values
        bars.append(
            Bar(timestamp=_format_timestamp(pd.Timestamp(ts)), open=open_, high=high, low=low, close=close, volume=volume)
        )
    return bars


class MarketDataProvider(abc.ABC):
    """行情 / 新闻提供方的抽象基类。"""

    name: str

    @abc.abstractmethod
    def fetch_bars(self, symbol: str, interval: MarketInterval, as_of_date: str) -> RawSeries:
        """抓取截至 ``as_of_date``（含当天）的 K 线。"""

    @abc.abstractmethod
    def fetch_news(self, symbol: str, as_of_date: str) -> NewsSnapshot:
        """抓取与标的相关的新闻快照。"""


class YFinanceProvider(MarketDataProvider):
    """yfinance 提供的免费行情源。"""

    name = "yfinance"

    def __init__(self, timeout: float = DEFAULT_DOWNLOAD_TIMEOUT) -> None:
        # 传给 yf.download，使阻塞请求在超时后自行结束
        self.timeout = timeout

    def fetch_bars(self, symbol: str, interval: MarketInterval, as_of_date: str) -> RawSeries:
        fetched_at = utc_now_iso()
        day = parse_iso_date(as_of_date)
        end = datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(days=1)
        start = end - timedelta(days=LOOKBACK_DAYS[interval])

        logger.info("使用 yfinance 拉取 %s/%s (%s)", symbol, interval, as_of_date)
        try:
            df = yf.download(
                symbol,
                start=start,
                end=end,
                interval=interval,
                auto_adjust=False,
                progress=False,
                threads=False,
                timeout=self.timeout,
            )
        except Exception as exc:
            raise ProviderError(f"yfinance 获取 {symbol}/{interval} 失败：{exc}") from exc

        bars = frame_to_bars(df)
        bars = bars[-MAX_BARS[interval]:]
        return RawSeries(symbol=symbol, interval=interval, provider=self.name, fetchedAt=fetched_at, bars=bars)

    def fetch_news(self, symbol: str, as_of_date: str) -> NewsSnapshot:
        fetched_at = utc_now_iso()
        try:
            raw_items = yf.Ticker(symbol).news or []
        except Exception as exc:
            raise ProviderError(f"yfinance 获取 {symbol} 新闻失败：{exc}") from exc

        articles: List[NewsArticle] = []
        seen = set()
        for item in raw_items:
            article = parse_yfinance_news_item(item, symbol)
            if article is None or article.id in seen:
                continue
            published = datetime.fromisoformat(article.publishedAt.replace("Z", "+00:00"))
            if not is_recent_news(as_of_date, published, NEWS_MAX_AGE_DAYS):
                continue
            seen.add(article.id)
            articles.append(article)

        articles.sort(key=lambda a: a.publishedAt, reverse=True)
        return NewsSnapshot(
            symbol=symbol,
            provider=self.name,
            fetchedAt=fetched_at,
            asOfDate=as_of_date,
            articles=articles[:NEWS_MAX_ARTICLES],
        )


def _nested(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def parse_yfinance_news_item(item: Dict[str, Any], symbol: str) -> Optional[NewsArticle]:
    """兼容 yfinance 新旧两种新闻结构（扁平字段 / ``content`` 嵌套）。"""
    if not isinstance(item, dict):
        return None
    content = item.get("content") if isinstance(item.get("content"), dict) else None

    if content is not None:
        article_id = item.get("id") or content.get("id")
        title = content.get("title")
        url = _nested(content, "canonicalUrl", "url") or _nested(content, "clickThroughUrl", "url")
        publisher = _nested(content, "provider", "displayName") or "Yahoo Finance"
        description = content.get("summary") or content.get("description")
        thumbnail = _nested(content, "thumbnail", "originalUrl")
        published_raw = content.get("pubDate") or content.get("displayTime")
        published = _parse_published(published_raw)
        tickers: Iterable[str] = [
            entry.get("symbol")
            for entry in (_nested(content, "finance", "stockTickers") or [])
            if isinstance(entry, dict)
        ]
    else:
        article_id = item.get("uuid") or item.get("id")
        title = item.get("title")
        url = item.get("link")
        publisher = item.get("publisher") or "Yahoo Finance"
        description = None
        resolutions = _nested(item, "thumbnail", "resolutions") or []
        thumbnail = resolutions[0].get("url") if resolutions and isinstance(resolutions[0], dict) else None
        published = _parse_published(item.get("providerPublishTime"))
        tickers = item.get("relatedTickers") or []

    if not article_id or not title or not url or published is None:
        return None

    related = clamp_related_tickers(tickers, symbol)
    return NewsArticle(
        id=str(article_id),
        title=title,
        url=url,
        thumbnailUrl=thumbnail,
        publisher=publisher,
        publishedAt=published.isoformat().replace("+00:00", "Z"),
        relatedTickers=related,
        topic=infer_news_topic(title),
        hype=score_news_hype(title),
        mainIdea=build_news_main_idea(title),
        summary=build_news_summary(title, publisher, description, related),
    )


def _parse_published(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None
