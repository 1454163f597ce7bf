"""CNBC 最新视频列表抓取，生成按日归档的视频资讯快照。"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from infra.concurrency import map_with_concurrency
from infra.rate_limit import rate_limiter

from .dates import parse_iso_date
from .errors import ProviderError
from .models import StoredVideoArticle
from .news import (
    build_news_main_idea,
    build_news_summary,
    fetch_article_meta,
    fetch_text,
    infer_news_topic,
    score_news_hype,
)
from .providers import utc_now_iso

logger = logging.getLogger(__name__)

CNBC_LATEST_VIDEO_URL = "https://www.cnbc.com/latest-video/"
PROVIDER = "cnbc"
PUBLISHER = "CNBC"

_VIDEO_URL = re.compile(r"https://www\.cnbc\.com/video/\d{4}/\d{2}/\d{2}/[^\"<> ]+\.html(?:\?[^\"<> ]*)?")
_URL_DATE = re.compile(r"/video/(\d{4})/(\d{2})/(\d{2})/")


def parse_video_url_date(url: str) -> Optional[str]:
    match = _URL_DATE.search(url)
    if not match:
        return None
    return "-".join(match.groups())


def build_video_id(url: str) -> str:
    """``cnbc:YYYYMMDD:slug``；无法识别路径时退回 ``cnbc:<url>``。"""
    parts = [part for part in urlsplit(url).path.split("/") if part]
    if len(parts) >= 5 and parts[0] == "video":
        _, year, month, day, slug = parts[:5]
        base = re.sub(r"\.html$", "", slug, flags=re.IGNORECASE)
        if base:
            return f"cnbc:{year}{month}{day}:{base}"
    return f"cnbc:{url}"


def _parse_cnbc_timestamp(value: str) -> Optional[datetime]:
    # CNBC 的时区偏移形如 +0000，补全冒号后再解析
    fixed = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", value.strip())
    try:
        parsed = datetime.fromisoformat(fixed.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _strip_query(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _noon_utc(iso_date: str) -> datetime:
    day = parse_iso_date(iso_date)
    return datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc)


class CnbcVideoProvider:
    """CNBC 视频源：先抓列表页提取视频链接，再并发读取每个页面的 meta 信息。"""

    def __init__(
        self,
        list_timeout: float = 10.0,
        meta_timeout: float = 2.5,
        max_urls: int = 60,
        concurrency: int = 4,
    ) -> None:
        self.list_timeout = list_timeout
        self.meta_timeout = meta_timeout
        self.max_urls = max_urls
        self.concurrency = concurrency

    def fetch_latest_video_urls(self) -> List[str]:
        html = fetch_text(CNBC_LATEST_VIDEO_URL, self.list_timeout)
        matches = _VIDEO_URL.findall(html)
        if not matches:
            raise ProviderError(f"No video URLs found at {CNBC_LATEST_VIDEO_URL}")
        urls: List[str] = []
        for url in matches:
            cleaned = _strip_query(url)
            if cleaned not in urls:
                urls.append(cleaned)
        return urls

    async def fetch_recent_articles(self, as_of_date: str, since: Optional[datetime] = None) -> List[StoredVideoArticle]:
        fetched_at = utc_now_iso()
        async with rate_limiter.limit(PROVIDER):
            urls = await asyncio.to_thread(self.fetch_latest_video_urls)
        urls = urls[: max(1, self.max_urls)]

        if since is not None:
            since_date = since.astimezone(timezone.utc).date().isoformat()
            urls = [url for url in urls if (parse_video_url_date(url) or since_date) >= since_date]

        async def _load(url: str) -> Optional[StoredVideoArticle]:
            try:
                async with rate_limiter.limit(PROVIDER):
                    meta = await asyncio.to_thread(fetch_article_meta, url, self.meta_timeout)
            except ProviderError as exc:
                logger.warning("读取视频页面失败 %s: %s", url, exc)
                return None
            if not meta.title:
                return None

            published = _parse_cnbc_timestamp(meta.published_time) if meta.published_time else None
            if published is None:
                published = _noon_utc(parse_video_url_date(url) or as_of_date)
            if since is not None and published <= since:
                return None

            return StoredVideoArticle(
                id=build_video_id(url),
                title=meta.title,
                url=url,
                publisher=PUBLISHER,
                publishedAt=published.isoformat().replace("+00:00", "Z"),
                relatedTickers=[],
                topic=infer_news_topic(meta.title, meta.keywords, meta.tags),
                hype=score_news_hype(meta.title),
                mainIdea=build_news_main_idea(meta.title),
                summary=build_news_summary(meta.title, PUBLISHER, meta.description, []),
                provider=PROVIDER,
                fetchedAt=fetched_at,
                asOfDate=as_of_date,
                symbol=None,
            )

        loaded = await map_with_concurrency(urls, self.concurrency, _load)
        articles = [item for item in loaded if item is not None]
        articles.sort(key=lambda item: item.publishedAt, reverse=True)
        logger.info("CNBC 视频：%s 个链接，保留 %s 条", len(urls), len(articles))
        return articles
