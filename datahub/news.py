"""
新闻 / 视频条目的文本处理工具：网页 meta 解析、主题推断、标题“炒作度”打分、
摘要拼装。解析是尽力而为的正则实现，失败时调用方退回到仅标题的摘要。
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import requests
from requests import RequestException

from .dates import parse_iso_date
from .errors import ProviderError

logger = logging.getLogger(__name__)

MAIN_IDEA_MAX_WORDS = 50
SUMMARY_MAX_WORDS = 500
SUMMARY_TAIL_BUDGET_WORDS = 30
DEFAULT_META_TIMEOUT = 2.5
USER_AGENT = "stockai-market-technicals/1.0"

_HTML_SCAN_LIMIT = 250_000

_TOPIC_RULES = [
    (re.compile(r"\b(bitcoin|crypto|ethereum|btc|etf)\b"), "bitcoin"),
    (re.compile(r"\b(inflation|cpi|pce)\b"), "inflation"),
    (re.compile(r"\b(rate cut|fed|powell|interest rate|fomc)\b"), "rate cut"),
    (re.compile(r"\b(ai|artificial intelligence|openai|chatgpt|nvidia)\b"), "ai"),
    (re.compile(r"\b(oil|crude|opec)\b"), "oil"),
    (re.compile(r"\b(gold|silver|platinum|palladium)\b"), "gold"),
    (re.compile(r"\b(china|beijing|xi jinping)\b"), "china"),
    (re.compile(r"\b(tariff|trade war)\b"), "tariff"),
    (re.compile(r"\b(earnings|guidance|quarter|q\d)\b"), "earnings"),
]

_GENERIC_TAGS = {"cnbc", "videos", "top videos", "cnbc tv", "pro", "investing club", "watch now", "video"}

_HYPE_BIG_WORDS = re.compile(r"\b(trillion|billion|record|all-time|breakout|bubble|crash|plunge|surge|soar|slam)\b")
_HYPE_URGENT_WORDS = re.compile(r"\b(urgent|breaking|stunning|huge|massive|shocking)\b")
_HYPE_EARNINGS_WORDS = re.compile(r"\b(beat|miss|guidance)\b")


@dataclass
class HtmlMeta:
    title: Optional[str] = None
    description: Optional[str] = None
    published_time: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", html_lib.unescape(text)).strip()


def truncate_words(text: str, max_words: int) -> str:
    trimmed = normalize_text(text)
    words = trimmed.split(" ")
    if len(words) <= max_words:
        return trimmed
    truncated = re.sub(r"[\s.,;:]+$", "", " ".join(words[:max_words]))
    return f"{truncated}…"


def _split_meta_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    out: List[str] = []
    seen = set()
    for item in value.split(","):
        cleaned = normalize_text(item)
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            out.append(cleaned)
    return out


def parse_html_meta(html: str) -> HtmlMeta:
    source = html[:_HTML_SCAN_LIMIT]
    metas = {}
    for tag in re.findall(r"<meta\b[^>]*>", source, flags=re.IGNORECASE):
        content = re.search(r"\bcontent\s*=\s*[\"']([^\"']+)[\"']", tag, flags=re.IGNORECASE)
        key = re.search(r"\bproperty\s*=\s*[\"']([^\"']+)[\"']", tag, flags=re.IGNORECASE) or re.search(
            r"\bname\s*=\s*[\"']([^\"']+)[\"']", tag, flags=re.IGNORECASE
        )
        if content and key:
            metas.setdefault(key.group(1).lower(), content.group(1))

    title = metas.get("og:title") or metas.get("twitter:title")
    if title is None:
        match = re.search(r"<title\b[^>]*>([^<]+)</title>", source, flags=re.IGNORECASE)
        title = match.group(1) if match else None
    description = metas.get("og:description") or metas.get("twitter:description") or metas.get("description")
    published = metas.get("article:published_time") or metas.get("parsely-pub-date")

    return HtmlMeta(
        title=normalize_text(title) if title else None,
        description=normalize_text(description) if description else None,
        published_time=normalize_text(published) if published else None,
        keywords=_split_meta_list(metas.get("news_keywords") or metas.get("keywords")),
        tags=_split_meta_list(metas.get("parsely-tags")),
    )


def fetch_text(url: str, timeout: float) -> str:
    if timeout <= 0:
        raise ValueError(f"timeout must be > 0, got {timeout} for {url}")
    try:
        resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
        resp.raise_for_status()
    except RequestException as exc:
        raise ProviderError(f"Request failed for {url}: {exc}") from exc
    return resp.text


def fetch_article_meta(url: str, timeout: float = DEFAULT_META_TIMEOUT) -> HtmlMeta:
    return parse_html_meta(fetch_text(url, timeout))


def _topic_from_tags(tags: Iterable[str]) -> Optional[str]:
    for raw in tags:
        normalized = re.sub(r"\s*\([^)]*\)\s*", " ", raw)
        normalized = re.sub(r"\s*-\s*", " ", normalized)
        normalized = re.sub(r"\s+", " ", normalized).strip().lower()
        if not normalized or normalized in _GENERIC_TAGS:
            continue
        words = re.sub(r"[^a-z0-9\s-]+", " ", normalized).split()
        if words:
            return " ".join(words[:2])
    return None


def infer_news_topic(title: str, keywords: Optional[List[str]] = None, tags: Optional[List[str]] = None) -> Optional[str]:
    """按关键词规则推断主题，其次回退到页面标签 / 关键词。"""
    haystack = " ".join([title, *(keywords or []), *(tags or [])]).lower()
    for pattern, topic in _TOPIC_RULES:
        if pattern.search(haystack):
            return topic
    return _topic_from_tags(tags or []) or _topic_from_tags(keywords or [])


def score_news_hype(title: str) -> int:
    text = title.strip()
    lower = text.lower()
    score = 0
    score += min(20, text.count("!") * 10)
    score += min(15, text.count("$") * 5)
    score += 20 if _HYPE_BIG_WORDS.search(lower) else 0
    score += 15 if _HYPE_URGENT_WORDS.search(lower) else 0
    score += 10 if _HYPE_EARNINGS_WORDS.search(lower) else 0

    letters = re.sub(r"[^a-zA-Z]", "", text)
    if len(letters) >= 10:
        ratio = sum(1 for ch in letters if ch.isupper()) / len(letters)
        if ratio >= 0.5:
            score += 20
        elif ratio >= 0.3:
            score += 10
    return max(0, min(100, score))


def build_news_main_idea(title: str) -> str:
    return truncate_words(title, MAIN_IDEA_MAX_WORDS)


def build_news_summary(
    title: str,
    publisher: str,
    description: Optional[str] = None,
    related_tickers: Optional[List[str]] = None,
) -> str:
    base = f"{publisher}: {title.rstrip('.')}."
    if description:
        base = f"{base} {description}"
    summary = truncate_words(base, SUMMARY_MAX_WORDS - SUMMARY_TAIL_BUDGET_WORDS)
    if related_tickers:
        summary = f"{summary} Related tickers mentioned: {', '.join(related_tickers)}."
    return truncate_words(summary, SUMMARY_MAX_WORDS)


def is_recent_news(as_of_date: str, published_at: datetime, max_age_days: int) -> bool:
    """发布时间是否落在 ``as_of_date`` 往前 ``max_age_days`` 个 UTC 自然日内（含当天）。"""
    days = max(1, int(max_age_days))
    day = parse_iso_date(as_of_date)
    end = datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(days=1)
    start = end - timedelta(days=days)
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    return start <= published_at < end


def clamp_related_tickers(tickers: Optional[Iterable[str]], symbol: str) -> List[str]:
    out = {item.strip().upper() for item in tickers or [] if isinstance(item, str) and item.strip()}
    out.discard(symbol.upper())
    return sorted(out)
