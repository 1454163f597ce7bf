"""
运行参数集中配置。

所有参数均可通过环境变量（或 .env）覆盖，未设置时使用默认值，
与限流器、存储层、调度器共享同一份解析逻辑。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    content_dir: Path = Path("content")
    config_dir: Path = Path("config")
    concurrency: int = 4
    timezone: str = "America/New_York"
    fetch_timeout: float = 30.0
    news_timeout: float = 10.0
    lock_timeout: float = 30.0
    lock_retry_interval: float = 0.05
    report_hour: int = 17
    report_minute: int = 30

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            content_dir=Path(os.getenv("CONTENT_DIR", "content")),
            config_dir=Path(os.getenv("MARKET_CONFIG_DIR", "config")),
            concurrency=max(1, _parse_int("MARKET_CONCURRENCY", 4)),
            timezone=os.getenv("MARKET_TIMEZONE", "America/New_York"),
            fetch_timeout=max(1.0, _parse_float("MARKET_FETCH_TIMEOUT", 30.0)),
            news_timeout=max(1.0, _parse_float("MARKET_NEWS_TIMEOUT", 10.0)),
            lock_timeout=max(0.1, _parse_float("MARKET_LOCK_TIMEOUT", 30.0)),
            lock_retry_interval=max(0.001, _parse_float("MARKET_LOCK_RETRY_INTERVAL", 0.05)),
            report_hour=_parse_int("MARKET_REPORT_HOUR", 17),
            report_minute=_parse_int("MARKET_REPORT_MINUTE", 30),
        )
