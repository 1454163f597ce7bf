from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import pytest

from datahub.config import DEFAULT_ANALYSIS_CONFIG, AnalysisConfig, parse_analysis_config
from datahub.models import Bar, RawSeries
from datahub.storage import SnapshotStore

START = datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc)


def ts(index: int, step: timedelta = timedelta(days=1), start: datetime = START) -> str:
    return (start + step * index).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def make_bars(
    closes: Sequence[float],
    step: timedelta = timedelta(days=1),
    start: datetime = START,
    volume: float = 1_000.0,
    offset: int = 0,
) -> List[Bar]:
    """开盘 = 收盘 - 1，最高 = 收盘，最低 = 开盘，真实波幅恒为 1。"""
    return [
        Bar(
            timestamp=ts(idx + offset, step, start),
            open=close - 1,
            high=close,
            low=close - 1,
            close=close,
            volume=volume,
        )
        for idx, close in enumerate(closes)
    ]


def make_series(
    symbol: str = "AAPL",
    interval: str = "1d",
    bars: Optional[List[Bar]] = None,
    provider: str = "fake",
) -> RawSeries:
    return RawSeries(
        symbol=symbol,
        interval=interval,
        provider=provider,
        fetchedAt="2024-03-01T00:00:00Z",
        bars=bars if bars is not None else make_bars([100, 101, 102]),
    )


@pytest.fixture
def store(tmp_path) -> SnapshotStore:
    return SnapshotStore(base_dir=tmp_path / "content", lock_timeout=0.3, lock_retry_interval=0.01)


@pytest.fixture
def analysis_config() -> AnalysisConfig:
    return parse_analysis_config(DEFAULT_ANALYSIS_CONFIG)


@pytest.fixture
def daily_only_config() -> AnalysisConfig:
    """只分析日线，并且只保留 RSI 阈值信号。

    线性价格序列上 MACD 与信号线在数值上相等，交叉判断只取决于浮点舍入。
    """
    payload = dict(DEFAULT_ANALYSIS_CONFIG)
    payload["intervals"] = ["1d"]
    payload["signals"] = [s for s in DEFAULT_ANALYSIS_CONFIG["signals"] if s["id"].startswith("rsi-")]
    return parse_analysis_config(payload)


@pytest.fixture
def rising_bars() -> List[Bar]:
    return make_bars([100 + i for i in range(60)])
