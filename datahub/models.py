"""
行情管线的持久化数据模型。

所有写入磁盘的快照（原始 K 线、新闻、分析结果、日报）都通过这里的
pydantic 模型序列化与校验，读取时任何结构问题都会被视为数据完整性错误。
"""

from __future__ import annotations

import math
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .dates import parse_timestamp

MarketInterval = Literal["1m", "5m", "15m", "1h", "1d"]
MARKET_INTERVALS: tuple[str, ...] = ("1m", "5m", "15m", "1h", "1d")

TradeSide = Literal["buy", "sell"]
PickBasis = Literal["signal", "trend"]
SqueezeState = Literal["on", "off", "neutral"]
RiskTone = Literal["risk-on", "risk-off", "mixed"]

NumberSeries = List[Optional[float]]

# Hard caps for the report partitions.
REPORT_MAX_PICKS = 5
REPORT_MAX_WATCHLIST = 8


def interval_rank(interval: str) -> int:
    return MARKET_INTERVALS.index(interval)


class Bar(BaseModel):
    """单根 OHLCV K 线。"""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    open: float
    high: float
    low: float
    close: float
    volume: float

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    @field_validator("open", "high", "low", "close", "volume")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("OHLCV fields must be finite")
        return value


class RawSeries(BaseModel):
    symbol: str
    interval: MarketInterval
    provider: str
    fetchedAt: str
    bars: List[Bar] = Field(default_factory=list)


class NewsArticle(BaseModel):
    id: str
    title: str
    url: str
    thumbnailUrl: Optional[str] = None
    publisher: str
    publishedAt: str
    relatedTickers: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    hype: Optional[int] = None
    mainIdea: str
    summary: str


class NewsSnapshot(BaseModel):
    symbol: str
    provider: str
    fetchedAt: str
    asOfDate: str
    articles: List[NewsArticle] = Field(default_factory=list)


class StoredVideoArticle(NewsArticle):
    """视频快照在磁盘上的单条记录（扁平 JSON 数组中的元素）。"""

    provider: str
    fetchedAt: str
    asOfDate: str
    symbol: Optional[str] = None


class VideoArticle(NewsArticle):
    """读取后的视频条目，provider 由文件路径隐含。"""

    fetchedAt: str
    asOfDate: str
    symbol: Optional[str] = None


class SignalHit(BaseModel):
    id: str
    label: str
    active: bool


class MacdSeries(BaseModel):
    kind: Literal["macd"] = "macd"
    macd: NumberSeries
    signal: NumberSeries
    histogram: NumberSeries


class ChannelSeries(BaseModel):
    """布林带与肯特纳通道共用的上 / 中 / 下轨结构。"""

    kind: Literal["channel"] = "channel"
    upper: NumberSeries
    middle: NumberSeries
    lower: NumberSeries


class TtmSqueezeSeries(BaseModel):
    kind: Literal["ttmSqueeze"] = "ttmSqueeze"
    bollinger: ChannelSeries
    keltner: ChannelSeries
    squeezeOn: List[Optional[bool]]
    squeezeOff: List[Optional[bool]]
    squeezeState: List[Optional[SqueezeState]]
    momentum: NumberSeries


CompositeSeries = Union[MacdSeries, ChannelSeries, TtmSqueezeSeries]
IndicatorSeries = Union[NumberSeries, MacdSeries, ChannelSeries, TtmSqueezeSeries]

COMPOSITE_FIELDS: Dict[str, tuple[str, ...]] = {
    "macd": ("macd", "signal", "histogram"),
    "channel": ("upper", "middle", "lower"),
    "ttmSqueeze": ("momentum",),
}


class AnalyzedSeries(BaseModel):
    symbol: str
    interval: MarketInterval
    analyzedAt: str
    bars: List[Bar]
    indicators: Dict[str, Union[MacdSeries, ChannelSeries, TtmSqueezeSeries, NumberSeries]]
    signals: List[SignalHit] = Field(default_factory=list)

    def scalar(self, indicator_id: str) -> Optional[NumberSeries]:
        value = self.indicators.get(indicator_id)
        return value if isinstance(value, list) else None

    def composite(self, indicator_id: str) -> Optional[CompositeSeries]:
        value = self.indicators.get(indicator_id)
        return None if value is None or isinstance(value, list) else value

    def active_labels(self) -> List[str]:
        return [hit.label for hit in self.signals if hit.active]

    def is_active(self, signal_id: str) -> bool:
        return any(hit.id == signal_id and hit.active for hit in self.signals)


class TradePlan(BaseModel):
    side: TradeSide
    entry: float
    stop: float
    targets: List[float]


class ReportPick(BaseModel):
    symbol: str
    basis: PickBasis
    score: int
    trade: TradePlan
    rationale: List[str] = Field(default_factory=list)
    signals: Dict[str, List[str]] = Field(default_factory=dict)
    atr14_1d: Optional[float] = None
    move1d: Optional[float] = None
    move1dAtr14: Optional[float] = None


class ReportIntervalSeries(BaseModel):
    symbol: str
    interval: MarketInterval
    t: List[int]
    open: List[float]
    high: List[float]
    low: List[float]
    close: List[float]
    volume: List[Optional[float]]
    sma20: NumberSeries
    ema20: NumberSeries
    rsi14: NumberSeries
    atr14: Optional[NumberSeries] = None
    bollinger20: Optional[ChannelSeries] = None
    keltner20: Optional[ChannelSeries] = None
    ttmSqueeze20: Optional[TtmSqueezeSeries] = None
    signals: List[SignalHit] = Field(default_factory=list)


class MostActiveEntry(BaseModel):
    symbol: str
    dollarVolume1d: float
    dollarVolume5d: float
    close: float
    change1d: Optional[float] = None
    change1dPct: Optional[float] = None
    atr14: Optional[float] = None
    change1dAtr14: Optional[float] = None
    trendBias1d: Optional[TradeSide] = None
    signals1d: List[str] = Field(default_factory=list)


class MostActive(BaseModel):
    byDollarVolume1d: List[MostActiveEntry] = Field(default_factory=list)
    byDollarVolume5d: List[MostActiveEntry] = Field(default_factory=list)


class SummarySentiment(BaseModel):
    tone: RiskTone
    lines: List[str] = Field(default_factory=list)


class ReportSummaries(BaseModel):
    veryShort: str
    mainIdea: str
    summary: str
    sentiment: Optional[SummarySentiment] = None


class MarketReport(BaseModel):
    date: str
    generatedAt: str
    symbols: List[str]
    intervals: List[MarketInterval]
    missingSymbols: List[str] = Field(default_factory=list)
    picks: List[ReportPick] = Field(default_factory=list)
    watchlist: List[ReportPick] = Field(default_factory=list)
    series: Dict[str, Dict[str, ReportIntervalSeries]] = Field(default_factory=dict)
    mostActive: Optional[MostActive] = None
    summaries: ReportSummaries


class HighlightTrade(BaseModel):
    side: TradeSide
    entry: float
    stop: float


class HighlightPick(BaseModel):
    symbol: str
    trade: HighlightTrade


class HighlightSummaries(BaseModel):
    veryShort: str
    mainIdea: str


class MarketReportHighlights(BaseModel):
    version: Literal["v2-highlights"] = "v2-highlights"
    date: str
    generatedAt: str
    picks: List[HighlightPick] = Field(default_factory=list)
    summaries: HighlightSummaries
