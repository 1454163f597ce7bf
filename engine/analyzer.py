"""Indicator computation per analysis config and latest-bar signal evaluation."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from datahub import indicators as ind
from datahub.config import (
    AnalysisConfig,
    AtrDefinition,
    BollingerDefinition,
    CrossCondition,
    EmaDefinition,
    IndicatorDefinition,
    KeltnerDefinition,
    MacdDefinition,
    RsiDefinition,
    SignalDefinition,
    SmaDefinition,
    StdevDefinition,
    ThresholdCondition,
    TtmSqueezeDefinition,
)
from datahub.errors import ConfigError
from datahub.models import (
    COMPOSITE_FIELDS,
    AnalyzedSeries,
    Bar,
    IndicatorSeries,
    NumberSeries,
    RawSeries,
    SignalHit,
)


def compute_indicator(bars: Sequence[Bar], definition: IndicatorDefinition) -> IndicatorSeries:
    close = ind.closes(bars)
    if isinstance(definition, SmaDefinition):
        return ind.sma(close, definition.period)
    if isinstance(definition, EmaDefinition):
        return ind.ema(close, definition.period)
    if isinstance(definition, RsiDefinition):
        return ind.rsi(close, definition.period)
    if isinstance(definition, StdevDefinition):
        return ind.stdev(close, definition.period)
    if isinstance(definition, AtrDefinition):
        return ind.atr(bars, definition.period)
    if isinstance(definition, MacdDefinition):
        return ind.macd(close, definition.fastPeriod, definition.slowPeriod, definition.signalPeriod)
    if isinstance(definition, BollingerDefinition):
        return ind.bollinger_bands(close, definition.period, definition.stdevMult)
    if isinstance(definition, KeltnerDefinition):
        return ind.keltner_channels(bars, definition.period, definition.atrMult)
    if isinstance(definition, TtmSqueezeDefinition):
        return ind.ttm_squeeze(bars, definition.period, definition.bbMult, definition.kcMult)
    raise ConfigError(f"Unsupported indicator definition: {definition!r}")


def compute_indicators(bars: Sequence[Bar], definitions: Sequence[IndicatorDefinition]) -> Dict[str, IndicatorSeries]:
    return {definition.id: compute_indicator(bars, definition) for definition in definitions}


def _value_at(values: NumberSeries, index: int) -> Optional[float]:
    if index < 0 or index >= len(values):
        return None
    value = values[index]
    return value if value is not None and math.isfinite(value) else None


def _composite_field(series: IndicatorSeries, signal_id: str, field: str) -> NumberSeries:
    kind = getattr(series, "kind", None)
    if isinstance(series, list) or kind not in COMPOSITE_FIELDS:
        raise ConfigError(f"Signal {signal_id} expected a composite indicator, got a scalar series")
    if field not in COMPOSITE_FIELDS[kind]:
        raise ConfigError(f"Signal {signal_id} references unknown field {field!r} of a {kind} indicator")
    return getattr(series, field)


def evaluate_signal(definition: SignalDefinition, indicators: Dict[str, IndicatorSeries], index: int) -> bool:
    """在下标 ``index`` 处评估单个信号；缺失值视为未触发，形态不符直接报错。"""
    when = definition.when
    if when.indicator not in indicators:
        raise ConfigError(f"Signal {definition.id} references missing indicator {when.indicator}")
    series = indicators[when.indicator]

    if isinstance(when, ThresholdCondition):
        if not isinstance(series, list):
            raise ConfigError(f"Signal {definition.id} expected a scalar series in indicators.{when.indicator}")
        current = _value_at(series, index)
        if current is None:
            return False
        return current < when.value if when.op == "lt" else current > when.value

    if isinstance(when, CrossCondition):
        left = _composite_field(series, definition.id, when.left)
        right = _composite_field(series, definition.id, when.right)
        prev_left, prev_right = _value_at(left, index - 1), _value_at(right, index - 1)
        curr_left, curr_right = _value_at(left, index), _value_at(right, index)
        if None in (prev_left, prev_right, curr_left, curr_right):
            return False
        if when.op == "crossAbove":
            return prev_left <= prev_right and curr_left > curr_right
        return prev_left >= prev_right and curr_left < curr_right

    raise ConfigError(f"Unsupported signal condition for {definition.id}")


def compute_signals(bars: Sequence[Bar], config: AnalysisConfig, indicators: Dict[str, IndicatorSeries]) -> List[SignalHit]:
    index = len(bars) - 1
    if index < 1:
        return [SignalHit(id=s.id, label=s.label, active=False) for s in config.signals]
    return [
        SignalHit(id=s.id, label=s.label, active=evaluate_signal(s, indicators, index))
        for s in config.signals
    ]


def analyze_series(raw: RawSeries, config: AnalysisConfig, analyzed_at: Optional[str] = None) -> AnalyzedSeries:
    indicators = compute_indicators(raw.bars, config.indicators)
    signals = compute_signals(raw.bars, config, indicators)
    return AnalyzedSeries(
        symbol=raw.symbol,
        interval=raw.interval,
        analyzedAt=analyzed_at or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        bars=list(raw.bars),
        indicators=indicators,
        signals=signals,
    )
