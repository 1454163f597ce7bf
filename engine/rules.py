"""将信号与趋势转换为交易方向和交易计划的规则。"""

from __future__ import annotations

import math
from typing import List, Optional

from datahub.models import AnalyzedSeries, TradePlan, TradeSide

# 按优先级排列：先看 MACD 交叉，再看 RSI 极值
SIGNAL_SIDES: List[tuple[str, TradeSide]] = [
    ("macd-bull-cross", "buy"),
    ("macd-bear-cross", "sell"),
    ("rsi-oversold", "buy"),
    ("rsi-overbought", "sell"),
]

STOP_LOOKBACK_BARS = 20
STOP_BUFFER_PCT = 0.001
MIN_RISK_PCT = 0.002
FALLBACK_STOP_PCT = 0.015
TARGET_MULTIPLES = (2, 3)


def last_value(series: AnalyzedSeries, indicator_id: str) -> Optional[float]:
    values = series.scalar(indicator_id)
    index = len(series.bars) - 1
    if values is None or index < 0 or index >= len(values):
        return None
    value = values[index]
    return value if value is not None and math.isfinite(value) else None


def last_close(series: AnalyzedSeries) -> Optional[float]:
    return series.bars[-1].close if series.bars else None


def infer_side_from_signals(series: AnalyzedSeries) -> Optional[TradeSide]:
    for signal_id, side in SIGNAL_SIDES:
        if series.is_active(signal_id):
            return side
    return None


def infer_side_from_trend(series: AnalyzedSeries) -> Optional[TradeSide]:
    """收盘价、EMA20、SMA20 依次排列时给出趋势方向。"""
    close = last_close(series)
    ema20 = last_value(series, "ema20")
    sma20 = last_value(series, "sma20")
    if close is None or ema20 is None or sma20 is None:
        return None
    if close > ema20 > sma20:
        return "buy"
    if close < ema20 < sma20:
        return "sell"
    return None


def clamp_to_valid_stop(entry: float, side: TradeSide, stop: float) -> float:
    """止损在错误一侧或风险不足入场价 0.2% 时，退回固定 1.5% 止损。"""
    if side == "buy":
        if not stop < entry or (entry - stop) / entry < MIN_RISK_PCT:
            return entry * (1 - FALLBACK_STOP_PCT)
        return stop
    if not stop > entry or (stop - entry) / entry < MIN_RISK_PCT:
        return entry * (1 + FALLBACK_STOP_PCT)
    return stop


def build_trade_plan(short: AnalyzedSeries, side: TradeSide, atr_1d: Optional[float] = None) -> TradePlan:
    if not short.bars:
        raise ValueError(f"Missing bars for {short.symbol} {short.interval}")
    entry = short.bars[-1].close
    recent = short.bars[-STOP_LOOKBACK_BARS:]
    buffer = entry * STOP_BUFFER_PCT

    if side == "buy":
        stop = min(bar.low for bar in recent) - buffer
    else:
        stop = max(bar.high for bar in recent) + buffer
    stop = clamp_to_valid_stop(entry, side, stop)

    risk = abs(entry - stop)
    direction = 1 if side == "buy" else -1
    volatility = atr_1d if atr_1d is not None and math.isfinite(atr_1d) and atr_1d > 0 else 0.0
    targets = [entry + direction * max(k * risk, k * volatility) for k in TARGET_MULTIPLES]
    return TradePlan(side=side, entry=entry, stop=stop, targets=targets)
