"""Indicator computation utilities.

所有函数输入 / 输出都是与 K 线等长的可空数值序列：回看不足或数据缺失的
位置为 ``None``，不会抛弃或补齐下标，便于和 K 线按位置对齐。
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .models import Bar, ChannelSeries, MacdSeries, NumberSeries, SqueezeState, TtmSqueezeSeries


def _is_finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def _check_period(name: str, period: int) -> None:
    if period <= 0:
        raise ValueError(f"{name} period must be > 0, got {period}")


def _to_frame_series(values: Sequence[Optional[float]]) -> pd.Series:
    return pd.Series([np.nan if v is None else v for v in values], dtype="float64")


def _to_list(series: pd.Series) -> NumberSeries:
    return [float(v) if np.isfinite(v) else None for v in series.to_numpy()]


def closes(bars: Sequence[Bar]) -> NumberSeries:
    return [bar.close if math.isfinite(bar.close) else None for bar in bars]


def sma(values: Sequence[Optional[float]], period: int) -> NumberSeries:
    """简单移动平均；窗口内任一值缺失则该位置为 None。"""
    _check_period("SMA", period)
    rolled = _to_frame_series(values).rolling(window=period, min_periods=period).mean()
    return _to_list(rolled)


def stdev(values: Sequence[Optional[float]], period: int) -> NumberSeries:
    """滚动总体标准差（ddof=0）。"""
    _check_period("STDEV", period)
    rolled = _to_frame_series(values).rolling(window=period, min_periods=period).std(ddof=0)
    return _to_list(rolled)


def ema(values: Sequence[Optional[float]], period: int) -> NumberSeries:
    """以首个完整 SMA 为种子的 EMA，种子之后遇到缺失值沿用上一值。"""
    _check_period("EMA", period)
    out: NumberSeries = [None] * len(values)
    k = 2 / (period + 1)
    seed = sma(values, period)

    prev: Optional[float] = None
    for idx, value in enumerate(values):
        if prev is None:
            if seed[idx] is not None:
                prev = seed[idx]
                out[idx] = prev
            continue
        if not _is_finite(value):
            out[idx] = prev
            continue
        prev = (value - prev) * k + prev
        out[idx] = prev
    return out


def rsi(values: Sequence[Optional[float]], period: int) -> NumberSeries:
    """Wilder RSI。

    前 ``period`` 个有效涨跌幅取均值作为种子，种子所在下标不输出；
    从下一个有效变化起按 Wilder 平滑递推并输出。平均跌幅为 0 时输出恰好 100。
    """
    _check_period("RSI", period)
    out: NumberSeries = [None] * len(values)
    avg_gain: Optional[float] = None
    avg_loss: Optional[float] = None
    gain_sum = 0.0
    loss_sum = 0.0
    seen = 0

    for idx in range(1, len(values)):
        prev, curr = values[idx - 1], values[idx]
        if not (_is_finite(prev) and _is_finite(curr)):
            continue
        change = curr - prev
        gain = max(change, 0.0)
        loss = max(-change, 0.0)

        if avg_gain is None or avg_loss is None:
            gain_sum += gain
            loss_sum += loss
            seen += 1
            if seen < period:
                continue
            avg_gain = gain_sum / period
            avg_loss = loss_sum / period
            continue

        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

        if avg_loss == 0:
            out[idx] = 100.0
        else:
            out[idx] = 100 - 100 / (1 + avg_gain / avg_loss)
    return out


def macd(values: Sequence[Optional[float]], fast_period: int, slow_period: int, signal_period: int) -> MacdSeries:
    if fast_period <= 0 or slow_period <= 0 or signal_period <= 0:
        raise ValueError("MACD periods must all be > 0")
    if fast_period >= slow_period:
        raise ValueError(f"MACD fast period must be < slow period ({fast_period} vs {slow_period})")

    fast = ema(values, fast_period)
    slow = ema(values, slow_period)
    line: NumberSeries = [f - s if f is not None and s is not None else None for f, s in zip(fast, slow)]
    signal = ema(line, signal_period)
    histogram: NumberSeries = [m - s if m is not None and s is not None else None for m, s in zip(line, signal)]
    return MacdSeries(macd=line, signal=signal, histogram=histogram)


def true_range(bars: Sequence[Bar]) -> NumberSeries:
    out: NumberSeries = []
    for idx, bar in enumerate(bars):
        if idx == 0:
            out.append(bar.high - bar.low)
            continue
        prev_close = bars[idx - 1].close
        out.append(max(bar.high - bar.low, abs(bar.high - prev_close), abs(bar.low - prev_close)))
    return out


def atr(bars: Sequence[Bar], period: int) -> NumberSeries:
    """Wilder ATR：前 ``period`` 个真实波幅的均值为种子，之后平滑递推。"""
    _check_period("ATR", period)
    tr = true_range(bars)
    out: NumberSeries = [None] * len(bars)
    if len(tr) < period:
        return out

    value = sum(tr[:period]) / period
    out[period - 1] = value
    for idx in range(period, len(tr)):
        value = (value * (period - 1) + tr[idx]) / period
        out[idx] = value
    return out


def bollinger_bands(values: Sequence[Optional[float]], period: int, stdev_mult: float = 2.0) -> ChannelSeries:
    middle = sma(values, period)
    dev = stdev(values, period)
    upper: NumberSeries = []
    lower: NumberSeries = []
    for mid, sd in zip(middle, dev):
        if mid is None or sd is None:
            upper.append(None)
            lower.append(None)
        else:
            upper.append(mid + stdev_mult * sd)
            lower.append(mid - stdev_mult * sd)
    return ChannelSeries(upper=upper, middle=middle, lower=lower)


def keltner_channels(bars: Sequence[Bar], period: int, atr_mult: float = 1.5) -> ChannelSeries:
    middle = ema(closes(bars), period)
    ranges = atr(bars, period)
    upper: NumberSeries = []
    lower: NumberSeries = []
    for mid, width in zip(middle, ranges):
        if mid is None or width is None:
            upper.append(None)
            lower.append(None)
        else:
            upper.append(mid + atr_mult * width)
            lower.append(mid - atr_mult * width)
    return ChannelSeries(upper=upper, middle=middle, lower=lower)


def _linreg_last(window: np.ndarray) -> float:
    """窗口线性回归在最后一个点上的拟合值。"""
    x = np.arange(len(window), dtype="float64")
    slope, intercept = np.polyfit(x, window, 1)
    return float(intercept + slope * x[-1])


def squeeze_states(squeeze_on: Sequence[Optional[bool]], squeeze_off: Sequence[Optional[bool]]) -> List[Optional[SqueezeState]]:
    states: List[Optional[SqueezeState]] = []
    for on, off in zip(squeeze_on, squeeze_off):
        if on is None or off is None:
            states.append(None)
        elif on:
            states.append("on")
        elif off:
            states.append("off")
        else:
            states.append("neutral")
    return states


def ttm_squeeze(
    bars: Sequence[Bar],
    period: int = 20,
    bb_mult: float = 2.0,
    kc_mult: float = 1.5,
) -> TtmSqueezeSeries:
    """TTM Squeeze：布林带完全位于肯特纳通道内为 on，完全位于外侧为 off。"""
    _check_period("TTM squeeze", period)
    close = closes(bars)
    bollinger = bollinger_bands(close, period, bb_mult)
    keltner = keltner_channels(bars, period, kc_mult)

    squeeze_on: List[Optional[bool]] = []
    squeeze_off: List[Optional[bool]] = []
    for bb_up, bb_lo, kc_up, kc_lo in zip(bollinger.upper, bollinger.lower, keltner.upper, keltner.lower):
        if bb_up is None or bb_lo is None or kc_up is None or kc_lo is None:
            squeeze_on.append(None)
            squeeze_off.append(None)
            continue
        squeeze_on.append(bb_lo > kc_lo and bb_up < kc_up)
        squeeze_off.append(bb_lo < kc_lo and bb_up > kc_up)

    frame = pd.DataFrame(
        {
            "high": [bar.high for bar in bars],
            "low": [bar.low for bar in bars],
            "close": _to_frame_series(close),
        }
    )
    highest = frame["high"].rolling(period, min_periods=period).max()
    lowest = frame["low"].rolling(period, min_periods=period).min()
    mean_close = frame["close"].rolling(period, min_periods=period).mean()
    delta = frame["close"] - ((highest + lowest) / 2 + mean_close) / 2
    momentum = delta.rolling(period, min_periods=period).apply(_linreg_last, raw=True)

    return TtmSqueezeSeries(
        bollinger=bollinger,
        keltner=keltner,
        squeezeOn=squeeze_on,
        squeezeOff=squeeze_off,
        squeezeState=squeeze_states(squeeze_on, squeeze_off),
        momentum=_to_list(momentum),
    )
