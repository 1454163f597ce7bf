"""Candidate scoring: direction, trade plan, heuristic score and rationale per symbol."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from datahub.models import AnalyzedSeries, PickBasis, ReportPick, TradeSide

from .rules import (
    build_trade_plan,
    infer_side_from_signals,
    infer_side_from_trend,
    last_close,
    last_value,
)

DAILY_INTERVAL = "1d"
RATIONALE_MAX_LABELS = 3
FALLBACK_RATIONALE = "Trend continuation setup (no explicit rule hit on the latest bar)."


@dataclass
class DailyMove:
    atr14: Optional[float] = None
    move: Optional[float] = None
    move_atr: Optional[float] = None


def daily_move(series: AnalyzedSeries) -> DailyMove:
    """最近一根日线的涨跌幅，以及以 ATR14 为单位的幅度。"""
    atr14 = last_value(series, "atr14")
    if atr14 is not None and atr14 <= 0:
        atr14 = None
    if len(series.bars) < 2:
        return DailyMove(atr14=atr14)
    move = series.bars[-1].close - series.bars[-2].close
    move_atr = move / atr14 if atr14 is not None else None
    return DailyMove(atr14=atr14, move=move, move_atr=move_atr)


def _trend_strength(series: AnalyzedSeries) -> float:
    close = last_close(series)
    ema20 = last_value(series, "ema20")
    if close is None or ema20 is None or close == 0:
        return 0.0
    return min(0.06, abs((close - ema20) / close))


def score_candidate(
    short: AnalyzedSeries,
    daily: AnalyzedSeries,
    side: TradeSide,
    basis: PickBasis,
    move: DailyMove,
) -> int:
    signal_short = infer_side_from_signals(short)
    signal_daily = infer_side_from_signals(daily)
    trend_short = infer_side_from_trend(short)
    trend_daily = infer_side_from_trend(daily)

    score = 3 * len(short.active_labels()) + 2 * len(daily.active_labels())
    if signal_short and signal_daily and signal_short == signal_daily:
        score += 4
    if basis == "signal":
        score += 3
    if trend_daily == side:
        score += 1
    if trend_short == side:
        score += 1
    if trend_daily and trend_short and trend_daily == trend_short:
        score += 1

    score += round(_trend_strength(short) * 1000)
    rsi14 = last_value(short, "rsi14")
    if rsi14 is not None:
        score += round(min(10, abs(rsi14 - 50) / 5))

    if move.move_atr is not None and math.isfinite(move.move_atr):
        magnitude = abs(move.move_atr)
        score += round(min(3, magnitude) * 2)
        if magnitude >= 2:
            score += 2
    return score


def build_rationale(
    short: AnalyzedSeries,
    daily: AnalyzedSeries,
    move: DailyMove,
) -> List[str]:
    rationale: List[str] = []
    if move.move is not None and move.move_atr is not None:
        rationale.append(f"1d move {move.move:+.2f} ({move.move_atr:+.1f} ATR14)")
    elif move.atr14 is not None:
        rationale.append(f"1d ATR14 {move.atr14:.2f}")

    intervals = [daily] if short is daily else [daily, short]
    for series in intervals:
        labels = series.active_labels()
        if labels:
            rationale.append(f"{series.interval} signals: {'; '.join(labels[:RATIONALE_MAX_LABELS])}")

    trend_daily = infer_side_from_trend(daily)
    if trend_daily:
        rationale.append(f"1d trend bias: {'bullish' if trend_daily == 'buy' else 'bearish'}")
    if not rationale:
        rationale.append(FALLBACK_RATIONALE)
    return rationale


def build_candidate(short: AnalyzedSeries, daily: AnalyzedSeries) -> Optional[ReportPick]:
    """方向依次取：短周期信号、日线信号、短周期趋势、日线趋势；都没有则排除。"""
    order = [short] if short is daily else [short, daily]
    side: Optional[TradeSide] = None
    basis: PickBasis = "signal"
    for series in order:
        side = infer_side_from_signals(series)
        if side:
            break
    if side is None:
        basis = "trend"
        for series in order:
            side = infer_side_from_trend(series)
            if side:
                break
    if side is None:
        return None

    move = daily_move(daily)
    signals: Dict[str, List[str]] = {short.interval: short.active_labels()}
    signals[daily.interval] = daily.active_labels()
    return ReportPick(
        symbol=short.symbol,
        basis=basis,
        score=score_candidate(short, daily, side, basis, move),
        trade=build_trade_plan(short, side, move.atr14),
        rationale=build_rationale(short, daily, move),
        signals=signals,
        atr14_1d=move.atr14,
        move1d=move.move,
        move1dAtr14=move.move_atr,
    )


def build_candidates(
    analyzed_by_symbol: Mapping[str, Mapping[str, AnalyzedSeries]],
    short_interval: str,
    daily_interval: str = DAILY_INTERVAL,
) -> List[ReportPick]:
    """为同时具备短周期与日线分析结果的标的生成候选，按得分降序、代码升序排列。"""
    candidates: List[ReportPick] = []
    for symbol in sorted(analyzed_by_symbol):
        by_interval = analyzed_by_symbol[symbol]
        short = by_interval.get(short_interval)
        daily = by_interval.get(daily_interval)
        if short is None or daily is None:
            continue
        candidate = build_candidate(short, daily)
        if candidate is not None:
            candidates.append(candidate)
    candidates.sort(key=lambda pick: (-pick.score, pick.symbol))
    return candidates
