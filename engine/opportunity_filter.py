"""机会筛选规则：把候选拆分为技术交易与观察名单。"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from datahub.models import REPORT_MAX_PICKS, REPORT_MAX_WATCHLIST, ReportPick

MIN_MOVE_ATR = 1.0


def is_technical_trade(candidate: ReportPick) -> bool:
    """有明确信号，且日内波动达到 1 个 ATR（无 ATR 数据时不做限制）。"""
    if candidate.basis != "signal":
        return False
    if candidate.atr14_1d is None or candidate.move1dAtr14 is None:
        return True
    return abs(candidate.move1dAtr14) >= MIN_MOVE_ATR


def partition(
    candidates: Sequence[ReportPick],
    max_picks: int = REPORT_MAX_PICKS,
    max_watchlist: int = REPORT_MAX_WATCHLIST,
) -> Tuple[List[ReportPick], List[ReportPick]]:
    ranked = sorted(candidates, key=lambda pick: (-pick.score, pick.symbol))
    picks = [c for c in ranked if is_technical_trade(c)][:max_picks]
    promoted = {pick.symbol for pick in picks}
    watchlist = [c for c in ranked if c.symbol not in promoted and not is_technical_trade(c)][:max_watchlist]
    return picks, watchlist
