"""日报构建与渲染：候选拆分、图表序列、成交额排行、叙述摘要、MDX 与 highlights。"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from datahub.dates import parse_timestamp
from datahub.errors import DataSufficiencyError
from datahub.models import (
    AnalyzedSeries,
    ChannelSeries,
    HighlightPick,
    HighlightSummaries,
    HighlightTrade,
    MarketReport,
    MarketReportHighlights,
    MostActive,
    MostActiveEntry,
    NumberSeries,
    ReportIntervalSeries,
    ReportPick,
    ReportSummaries,
    SummarySentiment,
    TtmSqueezeSeries,
    interval_rank,
)

from .opportunity_filter import partition
from .rules import infer_side_from_trend, last_value
from .scoring import DAILY_INTERVAL, build_candidates

REPORT_SERIES_MAX_POINTS = 220
MOST_ACTIVE_LIMIT = 10
VERY_SHORT_MAX_WORDS = 30
MAIN_IDEA_MAX_WORDS = 80
SUMMARY_MAX_WORDS = 500
REPORT_VERSION = "v2-highlights"


def short_interval_of(intervals: Iterable[str]) -> str:
    ordered = sorted(set(intervals), key=interval_rank)
    if not ordered:
        raise ValueError("At least one interval is required")
    return ordered[0]


def group_by_symbol(analyzed: Iterable[AnalyzedSeries]) -> Dict[str, Dict[str, AnalyzedSeries]]:
    grouped: Dict[str, Dict[str, AnalyzedSeries]] = {}
    for series in analyzed:
        grouped.setdefault(series.symbol, {})[series.interval] = series
    return grouped


# ---------------------------------------------------------------- chart data
def _slice(values: Optional[NumberSeries], start: int, count: int) -> NumberSeries:
    if values is None:
        return [None] * count
    out = list(values[start:start + count])
    return out + [None] * (count - len(out))


def _slice_channel(channel: Optional[ChannelSeries], start: int, count: int) -> Optional[ChannelSeries]:
    if channel is None:
        return None
    return ChannelSeries(
        upper=_slice(channel.upper, start, count),
        middle=_slice(channel.middle, start, count),
        lower=_slice(channel.lower, start, count),
    )


def to_report_series(analyzed: AnalyzedSeries, max_points: int = REPORT_SERIES_MAX_POINTS) -> ReportIntervalSeries:
    """截取最近 ``max_points`` 根 K 线及其指标，供前端直接绘图。"""
    start = max(0, len(analyzed.bars) - max_points)
    bars = analyzed.bars[start:]
    count = len(bars)

    def channel(indicator_id: str) -> Optional[ChannelSeries]:
        value = analyzed.composite(indicator_id)
        return _slice_channel(value, start, count) if isinstance(value, ChannelSeries) else None

    ttm = analyzed.composite("ttmSqueeze20")
    ttm_out: Optional[TtmSqueezeSeries] = None
    if isinstance(ttm, TtmSqueezeSeries):
        ttm_out = TtmSqueezeSeries(
            bollinger=_slice_channel(ttm.bollinger, start, count),
            keltner=_slice_channel(ttm.keltner, start, count),
            squeezeOn=list(ttm.squeezeOn[start:start + count]),
            squeezeOff=list(ttm.squeezeOff[start:start + count]),
            squeezeState=list(ttm.squeezeState[start:start + count]),
            momentum=_slice(ttm.momentum, start, count),
        )

    atr14 = analyzed.scalar("atr14")
    return ReportIntervalSeries(
        symbol=analyzed.symbol,
        interval=analyzed.interval,
        t=[int(parse_timestamp(bar.timestamp).timestamp()) for bar in bars],
        open=[bar.open for bar in bars],
        high=[bar.high for bar in bars],
        low=[bar.low for bar in bars],
        close=[bar.close for bar in bars],
        volume=[bar.volume for bar in bars],
        sma20=_slice(analyzed.scalar("sma20"), start, count),
        ema20=_slice(analyzed.scalar("ema20"), start, count),
        rsi14=_slice(analyzed.scalar("rsi14"), start, count),
        atr14=_slice(atr14, start, count) if atr14 is not None else None,
        bollinger20=channel("bollinger20"),
        keltner20=channel("keltner20"),
        ttmSqueeze20=ttm_out,
        signals=list(analyzed.signals),
    )


# --------------------------------------------------------------- most active
def _most_active_entry(series: AnalyzedSeries) -> Optional[MostActiveEntry]:
    if not series.bars:
        return None
    last = series.bars[-1]
    change = change_pct = change_atr = None
    if len(series.bars) >= 2:
        prev_close = series.bars[-2].close
        change = last.close - prev_close
        change_pct = change / prev_close * 100 if prev_close else None
    atr14 = last_value(series, "atr14")
    if change is not None and atr14:
        change_atr = change / atr14
    return MostActiveEntry(
        symbol=series.symbol,
        dollarVolume1d=last.close * last.volume,
        dollarVolume5d=sum(bar.close * bar.volume for bar in series.bars[-5:]),
        close=last.close,
        change1d=change,
        change1dPct=change_pct,
        atr14=atr14,
        change1dAtr14=change_atr,
        trendBias1d=infer_side_from_trend(series),
        signals1d=series.active_labels(),
    )


def build_most_active(
    analyzed_by_symbol: Mapping[str, Mapping[str, AnalyzedSeries]],
    daily_interval: str = DAILY_INTERVAL,
    limit: int = MOST_ACTIVE_LIMIT,
) -> Optional[MostActive]:
    entries = []
    for symbol in sorted(analyzed_by_symbol):
        daily = analyzed_by_symbol[symbol].get(daily_interval)
        entry = _most_active_entry(daily) if daily is not None else None
        if entry is not None:
            entries.append(entry)
    if not entries:
        return None
    return MostActive(
        byDollarVolume1d=sorted(entries, key=lambda e: (-e.dollarVolume1d, e.symbol))[:limit],
        byDollarVolume5d=sorted(entries, key=lambda e: (-e.dollarVolume5d, e.symbol))[:limit],
    )


# ----------------------------------------------------------------- summaries
def cap_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + " …"


def _format_list(values: Sequence[str], limit: int) -> str:
    if len(values) <= limit:
        return ", ".join(values)
    return ", ".join(values[:limit]) + ", …"


def format_dollars_compact(value: float) -> str:
    magnitude = abs(value)
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if magnitude >= threshold:
            return f"{value / threshold:.2f}{suffix}"
    return f"{value:.0f}"


def build_sentiment(
    picks: Sequence[ReportPick],
    watchlist: Sequence[ReportPick],
    missing_symbols: Sequence[str],
) -> SummarySentiment:
    candidates = list(picks) + list(watchlist)
    buys = sum(1 for c in candidates if c.trade.side == "buy")
    sells = len(candidates) - buys

    if buys and buys >= 2 * sells:
        tone = "risk-on"
    elif sells and sells >= 2 * buys:
        tone = "risk-off"
    else:
        tone = "mixed"

    lines: List[str] = []
    if candidates:
        lines.append(f"Directional setups: {buys} buy vs {sells} sell.")
    else:
        lines.append("No directional setups on the latest bar.")

    movers = [c for c in candidates if c.move1dAtr14 is not None and math.isfinite(c.move1dAtr14)]
    if movers:
        biggest = max(movers, key=lambda c: (abs(c.move1dAtr14), c.symbol))
        lines.append(f"Largest daily move: {biggest.symbol} {biggest.move1dAtr14:+.1f} ATR.")
    if missing_symbols:
        lines.append(f"{len(missing_symbols)} symbol(s) missing data.")
    return SummarySentiment(tone=tone, lines=lines[:3])


def build_summaries(
    date: str,
    picks: Sequence[ReportPick],
    watchlist: Sequence[ReportPick],
    series_by_symbol: Mapping[str, Mapping[str, ReportIntervalSeries]],
    missing_symbols: Sequence[str],
) -> ReportSummaries:
    hit_lines: List[str] = []
    for symbol in sorted(series_by_symbol):
        labels: List[str] = []
        for series in series_by_symbol[symbol].values():
            for hit in series.signals:
                if hit.active and hit.label not in labels:
                    labels.append(hit.label)
        if labels:
            hit_lines.append(f"{symbol}: {'; '.join(labels[:2])}")

    if picks:
        very_short = " | ".join(
            f"{p.symbol}: {p.trade.side.upper()} (stop {p.trade.stop:.2f})" for p in picks[:3]
        ) + (" | …" if len(picks) > 3 else "")
    elif hit_lines:
        very_short = " | ".join(hit_lines[:3]) + (" | …" if len(hit_lines) > 3 else "")
    else:
        very_short = "No major technical signals triggered in the configured rules."
        if missing_symbols:
            very_short += " (Some symbols missing.)"

    main_parts: List[str] = []
    if picks:
        main_parts.append(
            "Technical trades today: " + ", ".join(f"{p.symbol} {p.trade.side}" for p in picks) + "."
        )
    elif hit_lines:
        plural = "" if len(hit_lines) == 1 else "s"
        main_parts.append(f"The ruleset flagged signals in {len(hit_lines)} symbol{plural} on the latest bar.")
    else:
        main_parts.append(
            "Across the configured universe, the ruleset did not flag an RSI extreme or a MACD cross on the latest bar."
        )
    if watchlist:
        main_parts.append("Watchlist: " + _format_list([w.symbol for w in watchlist], 8) + ".")
    if missing_symbols:
        main_parts.append(
            f"Missing symbols from provider ({len(missing_symbols)}): {_format_list(list(missing_symbols), 8)}."
        )

    summary_parts = [f"Report date: {date}."]
    if picks:
        summary_parts.append("Technical trades:")
        for p in picks:
            summary_parts.append(
                f"- {p.symbol}: {p.trade.side.upper()} entry {p.trade.entry:.2f}, stop {p.trade.stop:.2f}"
            )
    if watchlist:
        summary_parts.append("Watchlist:")
        for w in watchlist:
            summary_parts.append(f"- {w.symbol}: {w.trade.side} ({w.basis}), score {w.score}")
    if not picks and not watchlist:
        if hit_lines:
            summary_parts.append("Top hits:")
            summary_parts.extend(f"- {line}" for line in hit_lines[:8])
        else:
            summary_parts.append("No active signals were detected on the latest bar.")
    if missing_symbols:
        summary_parts.append(
            f"Symbols skipped due to missing data ({len(missing_symbols)}): {_format_list(list(missing_symbols), 12)}."
        )

    return ReportSummaries(
        veryShort=cap_words(very_short, VERY_SHORT_MAX_WORDS),
        mainIdea=cap_words(" ".join(main_parts), MAIN_IDEA_MAX_WORDS),
        summary=cap_words("\n".join(summary_parts), SUMMARY_MAX_WORDS),
        sentiment=build_sentiment(picks, watchlist, missing_symbols),
    )


# -------------------------------------------------------------------- report
def build_market_report(
    date: str,
    symbols: Sequence[str],
    intervals: Sequence[str],
    analyzed: Sequence[AnalyzedSeries],
    missing_symbols: Sequence[str] = (),
    generated_at: Optional[str] = None,
) -> MarketReport:
    if not analyzed:
        raise DataSufficiencyError(f"No analyzed series available for {date}")

    analyzed_by_symbol = group_by_symbol(analyzed)
    series_by_symbol: Dict[str, Dict[str, ReportIntervalSeries]] = {
        symbol: {interval: to_report_series(series) for interval, series in by_interval.items()}
        for symbol, by_interval in analyzed_by_symbol.items()
    }

    short = short_interval_of(intervals)
    candidates = build_candidates(analyzed_by_symbol, short, DAILY_INTERVAL)
    picks, watchlist = partition(candidates)

    return MarketReport(
        date=date,
        generatedAt=generated_at or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        symbols=list(symbols),
        intervals=list(intervals),
        missingSymbols=sorted(missing_symbols),
        picks=picks,
        watchlist=watchlist,
        series=series_by_symbol,
        mostActive=build_most_active(analyzed_by_symbol),
        summaries=build_summaries(date, picks, watchlist, series_by_symbol, missing_symbols),
    )


def to_report_highlights(report: MarketReport) -> MarketReportHighlights:
    return MarketReportHighlights(
        version=REPORT_VERSION,
        date=report.date,
        generatedAt=report.generatedAt,
        picks=[
            HighlightPick(
                symbol=p.symbol,
                trade=HighlightTrade(side=p.trade.side, entry=p.trade.entry, stop=p.trade.stop),
            )
            for p in report.picks
        ],
        summaries=HighlightSummaries(veryShort=report.summaries.veryShort, mainIdea=report.summaries.mainIdea),
    )


def render_report_mdx(report: MarketReport) -> str:
    """渲染精简的 MDX 文档；完整数据保留在 JSON 报告中。"""
    lines: List[str] = [
        "---",
        f"title: {json.dumps(f'Market Report: {report.date}')}",
        f"date: {json.dumps(report.date)}",
        f"generatedAt: {json.dumps(report.generatedAt)}",
        f"version: {json.dumps(REPORT_VERSION)}",
        "---",
        "",
        "<ReportSummary />",
        "",
        f'<CnbcVideoWidget date="{report.date}" />',
        "",
        "## Technical trades",
        "",
    ]
    if not report.picks:
        lines += ["No clear trade setups today based on the configured rules.", ""]
    for pick in report.picks:
        lines += [f"### {pick.symbol}", "", f'<ReportPick symbol="{pick.symbol}" />', ""]

    lines += ["## Watchlist", ""]
    if not report.watchlist:
        lines += ["Nothing on the watchlist today.", ""]
    for entry in report.watchlist:
        lines += [f"### {entry.symbol}", "", f'<ReportPick symbol="{entry.symbol}" />', ""]

    if report.mostActive and report.mostActive.byDollarVolume1d:
        lines += ["## Most active", "", "| Symbol | $ Volume (1d) | Close | Change |", "| --- | --- | --- | --- |"]
        for row in report.mostActive.byDollarVolume1d:
            change = f"{row.change1dPct:+.2f}%" if row.change1dPct is not None else "n/a"
            lines.append(f"| {row.symbol} | {format_dollars_compact(row.dollarVolume1d)} | {row.close:.2f} | {change} |")
        lines.append("")

    return "\n".join(lines) + "\n"
