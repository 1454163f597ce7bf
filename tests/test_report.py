from datetime import timedelta

import pytest

from datahub.errors import DataSufficiencyError
from datahub.models import AnalyzedSeries, ReportPick, SignalHit, TradePlan
from engine.analyzer import analyze_series
from engine.opportunity_filter import is_technical_trade, partition
from engine.report import (
    build_market_report,
    build_sentiment,
    cap_words,
    format_dollars_compact,
    render_report_mdx,
    short_interval_of,
    to_report_highlights,
    to_report_series,
)
from engine.rules import build_trade_plan, clamp_to_valid_stop
from engine.scoring import build_candidate

from conftest import START, make_bars, make_series

LABELS = {
    "rsi-overbought": "RSI overbought (>70)",
    "rsi-oversold": "RSI oversold (<30)",
    "macd-bull-cross": "MACD bullish cross",
    "macd-bear-cross": "MACD bearish cross",
}


def _analyzed(
    interval="1d",
    closes=(100.0, 101.0),
    ema=None,
    sma=None,
    rsi=None,
    atr=None,
    active=(),
    symbol="AAPL",
) -> AnalyzedSeries:
    step = timedelta(days=1) if interval == "1d" else timedelta(minutes=15)
    bars = make_bars(list(closes), step=step)

    def last_only(value):
        return [None] * (len(bars) - 1) + [value]

    return AnalyzedSeries(
        symbol=symbol,
        interval=interval,
        analyzedAt="2024-03-01T21:00:00Z",
        bars=bars,
        indicators={
            "sma20": last_only(sma),
            "ema20": last_only(ema),
            "rsi14": last_only(rsi),
            "atr14": last_only(atr),
        },
        signals=[SignalHit(id=sid, label=label, active=sid in active) for sid, label in LABELS.items()],
    )


def _pick(symbol, score, basis="signal", move_atr=1.5, side="buy") -> ReportPick:
    return ReportPick(
        symbol=symbol,
        basis=basis,
        score=score,
        trade=TradePlan(side=side, entry=100, stop=98, targets=[104, 106]),
        atr14_1d=1.0 if move_atr is not None else None,
        move1d=move_atr,
        move1dAtr14=move_atr,
    )


class TestStops:
    def test_valid_stop_kept(self):
        assert clamp_to_valid_stop(100, "buy", 99) == 99
        assert clamp_to_valid_stop(100, "sell", 101) == 101

    def test_wrong_side_falls_back(self):
        assert clamp_to_valid_stop(100, "buy", 101) == pytest.approx(98.5)
        assert clamp_to_valid_stop(100, "sell", 99) == pytest.approx(101.5)

    def test_too_tight_falls_back(self):
        assert clamp_to_valid_stop(100, "buy", 99.9) == pytest.approx(98.5)
        assert clamp_to_valid_stop(100, "sell", 100.1) == pytest.approx(101.5)

    def test_targets_respect_daily_atr(self):
        series = _analyzed(closes=[100.0] * 25)
        plan = build_trade_plan(series, "buy", atr_1d=2.0)
        assert plan.entry == 100
        assert plan.stop == pytest.approx(98.9)
        assert plan.targets == [pytest.approx(104.0), pytest.approx(106.0)]

    def test_targets_use_risk_when_larger(self):
        series = _analyzed(closes=[100.0] * 25)
        plan = build_trade_plan(series, "sell", atr_1d=None)
        # 最高价 100 + 0.1 的缓冲过紧，退回 1.5% 止损
        assert plan.stop == pytest.approx(101.5)
        assert plan.targets == [pytest.approx(97.0), pytest.approx(95.5)]


class TestCandidate:
    def test_full_score_composition(self):
        common = dict(closes=(100.0, 101.0), ema=100.0, sma=99.0, atr=0.5, active=("rsi-oversold",))
        short = _analyzed(interval="15m", rsi=25.0, **common)
        daily = _analyzed(interval="1d", rsi=40.0, **common)

        pick = build_candidate(short, daily)

        assert pick.trade.side == "buy"
        assert pick.basis == "signal"
        assert pick.move1dAtr14 == pytest.approx(2.0)
        assert pick.score == 36
        assert pick.signals == {"15m": ["RSI oversold (<30)"], "1d": ["RSI oversold (<30)"]}
        assert pick.rationale == [
            "1d move +1.00 (+2.0 ATR14)",
            "1d signals: RSI oversold (<30)",
            "15m signals: RSI oversold (<30)",
            "1d trend bias: bullish",
        ]

    def test_short_signal_takes_priority(self):
        short = _analyzed(interval="15m", active=("rsi-overbought",))
        daily = _analyzed(interval="1d", active=("macd-bull-cross",))
        assert build_candidate(short, daily).trade.side == "sell"

    def test_macd_cross_outranks_rsi(self):
        short = _analyzed(interval="15m", active=("rsi-overbought", "macd-bull-cross"))
        daily = _analyzed(interval="1d")
        assert build_candidate(short, daily).trade.side == "buy"

    def test_trend_fallback(self):
        short = _analyzed(interval="15m", closes=(100.0, 98.0), ema=99.0, sma=100.0)
        daily = _analyzed(interval="1d")
        pick = build_candidate(short, daily)
        assert pick.basis == "trend"
        assert pick.trade.side == "sell"

    def test_no_direction_excluded(self):
        assert build_candidate(_analyzed(interval="15m"), _analyzed(interval="1d")) is None

    def test_fallback_rationale(self):
        short = _analyzed(interval="15m", closes=(101.0,), ema=100.0, sma=99.0)
        daily = _analyzed(interval="1d", closes=(101.0,))
        pick = build_candidate(short, daily)
        assert pick.rationale == ["Trend continuation setup (no explicit rule hit on the latest bar)."]


class TestPartition:
    def test_caps_and_disjointness(self):
        technical = [_pick(f"T{i}", score=100 - i) for i in range(7)]
        trend = [_pick(f"W{i}", score=50 - i, basis="trend") for i in range(10)]
        picks, watchlist = partition(technical + trend)

        assert [p.symbol for p in picks] == ["T0", "T1", "T2", "T3", "T4"]
        assert len(watchlist) == 8
        assert all(w.symbol.startswith("W") for w in watchlist)
        assert not {p.symbol for p in picks} & {w.symbol for w in watchlist}

    def test_small_move_demoted_to_watchlist(self):
        quiet = _pick("QUIET", score=90, move_atr=0.4)
        loud = _pick("LOUD", score=10, move_atr=-1.2)
        picks, watchlist = partition([quiet, loud])
        assert [p.symbol for p in picks] == ["LOUD"]
        assert [w.symbol for w in watchlist] == ["QUIET"]

    def test_missing_atr_does_not_block(self):
        assert is_technical_trade(_pick("X", score=1, move_atr=None))

    def test_ties_broken_by_symbol(self):
        picks, _ = partition([_pick("B", 5), _pick("A", 5)])
        assert [p.symbol for p in picks] == ["A", "B"]


def test_sentiment_tones():
    buy, sell = _pick("A", 1, side="buy"), _pick("B", 1, side="sell")
    assert build_sentiment([buy, buy], [sell], []).tone == "risk-on"
    assert build_sentiment([buy], [sell], []).tone == "mixed"
    assert build_sentiment([], [sell], []).tone == "risk-off"
    empty = build_sentiment([], [], ["X"])
    assert empty.tone == "mixed"
    assert empty.lines == ["No directional setups on the latest bar.", "1 symbol(s) missing data."]


def test_text_helpers():
    assert cap_words("a b c", 5) == "a b c"
    assert cap_words("a b c d", 2) == "a b …"
    assert format_dollars_compact(1_234_567) == "1.23M"
    assert format_dollars_compact(2.5e9) == "2.50B"
    assert format_dollars_compact(999) == "999"
    assert short_interval_of(["1d", "1h", "15m"]) == "15m"


def test_report_series_keeps_latest_points(daily_only_config):
    bars = make_bars([100 + (i % 5) for i in range(250)])
    analyzed = analyze_series(make_series(bars=bars), daily_only_config, analyzed_at="2024-03-01T21:00:00Z")
    series = to_report_series(analyzed)
    assert len(series.t) == 220
    assert series.close[0] == bars[30].close
    assert len(series.sma20) == len(series.ttmSqueeze20.momentum) == 220
    assert series.t[1] - series.t[0] == 86400


def test_empty_report_rejected():
    with pytest.raises(DataSufficiencyError):
        build_market_report("2024-03-01", ["AAPL"], ["1d"], [])


def test_end_to_end_steady_uptrend(daily_only_config, rising_bars):
    analyzed = analyze_series(make_series(bars=rising_bars), daily_only_config, analyzed_at="2024-03-01T21:00:00Z")
    report = build_market_report(
        "2024-03-01",
        ["AAPL", "MSFT"],
        ["1d"],
        [analyzed],
        missing_symbols=["MSFT"],
        generated_at="2024-03-01T21:05:00Z",
    )

    assert len(report.picks) == 1
    pick = report.picks[0]
    assert pick.symbol == "AAPL"
    assert pick.basis == "signal"
    assert pick.trade.side == "sell"
    assert pick.trade.entry == 159
    assert pick.trade.stop == pytest.approx(161.385)
    assert pick.trade.targets == [pytest.approx(154.23), pytest.approx(151.845)]
    assert pick.atr14_1d == pytest.approx(1.0)
    assert pick.move1dAtr14 == pytest.approx(1.0)
    assert pick.rationale[:2] == ["1d move +1.00 (+1.0 ATR14)", "1d signals: RSI overbought (>70)"]
    assert report.watchlist == []
    assert report.missingSymbols == ["MSFT"]

    chart = report.series["AAPL"]["1d"]
    assert len(chart.t) == 60
    assert chart.t[0] == int(START.timestamp())
    assert report.mostActive.byDollarVolume1d[0].dollarVolume1d == pytest.approx(159_000)
    assert report.mostActive.byDollarVolume5d[0].dollarVolume5d == pytest.approx(785_000)

    assert report.summaries.veryShort.startswith("AAPL: SELL (stop ")
    assert report.summaries.mainIdea.startswith("Technical trades today: AAPL sell.")
    assert report.summaries.sentiment.tone == "risk-off"
    assert report.summaries.sentiment.lines == [
        "Directional setups: 0 buy vs 1 sell.",
        "Largest daily move: AAPL +1.0 ATR.",
        "1 symbol(s) missing data.",
    ]

    highlights = to_report_highlights(report)
    assert highlights.version == "v2-highlights"
    assert [p.symbol for p in highlights.picks] == ["AAPL"]
    assert highlights.summaries.veryShort == report.summaries.veryShort

    mdx = render_report_mdx(report)
    assert mdx.startswith("---\ntitle: \"Market Report: 2024-03-01\"\n")
    assert '<CnbcVideoWidget date="2024-03-01" />' in mdx
    assert "### AAPL" in mdx
    assert "Nothing on the watchlist today." in mdx
    assert "| AAPL | 159.00K | 159.00 |" in mdx
