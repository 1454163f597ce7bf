"""Analysis engine components: indicators per config, signals, scoring and reports."""

from .analyzer import analyze_series, compute_indicators, compute_signals, evaluate_signal  # noqa: F401
from .opportunity_filter import is_technical_trade, partition  # noqa: F401
from .report import build_market_report, render_report_mdx, to_report_highlights  # noqa: F401
from .rules import build_trade_plan, clamp_to_valid_stop, infer_side_from_signals, infer_side_from_trend  # noqa: F401
from .scoring import build_candidates  # noqa: F401

__all__ = [
    "analyze_series",
    "build_candidates",
    "build_market_report",
    "build_trade_plan",
    "clamp_to_valid_stop",
    "compute_indicators",
    "compute_signals",
    "evaluate_signal",
    "infer_side_from_signals",
    "infer_side_from_trend",
    "is_technical_trade",
    "partition",
    "render_report_mdx",
    "to_report_highlights",
]
