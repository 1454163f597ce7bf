"""
按日期运行的行情管线：data → analyze → report。

每个阶段都可以单独调用。抓取阶段的单项失败（网络、超时、数据源异常）
只记为 missing / failed 并写日志，不会中断同批其他任务；存储层错误
（快照损坏、锁超时）以及分析窗口不足则直接向上抛出。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence, Tuple

from datahub.cnbc import CnbcVideoProvider
from datahub.config import AnalysisConfig, load_analysis_config
from datahub.dates import assert_not_future, today_in
from datahub.errors import DataSufficiencyError, ProviderError
from datahub.models import MarketInterval, MarketReport, RawSeries
from datahub.providers import MarketDataProvider, YFinanceProvider
from datahub.storage import SnapshotStore, WindowResult
from datahub.universe import load_universe
from engine.analyzer import analyze_series
from engine.report import build_market_report, render_report_mdx, to_report_highlights
from infra.concurrency import map_with_concurrency
from infra.rate_limit import rate_limiter
from infra.settings import Settings

logger = logging.getLogger(__name__)

MAX_NEWS_CONCURRENCY = 4
INSUFFICIENT_EXAMPLES = 5

PairStatus = Literal["written", "skipped_existing", "missing"]
NewsStatus = Literal["written", "skipped_existing", "failed"]
VideoStatus = Literal["written", "skipped_existing", "empty", "failed"]


@dataclass
class PipelineContext:
    """一次运行共享的配置、存储与数据源。"""

    settings: Settings
    store: SnapshotStore
    config: AnalysisConfig
    symbols: List[str]
    provider: MarketDataProvider
    video_provider: Optional[CnbcVideoProvider] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        provider: Optional[MarketDataProvider] = None,
        video_provider: Optional[CnbcVideoProvider] = None,
    ) -> "PipelineContext":
        settings = settings or Settings.from_env()
        return cls(
            settings=settings,
            store=SnapshotStore.from_settings(settings),
            config=load_analysis_config(settings.config_dir),
            symbols=load_universe(settings.config_dir).symbols,
            provider=provider or YFinanceProvider(timeout=settings.fetch_timeout),
            video_provider=video_provider or CnbcVideoProvider(list_timeout=settings.news_timeout),
        )

    @property
    def intervals(self) -> List[MarketInterval]:
        return list(self.config.intervals)

    def today(self) -> str:
        return today_in(self.settings.timezone)


@dataclass
class NewsStageResult:
    written: int = 0
    skipped_existing: int = 0
    failed_symbols: List[str] = field(default_factory=list)


@dataclass
class VideoStageResult:
    status: VideoStatus
    articles: int = 0
    error: Optional[str] = None


@dataclass
class DataStageResult:
    date: str
    symbols: List[str]
    intervals: List[MarketInterval]
    missing_symbols: List[str]
    written: int
    skipped_existing: int
    news: Optional[NewsStageResult] = None
    videos: Optional[VideoStageResult] = None


@dataclass
class AnalyzeStageResult:
    date: str
    analyzed: int
    not_found: List[str] = field(default_factory=list)


@dataclass
class ReportStageResult:
    date: str
    picks: List[str]
    watchlist: List[str]
    missing_symbols: List[str]
    report: Optional[MarketReport] = None


@dataclass
class RunAllResult:
    date: str
    data: DataStageResult
    analysis: AnalyzeStageResult
    report: ReportStageResult


def _resolve(ctx: Optional[PipelineContext], date: str, today: Optional[str]) -> Tuple[PipelineContext, str]:
    ctx = ctx or PipelineContext.from_settings()
    today = today or ctx.today()
    assert_not_future(date, today)
    return ctx, today


async def _fetch_series(ctx: PipelineContext, symbol: str, interval: MarketInterval, date: str) -> RawSeries:
    async with rate_limiter.limit(ctx.provider.name):
        return await asyncio.wait_for(
            asyncio.to_thread(ctx.provider.fetch_bars, symbol, interval, date),
            timeout=ctx.settings.fetch_timeout,
        )


# ---------------------------------------------------------------------- data
async def run_market_data(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    today: Optional[str] = None,
    concurrency: Optional[int] = None,
    include_news: bool = True,
) -> DataStageResult:
    """抓取原始 K 线；历史日期已有快照则跳过，当天总是重新抓取并合并。"""
    ctx, today = _resolve(ctx, date, today)
    workers = concurrency or ctx.settings.concurrency
    tasks = [(symbol, interval) for symbol in ctx.symbols for interval in ctx.intervals]

    async def _pair(task: Tuple[str, MarketInterval]) -> Tuple[str, PairStatus]:
        symbol, interval = task
        if date != today and ctx.store.raw_series_exists(date, symbol, interval):
            return symbol, "skipped_existing"
        try:
            series = await _fetch_series(ctx, symbol, interval, date)
        except asyncio.TimeoutError:
            logger.warning("抓取超时 %s %s (%s)", symbol, interval, date)
            return symbol, "missing"
        except ProviderError as exc:
            logger.warning("抓取失败 %s %s (%s)：%s", symbol, interval, date, exc)
            return symbol, "missing"
        except Exception:
            logger.exception("抓取异常 %s %s (%s)", symbol, interval, date)
            return symbol, "missing"
        if not series.bars:
            logger.warning("数据源未返回 K 线 %s %s (%s)", symbol, interval, date)
            return symbol, "missing"
        status = await asyncio.to_thread(ctx.store.write_raw_series, date, series, today=today)
        return symbol, status

    outcomes = await map_with_concurrency(tasks, workers, _pair)
    missing = sorted({symbol for symbol, status in outcomes if status == "missing"})
    result = DataStageResult(
        date=date,
        symbols=list(ctx.symbols),
        intervals=ctx.intervals,
        missing_symbols=missing,
        written=sum(1 for _, status in outcomes if status == "written"),
        skipped_existing=sum(1 for _, status in outcomes if status == "skipped_existing"),
    )
    logger.info(
        "data 阶段完成 %s：写入 %d，跳过 %d，缺失标的 %d",
        date,
        result.written,
        result.skipped_existing,
        len(missing),
    )

    if include_news:
        result.news = await run_market_news(date, ctx, today=today, concurrency=workers)
        result.videos = await run_market_videos(date, ctx, today=today)
    return result


async def run_market_news(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    today: Optional[str] = None,
    concurrency: Optional[int] = None,
) -> NewsStageResult:
    ctx, today = _resolve(ctx, date, today)
    base = concurrency or ctx.settings.concurrency
    workers = max(1, min(base // 2, MAX_NEWS_CONCURRENCY))

    async def _symbol(symbol: str) -> Tuple[str, NewsStatus]:
        if ctx.store.news_snapshot_exists(date, symbol):
            return symbol, "skipped_existing"
        try:
            async with rate_limiter.limit(ctx.provider.name):
                snapshot = await asyncio.wait_for(
                    asyncio.to_thread(ctx.provider.fetch_news, symbol, date),
                    timeout=ctx.settings.news_timeout,
                )
        except asyncio.TimeoutError:
            logger.warning("新闻抓取超时 %s (%s)", symbol, date)
            return symbol, "failed"
        except ProviderError as exc:
            logger.warning("新闻抓取失败 %s (%s)：%s", symbol, date, exc)
            return symbol, "failed"
        except Exception:
            logger.exception("新闻抓取异常 %s (%s)", symbol, date)
            return symbol, "failed"
        status = await asyncio.to_thread(ctx.store.write_news_snapshot, date, snapshot)
        return symbol, status

    outcomes = await map_with_concurrency(ctx.symbols, workers, _symbol)
    result = NewsStageResult(
        written=sum(1 for _, status in outcomes if status == "written"),
        skipped_existing=sum(1 for _, status in outcomes if status == "skipped_existing"),
        failed_symbols=sorted(symbol for symbol, status in outcomes if status == "failed"),
    )
    logger.info(
        "news 阶段完成 %s：写入 %d，跳过 %d，失败 %d",
        date,
        result.written,
        result.skipped_existing,
        len(result.failed_symbols),
    )
    return result


async def run_market_videos(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    today: Optional[str] = None,
) -> VideoStageResult:
    ctx, today = _resolve(ctx, date, today)
    if ctx.video_provider is None:
        return VideoStageResult(status="empty")
    if date != today and ctx.store.video_snapshot_exists(date):
        return VideoStageResult(status="skipped_existing")
    # 当天重复运行时只抓取比已存快照更新的视频
    since = await asyncio.to_thread(ctx.store.latest_video_published_at, date) if date == today else None

    try:
        articles = await asyncio.wait_for(
            ctx.video_provider.fetch_recent_articles(date, since=since),
            timeout=ctx.settings.fetch_timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("视频资讯抓取超时 (%s)", date)
        return VideoStageResult(status="failed", error="timeout")
    except ProviderError as exc:
        logger.warning("视频资讯抓取失败 (%s)：%s", date, exc)
        return VideoStageResult(status="failed", error=str(exc))
    except Exception as exc:
        logger.exception("视频资讯抓取异常 (%s)", date)
        return VideoStageResult(status="failed", error=str(exc))

    if not articles:
        return VideoStageResult(status="empty")
    status = await asyncio.to_thread(ctx.store.write_video_articles, date, articles, today=today)
    logger.info("视频资讯 %s：%s（%d 条）", date, status, len(articles))
    return VideoStageResult(status=status, articles=len(articles))


# ------------------------------------------------------------------- analyze
async def run_market_analyze(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    today: Optional[str] = None,
    concurrency: Optional[int] = None,
) -> AnalyzeStageResult:
    """读取窗口、计算指标与信号并落盘。窗口不足或全部缺失时抛出 DataSufficiencyError。"""
    ctx, _ = _resolve(ctx, date, today)
    workers = concurrency or ctx.settings.concurrency
    tasks = [(symbol, interval) for symbol in ctx.symbols for interval in ctx.intervals]

    async def _pair(task: Tuple[str, MarketInterval]) -> Tuple[str, MarketInterval, WindowResult]:
        symbol, interval = task
        window = await asyncio.to_thread(ctx.store.load_raw_series_window, date, symbol, interval)
        if window.status == "ok" and window.series is not None:
            analyzed = analyze_series(window.series, ctx.config)
            await asyncio.to_thread(ctx.store.write_analyzed_series, date, analyzed)
        return symbol, interval, window

    outcomes = await map_with_concurrency(tasks, workers, _pair)

    insufficient = [(s, i, w) for s, i, w in outcomes if w.status == "insufficient_window"]
    if insufficient:
        examples = ", ".join(
            f"{s} {i} (have {len(w.files_used)}, need >= {w.required_min})"
            for s, i, w in insufficient[:INSUFFICIENT_EXAMPLES]
        )
        raise DataSufficiencyError(
            f"Insufficient raw window for {len(insufficient)} symbol/interval pairs; examples: {examples}"
        )

    analyzed = sum(1 for _, _, w in outcomes if w.status == "ok")
    not_found = [f"{s} {i}" for s, i, w in outcomes if w.status == "not_found"]
    if analyzed == 0:
        raise DataSufficiencyError(f"No data found for {date}. Run the data stage first.")
    if not_found:
        logger.warning("analyze %s：%d 个组合没有原始快照，例如 %s", date, len(not_found), not_found[:5])
    logger.info("analyze 阶段完成 %s：%d 个组合", date, analyzed)
    return AnalyzeStageResult(date=date, analyzed=analyzed, not_found=not_found)


# -------------------------------------------------------------------- report
async def run_market_report(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    symbols: Optional[Sequence[str]] = None,
    intervals: Optional[Sequence[MarketInterval]] = None,
    missing_symbols: Optional[Sequence[str]] = None,
    today: Optional[str] = None,
) -> ReportStageResult:
    ctx, _ = _resolve(ctx, date, today)
    analyzed = await asyncio.to_thread(ctx.store.load_analyzed_series, date)
    if not analyzed:
        raise DataSufficiencyError(f"No analysis data found for {date}. Run the analyze stage first.")

    symbols = list(symbols) if symbols is not None else list(ctx.symbols)
    intervals = list(intervals) if intervals is not None else ctx.intervals
    if missing_symbols is None:
        present = {series.symbol for series in analyzed}
        missing_symbols = [symbol for symbol in symbols if symbol not in present]

    report = build_market_report(date, symbols, intervals, analyzed, missing_symbols)
    mdx = render_report_mdx(report)
    await asyncio.to_thread(ctx.store.write_report, date, report, mdx, to_report_highlights(report))
    logger.info(
        "report 阶段完成 %s：技术交易 %d，观察名单 %d，缺失 %d",
        date,
        len(report.picks),
        len(report.watchlist),
        len(report.missingSymbols),
    )
    return ReportStageResult(
        date=date,
        picks=[p.symbol for p in report.picks],
        watchlist=[w.symbol for w in report.watchlist],
        missing_symbols=list(report.missingSymbols),
        report=report,
    )


async def run_market_all(
    date: str,
    ctx: Optional[PipelineContext] = None,
    *,
    today: Optional[str] = None,
    concurrency: Optional[int] = None,
) -> RunAllResult:
    ctx, today = _resolve(ctx, date, today)
    data = await run_market_data(date, ctx, today=today, concurrency=concurrency)
    analysis = await run_market_analyze(date, ctx, today=today, concurrency=concurrency)
    report = await run_market_report(date, ctx, symbols=data.symbols, intervals=data.intervals, today=today)
    return RunAllResult(date=date, data=data, analysis=analysis, report=report)
