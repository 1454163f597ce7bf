"""行情日报的只读 FastAPI 接口，供前端渲染层读取已落盘的报告与分析结果。"""

from __future__ import annotations

import logging
from typing import Dict, List

import env  # noqa: F401

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from datahub.dates import normalize_date, parse_iso_date
from datahub.errors import DataSufficiencyError, SnapshotIntegrityError
from datahub.models import (
    MARKET_INTERVALS,
    AnalyzedSeries,
    MarketReport,
    MarketReportHighlights,
    VideoArticle,
)
from datahub.storage import SnapshotStore
from engine.report import to_report_highlights
from infra.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_REPORT_LIMIT = 30


class ReportIndex(BaseModel):
    dates: List[str]


app = FastAPI(
    title="StockAI Market Technicals API",
    version="1.0.0",
    description="每日行情技术面报告只读接口",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


def get_store() -> SnapshotStore:
    return SnapshotStore.from_settings(Settings.from_env())


def _check_date(date: str) -> str:
    try:
        parse_iso_date(date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return date


def _integrity_failure(exc: SnapshotIntegrityError) -> HTTPException:
    logger.error("快照数据损坏：%s", exc)
    return HTTPException(status_code=500, detail=f"快照数据损坏：{exc.path}")


@app.get("/healthz")
async def health_check() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/reports", response_model=ReportIndex)
async def list_reports(limit: int = DEFAULT_REPORT_LIMIT, store: SnapshotStore = Depends(get_store)) -> ReportIndex:
    limit = max(1, min(limit, 365))
    dates = store.list_report_dates()
    return ReportIndex(dates=list(reversed(dates))[:limit])


@app.get("/reports/latest", response_model=MarketReport)
async def get_latest_report(store: SnapshotStore = Depends(get_store)) -> MarketReport:
    dates = store.list_report_dates()
    if not dates:
        raise HTTPException(status_code=404, detail="暂无报告")
    return await get_report_by_date(dates[-1], store)


@app.get("/reports/{date}", response_model=MarketReport)
async def get_report_by_date(date: str, store: SnapshotStore = Depends(get_store)) -> MarketReport:
    _check_date(date)
    try:
        return store.read_report(date)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="报告不存在") from exc
    except SnapshotIntegrityError as exc:
        raise _integrity_failure(exc) from exc


@app.get("/reports/{date}/highlights", response_model=MarketReportHighlights)
async def get_report_highlights(date: str, store: SnapshotStore = Depends(get_store)) -> MarketReportHighlights:
    """优先读取 highlights 缓存，缺失时由完整报告推导。"""
    _check_date(date)
    try:
        highlights = store.read_report_highlights(date)
        if highlights is not None:
            return highlights
        return to_report_highlights(store.read_report(date))
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="报告不存在") from exc
    except SnapshotIntegrityError as exc:
        raise _integrity_failure(exc) from exc


@app.get("/analysis/{date}/{symbol}/{interval}", response_model=AnalyzedSeries)
async def get_analyzed_series(
    date: str,
    symbol: str,
    interval: str,
    store: SnapshotStore = Depends(get_store),
) -> AnalyzedSeries:
    _check_date(date)
    if interval not in MARKET_INTERVALS:
        raise HTTPException(status_code=400, detail=f"不支持的周期：{interval}")
    try:
        return store.read_analyzed_series(date, symbol.upper(), interval)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"未找到 {symbol} {interval} 的分析结果") from exc
    except SnapshotIntegrityError as exc:
        raise _integrity_failure(exc) from exc


@app.get("/analysis/{date}", response_model=List[str])
async def list_analyzed_series(date: str, store: SnapshotStore = Depends(get_store)) -> List[str]:
    _check_date(date)
    try:
        analyzed = store.load_analyzed_series(date)
    except DataSufficiencyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SnapshotIntegrityError as exc:
        raise _integrity_failure(exc) from exc
    return [f"{series.symbol}.{series.interval}" for series in analyzed]


@app.get("/videos/{date}", response_model=List[VideoArticle])
async def get_videos(date: str, store: SnapshotStore = Depends(get_store)) -> List[VideoArticle]:
    try:
        as_of = normalize_date(date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        return store.read_video_articles(as_of)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="当日无视频资讯") from exc
    except SnapshotIntegrityError as exc:
        raise _integrity_failure(exc) from exc


app.add_api_route(
    "/api/healthz",
    health_check,
    methods=["GET"],
    response_model=Dict[str, str],
)

app.add_api_route(
    "/api/reports",
    list_reports,
    methods=["GET"],
    response_model=ReportIndex,
)

app.add_api_route(
    "/api/reports/latest",
    get_latest_report,
    methods=["GET"],
    response_model=MarketReport,
)

app.add_api_route(
    "/api/reports/{date}",
    get_report_by_date,
    methods=["GET"],
    response_model=MarketReport,
)
