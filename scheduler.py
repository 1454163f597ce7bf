"""
每日行情管线调度器。

基于 APScheduler 在纽约时间收盘后运行一次完整管线（data → analyze → report），
结果写入 ``CONTENT_DIR`` 下的按日目录。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from zoneinfo import ZoneInfo

import env  # noqa: F401
from datahub.dates import today_in
from datahub.errors import MarketDataError
from infra.settings import Settings
from pipeline import PipelineContext, RunAllResult, run_market_all

logger = logging.getLogger(__name__)

JOB_ID = "daily_market_job"


async def run_daily_market(settings: Optional[Settings] = None) -> Optional[RunAllResult]:
    """执行一次当天的完整管线，失败时记录日志并返回 None。"""
    settings = settings or Settings.from_env()
    today = today_in(settings.timezone)
    ctx = PipelineContext.from_settings(settings)
    try:
        result = await run_market_all(today, ctx, today=today)
    except MarketDataError:
        logger.exception("每日行情管线失败：%s", today)
        return None
    logger.info(
        "每日行情管线完成：%s（技术交易 %d，观察名单 %d，缺失 %d）",
        today,
        len(result.report.picks),
        len(result.report.watchlist),
        len(result.data.missing_symbols),
    )
    return result


def start_scheduler(settings: Optional[Settings] = None) -> AsyncIOScheduler:
    """启动每日调度器，在指定时间运行管线。"""
    settings = settings or Settings.from_env()
    scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.timezone))
    scheduler.add_job(
        run_daily_market,
        trigger="cron",
        day_of_week="mon-fri",
        hour=settings.report_hour,
        minute=settings.report_minute,
        kwargs={"settings": settings},
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=600,
    )
    scheduler.start()
    logger.info(
        "已启动每日行情调度器，时间 %02d:%02d (%s)",
        settings.report_hour,
        settings.report_minute,
        settings.timezone,
    )
    return scheduler


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    start_scheduler()
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(main())
