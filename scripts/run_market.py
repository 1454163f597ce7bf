"""手动运行行情管线某一阶段的脚本。"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

# 确保项目根目录在 Python 模块搜索路径中
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import env  # noqa: E402,F401
from infra.settings import Settings  # noqa: E402
from pipeline import (  # noqa: E402
    PipelineContext,
    run_market_all,
    run_market_analyze,
    run_market_data,
    run_market_news,
    run_market_report,
    run_market_videos,
)

MAX_CONCURRENCY = 32
STAGES = ("data", "news", "videos", "analyze", "report", "all")

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _concurrency(value: str) -> int:
    parsed = int(value)
    if parsed <= 0 or parsed > MAX_CONCURRENCY:
        raise argparse.ArgumentTypeError(f"--concurrency must be a positive integer <= {MAX_CONCURRENCY}")
    return parsed


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a stage of the daily market pipeline.")
    parser.add_argument("--stage", choices=STAGES, default="all")
    parser.add_argument("--date", help="YYYY-MM-DD，默认取纽约时区的今天")
    parser.add_argument("--concurrency", type=_concurrency, default=None)
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> object:
    settings = Settings.from_env()
    ctx = PipelineContext.from_settings(settings)
    today = ctx.today()
    date = args.date or today

    if args.stage == "data":
        return await run_market_data(date, ctx, today=today, concurrency=args.concurrency)
    if args.stage == "news":
        return await run_market_news(date, ctx, today=today, concurrency=args.concurrency)
    if args.stage == "videos":
        return await run_market_videos(date, ctx, today=today)
    if args.stage == "analyze":
        return await run_market_analyze(date, ctx, today=today, concurrency=args.concurrency)
    if args.stage == "report":
        result = await run_market_report(date, ctx, today=today)
        result.report = None
        return result
    result = await run_market_all(date, ctx, today=today, concurrency=args.concurrency)
    result.report.report = None
    return result


def main(argv=None) -> None:
    args = parse_args(argv)
    result = asyncio.run(run(args))
    print(json.dumps({"stage": args.stage, **asdict(result)}, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
