"""有界并发工具：固定数量的 worker 共享一个下标游标依次领取任务。"""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T], Awaitable[R]],
) -> List[R]:
    """按输入顺序返回结果，同时最多 ``concurrency`` 个任务在运行。

    ``fn`` 抛出的异常会中断整个批次；需要“尽力而为”语义的调用方
    应在 ``fn`` 内部自行捕获单项错误。
    """
    if not isinstance(concurrency, (int, float)) or not math.isfinite(concurrency):
        raise ValueError(f"Invalid concurrency: {concurrency!r}")

    limit = max(1, int(concurrency))
    results: List[R] = [None] * len(items)  # type: ignore[list-item]
    cursor = 0

    async def _worker() -> None:
        nonlocal cursor
        while True:
            # 游标只在事件循环线程内自增，读取与自增之间没有 await
            current = cursor
            cursor += 1
            if current >= len(items):
                return
            results[current] = await fn(items[current])

    workers = [asyncio.create_task(_worker()) for _ in range(min(limit, len(items)))]
    if workers:
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
    return results
