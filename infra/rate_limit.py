"""
数据源全局限流器，基于异步令牌桶。

每个 provider 拥有独立的每分钟请求上限（例如 YF_MAX_RPM、CNBC_MAX_RPM），
批量抓取时所有 worker 共享同一个桶，避免触发数据源的封禁策略。
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from .settings import _parse_int

DEFAULT_YF_RPM = 60
DEFAULT_CNBC_RPM = 30


@dataclass
class LimitConfig:
    provider: str
    rpm: int

    @property
    def enabled(self) -> bool:
        return self.rpm > 0


class TokenBucket:
    """按每分钟配额补充令牌的异步令牌桶，容量等于一分钟的配额。"""

    def __init__(self, rpm: int) -> None:
        self.capacity = float(max(rpm, 1))
        self.per_second = rpm / 60.0
        self.tokens = self.capacity
        self.refilled_at = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.refilled_at) * self.per_second)
        self.refilled_at = now

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                deficit = 1.0 - self.tokens
            # 锁外等待，其他 worker 仍可刷新令牌
            await asyncio.sleep(min(max(deficit / self.per_second, 0.05), 5.0))


class RateLimiter:
    """按 provider 名称分桶的限流器。"""

    def __init__(self, configs: Dict[str, LimitConfig]) -> None:
        self._configs = configs
        self._buckets: Dict[str, TokenBucket] = {}

    def _config_for(self, provider: str) -> Optional[LimitConfig]:
        return self._configs.get(provider.lower())

    def _bucket_for(self, config: LimitConfig) -> TokenBucket:
        # 令牌桶内部的 asyncio.Lock 需绑定到当前事件循环，按 loop 分别缓存
        loop_id = id(asyncio.get_running_loop())
        key = f"{config.provider}:{loop_id}"
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(config.rpm)
            self._buckets[key] = bucket
        return bucket

    @asynccontextmanager
    async def limit(self, provider: str) -> AsyncIterator[None]:
        config = self._config_for(provider)
        if config is not None and config.enabled:
            await self._bucket_for(config).acquire()
        yield

    @classmethod
    def from_env(cls) -> "RateLimiter":
        configs = {
            "yfinance": LimitConfig(provider="yfinance", rpm=max(_parse_int("YF_MAX_RPM", DEFAULT_YF_RPM), 0)),
            "cnbc": LimitConfig(provider="cnbc", rpm=max(_parse_int("CNBC_MAX_RPM", DEFAULT_CNBC_RPM), 0)),
        }
        return cls(configs)


rate_limiter = RateLimiter.from_env()
