"""行情管线的统一异常体系。"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class MarketDataError(RuntimeError):
    """所有管线异常的基类。"""


class ProviderError(MarketDataError):
    """数据提供方（网络、超时、HTTP 状态）错误，按单项恢复，不中断批次。"""


class DataSufficiencyError(MarketDataError):
    """历史窗口不足或没有可分析 / 可报告的数据。"""


class SnapshotIntegrityError(MarketDataError):
    """快照文件损坏、结构非法或元数据不一致。"""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        self.path = path
        super().__init__(f"{message} ({path})" if path is not None else message)


class LockTimeoutError(MarketDataError):
    """等待写锁超时。"""

    def __init__(self, path: Path, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}")


class ConfigError(ValueError):
    """指标 / 信号定义非法，在加载时即失败。"""
