"""
原始快照的目录约定与分析窗口要求。

原始数据按 ``data/<SYMBOL>/<INTERVAL>/<YYYYMMDD>.json`` 存放，每个文件是某个
运行日抓取的快照，本身已包含 provider 回看窗口内的历史 K 线。分析阶段按
“读取最近 N 个文件”的方式拼接窗口，周期越长理想窗口越深。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class WindowRequirement:
    min_files: int
    ideal_files: int

    def __post_init__(self) -> None:
        if self.min_files < 1 or self.ideal_files < self.min_files:
            raise ValueError(f"Invalid window requirement: {self}")


DEFAULT_WINDOW_REQUIREMENTS: Dict[str, WindowRequirement] = {
    "1m": WindowRequirement(min_files=1, ideal_files=1),
    "5m": WindowRequirement(min_files=1, ideal_files=2),
    "15m": WindowRequirement(min_files=1, ideal_files=3),
    "1h": WindowRequirement(min_files=1, ideal_files=5),
    "1d": WindowRequirement(min_files=1, ideal_files=5),
}


def window_requirement_for(
    interval: str,
    overrides: Optional[Mapping[str, WindowRequirement]] = None,
) -> WindowRequirement:
    if overrides and interval in overrides:
        return overrides[interval]
    try:
        return DEFAULT_WINDOW_REQUIREMENTS[interval]
    except KeyError:
        raise ValueError(f"Unknown interval: {interval}") from None
