"""
基于目录创建的建议性文件锁。

``os.mkdir`` 在目录已存在时原子地失败，因此可以作为单机批处理任务中
同一路径写入者之间的互斥原语。等待有上限，超时抛出 LockTimeoutError，
不会无限挂起。
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from datahub.errors import LockTimeoutError

logger = logging.getLogger(__name__)


def lock_path_for(target: Path) -> Path:
    return target.with_name(f"{target.name}.lock")


@contextmanager
def path_lock(target: Path, timeout: float = 30.0, retry_interval: float = 0.05) -> Iterator[Path]:
    """在 ``target`` 旁创建 ``<name>.lock`` 目录，持有期间独占写入。"""
    lock_dir = lock_path_for(target)
    lock_dir.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    while True:
        try:
            os.mkdir(lock_dir)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(lock_dir, timeout) from None
            time.sleep(retry_interval)

    try:
        yield lock_dir
    finally:
        try:
            os.rmdir(lock_dir)
        except FileNotFoundError:
            logger.warning("锁目录已被外部移除：%s", lock_dir)
