"""日期工具：ISO 日期校验、快照文件名日期与纽约时区的“今天”。"""

from __future__ import annotations

import re
from datetime import date as date_cls
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FILE_DATE = re.compile(r"^\d{8}$")


def parse_iso_date(value: str) -> date_cls:
    """解析 ``YYYY-MM-DD``，拒绝格式错误或不存在的日历日。"""
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise ValueError(f"Invalid date: {value}. Expected YYYY-MM-DD.")
    try:
        return date_cls.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value}. Expected a real calendar day (YYYY-MM-DD).") from exc


def to_file_date(value: str) -> str:
    parse_iso_date(value)
    return value.replace("-", "")


def from_file_date(value: str) -> str:
    if not _FILE_DATE.match(value):
        raise ValueError(f"Invalid snapshot file date: {value}. Expected YYYYMMDD.")
    iso = f"{value[0:4]}-{value[4:6]}-{value[6:8]}"
    parse_iso_date(iso)
    return iso


def normalize_date(value: str) -> str:
    """接受 ``YYYYMMDD`` 或 ``YYYY-MM-DD``，统一返回 ``YYYY-MM-DD``。"""
    if _FILE_DATE.match(value or ""):
        return from_file_date(value)
    parse_iso_date(value)
    return value


def today_in(tz_name: str = "America/New_York", now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(ZoneInfo(tz_name)).date().isoformat()


def assert_not_future(value: str, today: str) -> str:
    parse_iso_date(value)
    if value > today:
        raise ValueError(f"Date cannot be in the future. Got {value}, today is {today}")
    return value


def parse_timestamp(value: str) -> datetime:
    """解析 K 线时间戳（ISO 8601，允许 ``Z`` 后缀），无时区时按 UTC 处理。"""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
