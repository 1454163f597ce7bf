"""
按日期分区的快照存储层。

目录结构（相对 ``base_dir``）::

    data/<SYMBOL>/<INTERVAL>/<YYYYMMDD>.json     原始 K 线快照
    data/<SYMBOL>/news/<YYYYMMDD>.json           个股新闻快照
    data/cnbc/news/<YYYYMMDD>.json               视频资讯快照（扁平数组）
    analysis/<YYYY-MM-DD>/<SYMBOL>.<INTERVAL>.json
    reports/<YYYY-MM-DD>.json / .mdx / .highlights.json

历史日期的快照一经写入即不可变（先写者胜）；当天的原始快照允许与新抓取
的数据合并，用于修正仍在形成中的 K 线。所有写入先落临时文件再原子改名，
并由路径级目录锁串行化。读取不加锁，依赖原子改名避免读到半写文件。
"""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Type, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from infra.file_lock import path_lock

from .conventions import WindowRequirement, window_requirement_for
from .dates import normalize_date, parse_iso_date, parse_timestamp, to_file_date
from .errors import DataSufficiencyError, SnapshotIntegrityError
from .models import (
    AnalyzedSeries,
    Bar,
    MarketReport,
    MarketReportHighlights,
    NewsSnapshot,
    RawSeries,
    StoredVideoArticle,
    VideoArticle,
)

logger = logging.getLogger(__name__)

WriteStatus = Literal["written", "skipped_existing"]
WindowStatus = Literal["ok", "not_found", "insufficient_window"]

VIDEO_PROVIDER = "cnbc"

_FILE_DATE_NAME = re.compile(r"^\d{8}\.json$")
_REPORT_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class WindowResult:
    status: WindowStatus
    series: Optional[RawSeries] = None
    files_used: List[Path] = field(default_factory=list)
    required_min: int = 0

    @property
    def shortfall(self) -> int:
        return max(0, self.required_min - len(self.files_used))


def safe_symbol(symbol: str) -> str:
    """对代码做路径转义（如 ``BRK/B``、``^GSPC``）。"""
    return quote(symbol, safe="")


def _bar_time(bar: Bar) -> datetime:
    return parse_timestamp(bar.timestamp)


def _ensure_sorted(bars: Sequence[Bar], label: str) -> List[Bar]:
    """校验时间戳严格递增；否则排序并去重（同一时间戳保留后出现者）。"""
    keys = [_bar_time(bar) for bar in bars]
    if all(keys[idx] < keys[idx + 1] for idx in range(len(keys) - 1)):
        return list(bars)

    logger.warning("K 线未按时间严格递增，已重新排序：%s", label)
    latest: Dict[datetime, Bar] = {}
    for key, bar in zip(keys, bars):
        latest[key] = bar
    return [latest[key] for key in sorted(latest)]


def merge_bars(existing: Sequence[Bar], incoming: Sequence[Bar], label: str = "") -> List[Bar]:
    """双指针归并两段 K 线，时间戳冲突时以 ``incoming`` 为准。"""
    left = _ensure_sorted(existing, f"{label} (existing)")
    right = _ensure_sorted(incoming, f"{label} (incoming)")

    merged: List[Bar] = []
    i = j = 0
    while i < len(left) and j < len(right):
        left_key = _bar_time(left[i])
        right_key = _bar_time(right[j])
        if left_key < right_key:
            merged.append(left[i])
            i += 1
        elif right_key < left_key:
            merged.append(right[j])
            j += 1
        else:
            merged.append(right[j])
            i += 1
            j += 1
    merged.extend(left[i:])
    merged.extend(right[j:])
    return merged


def merge_series(existing: RawSeries, incoming: RawSeries, path: Optional[Path] = None) -> RawSeries:
    for attr in ("symbol", "interval", "provider"):
        if getattr(existing, attr) != getattr(incoming, attr):
            raise SnapshotIntegrityError(
                f"Cannot merge series with mismatched {attr}: "
                f"{getattr(existing, attr)!r} vs {getattr(incoming, attr)!r}",
                path,
            )
    label = f"{incoming.symbol} {incoming.interval}"
    return incoming.model_copy(update={"bars": merge_bars(existing.bars, incoming.bars, label)})


class SnapshotStore:
    """文件寻址的快照存储，负责合并语义、原子写入与写锁。"""

    def __init__(
        self,
        base_dir: Path | str = "content",
        lock_timeout: float = 30.0,
        lock_retry_interval: float = 0.05,
        window_requirements: Optional[Mapping[str, WindowRequirement]] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout
        self.lock_retry_interval = lock_retry_interval
        self.window_requirements = dict(window_requirements or {})

    @classmethod
    def from_settings(cls, settings: Any) -> "SnapshotStore":
        return cls(
            base_dir=settings.content_dir,
            lock_timeout=settings.lock_timeout,
            lock_retry_interval=settings.lock_retry_interval,
        )

    # ------------------------------------------------------------------ paths
    @property
    def data_dir(self) -> Path:
        return self.base_dir / "data"

    @property
    def reports_dir(self) -> Path:
        return self.base_dir / "reports"

    def analysis_dir(self, date: str) -> Path:
        parse_iso_date(date)
        return self.base_dir / "analysis" / date

    def raw_series_dir(self, symbol: str, interval: str) -> Path:
        return self.data_dir / safe_symbol(symbol) / interval

    def raw_series_path(self, date: str, symbol: str, interval: str) -> Path:
        return self.raw_series_dir(symbol, interval) / f"{to_file_date(date)}.json"

    def news_path(self, date: str, symbol: str) -> Path:
        return self.data_dir / safe_symbol(symbol) / "news" / f"{to_file_date(date)}.json"

    def video_path(self, date: str) -> Path:
        return self.data_dir / VIDEO_PROVIDER / "news" / f"{to_file_date(normalize_date(date))}.json"

    def analyzed_series_path(self, date: str, symbol: str, interval: str) -> Path:
        return self.analysis_dir(date) / f"{safe_symbol(symbol)}.{interval}.json"

    def report_json_path(self, date: str) -> Path:
        parse_iso_date(date)
        return self.reports_dir / f"{date}.json"

    def report_mdx_path(self, date: str) -> Path:
        parse_iso_date(date)
        return self.reports_dir / f"{date}.mdx"

    def report_highlights_path(self, date: str) -> Path:
        parse_iso_date(date)
        return self.reports_dir / f"{date}.highlights.json"

    # -------------------------------------------------------------- raw bars
    def raw_series_exists(self, date: str, symbol: str, interval: str) -> bool:
        return self.raw_series_path(date, symbol, interval).is_file()

    def write_raw_series(self, date: str, series: RawSeries, *, today: str) -> WriteStatus:
        """写入原始快照。

        历史日期：文件已存在时直接跳过（先写者胜），调用方通过返回值得知。
        当天：与已有快照按时间戳归并，新数据覆盖同一时间戳的旧 K 线。
        """
        path = self.raw_series_path(date, series.symbol, series.interval)
        with self._lock(path):
            if path.exists():
                if date != today:
                    return "skipped_existing"
                existing = self._read_raw_file(path, series.symbol, series.interval)
                series = merge_series(existing, series, path)
            else:
                label = f"{series.symbol} {series.interval}"
                series = series.model_copy(update={"bars": _ensure_sorted(series.bars, label)})
            self._atomic_write_json(path, series.model_dump(mode="json"))
        return "written"

    def read_raw_series(self, date: str, symbol: str, interval: str) -> RawSeries:
        return self._read_raw_file(self.raw_series_path(date, symbol, interval), symbol, interval)

    def list_raw_snapshot_files(self, symbol: str, interval: str, up_to: Optional[str] = None) -> List[Path]:
        directory = self.raw_series_dir(symbol, interval)
        if not directory.is_dir():
            return []
        limit = to_file_date(up_to) if up_to else None
        files = [
            path
            for path in directory.iterdir()
            if path.is_file() and _FILE_DATE_NAME.match(path.name)
        ]
        if limit is not None:
            files = [path for path in files if path.stem <= limit]
        return sorted(files, key=lambda p: p.stem)

    def load_raw_series_window(self, date: str, symbol: str, interval: str) -> WindowResult:
        """拼接 ``date`` 及之前最近 N 个快照；不足最小文件数时拒绝分析。"""
        requirement = window_requirement_for(interval, self.window_requirements)
        files = self.list_raw_snapshot_files(symbol, interval, up_to=date)
        if not files:
            return WindowResult(status="not_found", required_min=requirement.min_files)

        selected = files[-requirement.ideal_files:]
        if len(selected) < requirement.min_files:
            return WindowResult(
                status="insufficient_window",
                files_used=selected,
                required_min=requirement.min_files,
            )

        merged: Optional[RawSeries] = None
        for path in selected:
            current = self._read_raw_file(path, symbol, interval)
            merged = current if merged is None else merge_series(merged, current, path)
        return WindowResult(
            status="ok",
            series=merged,
            files_used=selected,
            required_min=requirement.min_files,
        )

    def _read_raw_file(self, path: Path, symbol: str, interval: str) -> RawSeries:
        series = self._read_model(path, RawSeries)
        if series.symbol != symbol or series.interval != interval:
            raise SnapshotIntegrityError(
                f"Snapshot metadata mismatch: expected {symbol} {interval}, "
                f"found {series.symbol} {series.interval}",
                path,
            )
        return series

    # ------------------------------------------------------------------ news
    def news_snapshot_exists(self, date: str, symbol: str) -> bool:
        return self.news_path(date, symbol).is_file()

    def write_news_snapshot(self, date: str, snapshot: NewsSnapshot) -> WriteStatus:
        path = self.news_path(date, snapshot.symbol)
        with self._lock(path):
            if path.exists():
                return "skipped_existing"
            self._atomic_write_json(path, snapshot.model_dump(mode="json"))
        return "written"

    def read_news_snapshot(self, date: str, symbol: str) -> NewsSnapshot:
        return self._read_model(self.news_path(date, symbol), NewsSnapshot)

    # ---------------------------------------------------------------- videos
    def video_snapshot_exists(self, date: str) -> bool:
        return self.video_path(date).is_file()

    def latest_video_published_at(self, date: str) -> Optional[datetime]:
        """当日快照中最新一条视频的发布时间；快照不存在或为空时返回 None。"""
        path = self.video_path(date)
        if not path.is_file():
            return None
        stored = self._read_stored_videos(path)
        if not stored:
            return None
        return max(parse_timestamp(item.publishedAt) for item in stored)

    def write_video_articles(
        self,
        date: str,
        articles: Sequence[StoredVideoArticle],
        *,
        today: str,
    ) -> WriteStatus:
        """写入视频快照；当天按文章 id 合并（新数据覆盖），按发布时间倒序。"""
        path = self.video_path(date)
        with self._lock(path):
            merged: Dict[str, StoredVideoArticle] = {}
            if path.exists():
                if date != today:
                    return "skipped_existing"
                for article in self._read_stored_videos(path):
                    merged[article.id] = article
            for article in articles:
                merged[article.id] = article
            ordered = sorted(
                merged.values(),
                key=lambda item: parse_timestamp(item.publishedAt),
                reverse=True,
            )
            self._atomic_write_json(path, [item.model_dump(mode="json") for item in ordered])
        return "written"

    def read_video_articles(self, date: str) -> List[VideoArticle]:
        """读取某日视频快照，并校验每条记录的 provider / asOfDate。"""
        as_of = normalize_date(date)
        path = self.video_path(as_of)
        stored = self._read_stored_videos(path)

        articles: List[VideoArticle] = []
        for item in stored:
            try:
                item_as_of = normalize_date(item.asOfDate)
            except ValueError as exc:
                raise SnapshotIntegrityError(f"Invalid video asOfDate {item.asOfDate!r}", path) from exc
            if item.provider != VIDEO_PROVIDER or item_as_of != as_of:
                raise SnapshotIntegrityError(
                    "Unexpected video article metadata: "
                    f"provider={item.provider!r} asOfDate={item.asOfDate!r} expected={as_of!r}",
                    path,
                )
            payload = item.model_dump(exclude={"provider"})
            # 旧快照在每条记录上写入了 symbol="cnbc"
            symbol = payload.get("symbol")
            if isinstance(symbol, str) and symbol.lower() == VIDEO_PROVIDER:
                payload["symbol"] = None
            articles.append(VideoArticle.model_validate(payload))
        return articles

    def _read_stored_videos(self, path: Path) -> List[StoredVideoArticle]:
        raw = self._read_json(path)
        if not isinstance(raw, list):
            raise SnapshotIntegrityError("Video snapshot must be a JSON array", path)
        try:
            return [StoredVideoArticle.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise SnapshotIntegrityError(f"Invalid video snapshot: {exc}", path) from exc

    # -------------------------------------------------------------- analysis
    def write_analyzed_series(self, date: str, series: AnalyzedSeries) -> Path:
        path = self.analyzed_series_path(date, series.symbol, series.interval)
        with self._lock(path):
            self._atomic_write_json(path, series.model_dump(mode="json"))
        return path

    def read_analyzed_series(self, date: str, symbol: str, interval: str) -> AnalyzedSeries:
        return self._read_model(self.analyzed_series_path(date, symbol, interval), AnalyzedSeries)

    def load_analyzed_series(self, date: str) -> List[AnalyzedSeries]:
        directory = self.analysis_dir(date)
        if not directory.is_dir():
            raise DataSufficiencyError(f"No analysis data found for {date}. Run the analyze stage first.")
        files = sorted(
            path
            for path in directory.iterdir()
            if path.is_file() and path.suffix == ".json" and not path.name.startswith(".")
        )
        return [self._read_model(path, AnalyzedSeries) for path in files]

    # --------------------------------------------------------------- reports
    def write_report(
        self,
        date: str,
        report: MarketReport,
        mdx: str,
        highlights: Optional[MarketReportHighlights] = None,
    ) -> None:
        """JSON 与 MDX 先全部写入临时文件，再依次改名，写入失败时两者都不可见。"""
        json_path = self.report_json_path(date)
        mdx_path = self.report_mdx_path(date)
        staged: List[tuple[Path, Path]] = []
        with self._lock(json_path):
            try:
                staged.append((self._stage_text(json_path, _dumps(report.model_dump(mode="json"), indent=2)), json_path))
                staged.append((self._stage_text(mdx_path, mdx), mdx_path))
                if highlights is not None:
                    highlights_path = self.report_highlights_path(date)
                    staged.append(
                        (self._stage_text(highlights_path, _dumps(highlights.model_dump(mode="json"), indent=2)), highlights_path)
                    )
            except BaseException:
                for tmp, _ in staged:
                    tmp.unlink(missing_ok=True)
                raise
            for tmp, target in staged:
                os.replace(tmp, target)

    def read_report(self, date: str) -> MarketReport:
        return self._read_model(self.report_json_path(date), MarketReport)

    def read_report_highlights(self, date: str) -> Optional[MarketReportHighlights]:
        path = self.report_highlights_path(date)
        if not path.is_file():
            return None
        return self._read_model(path, MarketReportHighlights)

    def list_report_dates(self) -> List[str]:
        if not self.reports_dir.is_dir():
            return []
        dates = [
            entry.name[: -len(".mdx")]
            for entry in self.reports_dir.iterdir()
            if entry.is_file() and not entry.is_symlink() and entry.name.endswith(".mdx")
        ]
        return sorted(name for name in dates if _REPORT_DATE.match(name))

    # --------------------------------------------------------------- helpers
    def _lock(self, path: Path):
        return path_lock(path, timeout=self.lock_timeout, retry_interval=self.lock_retry_interval)

    def _read_json(self, path: Path) -> Any:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise SnapshotIntegrityError(f"Unreadable snapshot: {exc}", path) from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SnapshotIntegrityError(f"Failed to parse JSON: {exc}", path) from exc

    def _read_model(self, path: Path, model: Type[ModelT]) -> ModelT:
        data = self._read_json(path)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise SnapshotIntegrityError(f"Invalid {model.__name__} snapshot: {exc}", path) from exc

    def _stage_text(self, path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(text, encoding="utf-8")
        return tmp

    def _atomic_write_json(self, path: Path, payload: Any) -> None:
        tmp = self._stage_text(path, _dumps(payload))
        try:
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise


def _dumps(payload: Any, indent: Optional[int] = None) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=indent) + "\n"
