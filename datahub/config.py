"""
指标 / 信号的声明式配置。

``config/analysis.json`` 中的每个指标按 ``type`` 区分、每个信号条件按 ``op``
区分，均由 pydantic 的判别联合解析；结构之间的交叉约束（引用存在、交叉信号
只能指向复合指标等）在加载时统一校验，错误配置在分析开始前就失败。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, model_validator

from .errors import ConfigError
from .models import COMPOSITE_FIELDS, MarketInterval

logger = logging.getLogger(__name__)

ANALYSIS_CONFIG_FILE = "analysis.json"
REQUIRED_INDICATORS = ("sma20", "ema20", "rsi14")


class _Definition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1)
    source: Literal["close"] = "close"


class SmaDefinition(_Definition):
    type: Literal["sma"]
    period: PositiveInt


class EmaDefinition(_Definition):
    type: Literal["ema"]
    period: PositiveInt


class RsiDefinition(_Definition):
    type: Literal["rsi"]
    period: PositiveInt


class StdevDefinition(_Definition):
    type: Literal["stdev"]
    period: PositiveInt


class AtrDefinition(_Definition):
    type: Literal["atr"]
    period: PositiveInt


class MacdDefinition(_Definition):
    type: Literal["macd"]
    fastPeriod: PositiveInt = 12
    slowPeriod: PositiveInt = 26
    signalPeriod: PositiveInt = 9

    @model_validator(mode="after")
    def _fast_before_slow(self) -> "MacdDefinition":
        if self.fastPeriod >= self.slowPeriod:
            raise ValueError(f"indicator.{self.id}.fastPeriod must be < slowPeriod")
        return self


class BollingerDefinition(_Definition):
    type: Literal["bollingerBands"]
    period: PositiveInt = 20
    stdevMult: float = Field(default=2.0, gt=0)


class KeltnerDefinition(_Definition):
    type: Literal["keltnerChannels"]
    period: PositiveInt = 20
    atrMult: float = Field(default=1.5, gt=0)


class TtmSqueezeDefinition(_Definition):
    type: Literal["ttmSqueeze"]
    period: PositiveInt = 20
    bbMult: float = Field(default=2.0, gt=0)
    kcMult: float = Field(default=1.5, gt=0)


IndicatorDefinition = Annotated[
    Union[
        SmaDefinition,
        EmaDefinition,
        RsiDefinition,
        StdevDefinition,
        AtrDefinition,
        MacdDefinition,
        BollingerDefinition,
        KeltnerDefinition,
        TtmSqueezeDefinition,
    ],
    Field(discriminator="type"),
]

SCALAR_TYPES = {"sma", "ema", "rsi", "stdev", "atr"}
# 复合指标类型 -> 序列化后的 kind
COMPOSITE_KIND = {
    "macd": "macd",
    "bollingerBands": "channel",
    "keltnerChannels": "channel",
    "ttmSqueeze": "ttmSqueeze",
}


class ThresholdCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    indicator: str
    op: Literal["lt", "gt"]
    value: float


class CrossCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    indicator: str
    op: Literal["crossAbove", "crossBelow"]
    left: str
    right: str


SignalCondition = Annotated[Union[ThresholdCondition, CrossCondition], Field(discriminator="op")]


class SignalDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    when: SignalCondition


class AnalysisConfig(BaseModel):
    intervals: List[MarketInterval] = Field(min_length=1)
    indicators: List[IndicatorDefinition] = Field(min_length=1)
    signals: List[SignalDefinition] = Field(default_factory=list)


def validate_analysis_config(config: AnalysisConfig) -> AnalysisConfig:
    """检查定义之间的交叉约束，违反时抛出 ConfigError。"""
    by_id: Dict[str, IndicatorDefinition] = {}
    for definition in config.indicators:
        if definition.id in by_id:
            raise ConfigError(f"Duplicate indicator id: {definition.id}")
        by_id[definition.id] = definition

    for required in REQUIRED_INDICATORS:
        if required not in by_id:
            raise ConfigError(f"Analysis config must define indicator id: {required}")

    if len(set(config.intervals)) != len(config.intervals):
        raise ConfigError(f"Duplicate interval in analysis config: {config.intervals}")

    seen_signals = set()
    for signal in config.signals:
        if signal.id in seen_signals:
            raise ConfigError(f"Duplicate signal id: {signal.id}")
        seen_signals.add(signal.id)

        when = signal.when
        indicator = by_id.get(when.indicator)
        if indicator is None:
            raise ConfigError(f"signal.{signal.id} references unknown indicator: {when.indicator}")

        if isinstance(when, CrossCondition):
            kind = COMPOSITE_KIND.get(indicator.type)
            if kind is None:
                raise ConfigError(
                    f"signal.{signal.id} uses {when.op} but indicator {indicator.id} is not a composite indicator"
                )
            fields = COMPOSITE_FIELDS[kind]
            for name in (when.left, when.right):
                if name not in fields:
                    raise ConfigError(
                        f"signal.{signal.id} references unknown field {name!r} of {indicator.id} (expected one of {fields})"
                    )
        elif indicator.type not in SCALAR_TYPES:
            raise ConfigError(
                f"signal.{signal.id} uses {when.op} but indicator {indicator.id} is not a scalar series"
            )
    return config


def parse_analysis_config(payload: object) -> AnalysisConfig:
    try:
        config = AnalysisConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid analysis config: {exc}") from exc
    return validate_analysis_config(config)


DEFAULT_ANALYSIS_CONFIG: Dict[str, object] = {
    "intervals": ["15m", "1h", "1d"],
    "indicators": [
        {"id": "sma20", "type": "sma", "period": 20},
        {"id": "ema20", "type": "ema", "period": 20},
        {"id": "rsi14", "type": "rsi", "period": 14},
        {"id": "atr14", "type": "atr", "period": 14},
        {"id": "macd", "type": "macd", "fastPeriod": 12, "slowPeriod": 26, "signalPeriod": 9},
        {"id": "bollinger20", "type": "bollingerBands", "period": 20, "stdevMult": 2},
        {"id": "keltner20", "type": "keltnerChannels", "period": 20, "atrMult": 1.5},
        {"id": "ttmSqueeze20", "type": "ttmSqueeze", "period": 20, "bbMult": 2, "kcMult": 1.5},
    ],
    "signals": [
        {"id": "rsi-overbought", "label": "RSI overbought (>70)", "when": {"indicator": "rsi14", "op": "gt", "value": 70}},
        {"id": "rsi-oversold", "label": "RSI oversold (<30)", "when": {"indicator": "rsi14", "op": "lt", "value": 30}},
        {
            "id": "macd-bull-cross",
            "label": "MACD bullish cross",
            "when": {"indicator": "macd", "op": "crossAbove", "left": "macd", "right": "signal"},
        },
        {
            "id": "macd-bear-cross",
            "label": "MACD bearish cross",
            "when": {"indicator": "macd", "op": "crossBelow", "left": "macd", "right": "signal"},
        },
    ],
}


def load_analysis_config(config_dir: Path | str = "config") -> AnalysisConfig:
    path = Path(config_dir) / ANALYSIS_CONFIG_FILE
    if not path.exists():
        logger.info("未找到 %s，使用内置分析配置", path)
        return parse_analysis_config(DEFAULT_ANALYSIS_CONFIG)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read analysis config {path}: {exc}") from exc
    return parse_analysis_config(payload)
