import copy
import json

import pytest

from datahub.config import (
    DEFAULT_ANALYSIS_CONFIG,
    CrossCondition,
    MacdDefinition,
    load_analysis_config,
    parse_analysis_config,
)
from datahub.errors import ConfigError
from datahub.universe import Universe, load_universe


def _payload():
    return copy.deepcopy(DEFAULT_ANALYSIS_CONFIG)


def test_default_config_parses():
    config = parse_analysis_config(_payload())
    assert config.intervals == ["15m", "1h", "1d"]
    by_id = {definition.id: definition for definition in config.indicators}
    assert isinstance(by_id["macd"], MacdDefinition)
    assert isinstance(config.signals[2].when, CrossCondition)


def test_duplicate_indicator_id_rejected():
    payload = _payload()
    payload["indicators"].append({"id": "sma20", "type": "sma", "period": 50})
    with pytest.raises(ConfigError, match="Duplicate indicator id"):
        parse_analysis_config(payload)


@pytest.mark.parametrize("required", ["sma20", "ema20", "rsi14"])
def test_required_indicators_enforced(required):
    payload = _payload()
    payload["indicators"] = [d for d in payload["indicators"] if d["id"] != required]
    payload["signals"] = [s for s in payload["signals"] if s["when"]["indicator"] != required]
    with pytest.raises(ConfigError, match=required):
        parse_analysis_config(payload)


def test_cross_signal_against_scalar_rejected():
    payload = _payload()
    payload["signals"].append(
        {"id": "bad", "label": "bad", "when": {"indicator": "rsi14", "op": "crossAbove", "left": "macd", "right": "signal"}}
    )
    with pytest.raises(ConfigError, match="not a composite"):
        parse_analysis_config(payload)


def test_cross_signal_with_unknown_field_rejected():
    payload = _payload()
    payload["signals"].append(
        {"id": "bad", "label": "bad", "when": {"indicator": "macd", "op": "crossAbove", "left": "macd", "right": "upper"}}
    )
    with pytest.raises(ConfigError, match="unknown field"):
        parse_analysis_config(payload)


def test_channel_cross_fields_accepted():
    payload = _payload()
    payload["signals"].append(
        {
            "id": "bb-break",
            "label": "Bollinger breakout",
            "when": {"indicator": "bollinger20", "op": "crossAbove", "left": "middle", "right": "upper"},
        }
    )
    assert parse_analysis_config(payload).signals[-1].id == "bb-break"


def test_threshold_against_composite_rejected():
    payload = _payload()
    payload["signals"].append({"id": "bad", "label": "bad", "when": {"indicator": "macd", "op": "gt", "value": 1}})
    with pytest.raises(ConfigError, match="not a scalar"):
        parse_analysis_config(payload)


def test_unknown_indicator_reference_rejected():
    payload = _payload()
    payload["signals"].append({"id": "bad", "label": "bad", "when": {"indicator": "nope", "op": "gt", "value": 1}})
    with pytest.raises(ConfigError, match="unknown indicator"):
        parse_analysis_config(payload)


def test_duplicate_signal_id_rejected():
    payload = _payload()
    payload["signals"].append(payload["signals"][0])
    with pytest.raises(ConfigError, match="Duplicate signal id"):
        parse_analysis_config(payload)


@pytest.mark.parametrize(
    "definition",
    [
        {"id": "x", "type": "sma", "period": 0},
        {"id": "x", "type": "macd", "fastPeriod": 26, "slowPeriod": 12},
        {"id": "x", "type": "vwap", "period": 5},
        {"id": "x", "type": "sma", "period": 5, "extra": True},
    ],
)
def test_invalid_definitions_raise_config_error(definition):
    payload = _payload()
    payload["indicators"].append(definition)
    with pytest.raises(ConfigError):
        parse_analysis_config(payload)


def test_unknown_interval_rejected():
    payload = _payload()
    payload["intervals"] = ["4h"]
    with pytest.raises(ConfigError):
        parse_analysis_config(payload)


def test_load_analysis_config_falls_back_to_default(tmp_path):
    config = load_analysis_config(tmp_path)
    assert [d.id for d in config.indicators][:3] == ["sma20", "ema20", "rsi14"]


def test_load_analysis_config_reads_file(tmp_path):
    payload = _payload()
    payload["intervals"] = ["1d"]
    (tmp_path / "analysis.json").write_text(json.dumps(payload), encoding="utf-8")
    assert load_analysis_config(tmp_path).intervals == ["1d"]


def test_load_analysis_config_bad_json(tmp_path):
    (tmp_path / "analysis.json").write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_analysis_config(tmp_path)


def test_universe_normalizes_symbols(tmp_path):
    universe = Universe()
    universe.extend(["aapl", " msft ", "AAPL"])
    assert universe.symbols == ["AAPL", "MSFT"]

    (tmp_path / "symbols.json").write_text(json.dumps({"symbols": ["msft", "AAPL", "msft"]}), encoding="utf-8")
    assert load_universe(tmp_path).symbols == ["MSFT", "AAPL"]


def test_universe_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_universe(tmp_path)
