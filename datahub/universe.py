"""
标的池（symbol universe）读取工具。

标的池保存在 ``config/symbols.json``，形如 ``{"symbols": ["AAPL", "MSFT"]}``。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from .errors import ConfigError

SYMBOLS_FILE = "symbols.json"


@dataclass
class Universe:
    """去重、保序的代码列表。"""

    symbols: List[str] = field(default_factory=list)

    def add(self, symbol: str) -> None:
        symbol = symbol.strip().upper()
        if symbol and symbol not in self.symbols:
            self.symbols.append(symbol)

    def extend(self, symbols: Iterable[str]) -> None:
        for symbol in symbols:
            self.add(symbol)

    @classmethod
    def from_dict(cls, data: object) -> "Universe":
        symbols = data.get("symbols") if isinstance(data, dict) else None
        if not isinstance(symbols, list) or not all(isinstance(item, str) for item in symbols):
            raise ConfigError(f"{SYMBOLS_FILE} must contain {{\"symbols\": [string, ...]}}")
        universe = cls()
        universe.extend(symbols)
        return universe


def load_universe(config_dir: Path | str = "config") -> Universe:
    target = Path(config_dir) / SYMBOLS_FILE
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Symbol universe not found: {target}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {target}: {exc}") from exc
    universe = Universe.from_dict(data)
    if not universe.symbols:
        raise ConfigError(f"{target} lists no symbols")
    return universe

