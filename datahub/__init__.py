"""行情快照的数据模型、存储与数据源适配。"""

from .config import AnalysisConfig, load_analysis_config  # noqa: F401
from .errors import (  # noqa: F401
    ConfigError,
    DataSufficiencyError,
    LockTimeoutError,
    MarketDataError,
    ProviderError,
    SnapshotIntegrityError,
)
from .providers import MarketDataProvider, YFinanceProvider  # noqa: F401
from .universe import Universe, load_universe  # noqa: F401

__all__ = [
    "AnalysisConfig",
    "ConfigError",
    "DataSufficiencyError",
    "LockTimeoutError",
    "MarketDataError",
    "MarketDataProvider",
    "ProviderError",
    "SnapshotIntegrityError",
    "Universe",
    "YFinanceProvider",
    "load_analysis_config",
    "load_universe",
]
