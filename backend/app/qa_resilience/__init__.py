"""
QA Resilience Engine

Self-improving resilience core for automated UI test runs:
- Heals broken locators through a cost-ordered cascade
- Learns selector reliability and test stability across runs
- Maps code changes to the tests they put at risk
- Plans test execution under time and concurrency budgets
"""

__version__ = "0.1.0"

from .config import EngineConfig
from .engine import ResilienceEngine, get_engine, set_engine
from .errors import (
    ResilienceError,
    ServiceError,
    TransientServiceError,
    RateLimitError,
    ServiceConfigurationError,
    ResponseParseError,
)

__all__ = [
    "EngineConfig",
    "ResilienceEngine",
    "get_engine",
    "set_engine",
    "ResilienceError",
    "ServiceError",
    "TransientServiceError",
    "RateLimitError",
    "ServiceConfigurationError",
    "ResponseParseError",
]
