from .engine import ExecutionEngine
from .types import (
    ExecutionOutcome,
    ExecutionRequest,
    LocalStrategyError,
    RawError,
    RemoteStrategyError,
    StrategyError,
)

__all__ = [
    "ExecutionEngine",
    "ExecutionOutcome",
    "ExecutionRequest",
    "LocalStrategyError",
    "RawError",
    "RemoteStrategyError",
    "StrategyError",
]
