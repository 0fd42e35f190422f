"""Execution strategies: the opaque, long-running workers that change code."""

from feedbackbot.strategies.base import (
    ExecutionStrategy,
    StrategyRequest,
    StrategyResult,
    StrategySet,
)

__all__ = ["ExecutionStrategy", "StrategyRequest", "StrategyResult", "StrategySet"]
