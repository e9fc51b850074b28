"""Execution runtime: limiter, retry policy, engine and result pipeline."""

from .engine import CheckpointHook, ExecutionEngine
from .limiter import ConcurrencyLimiter
from .retry import RetryPolicy

__all__ = ["CheckpointHook", "ConcurrencyLimiter", "ExecutionEngine", "RetryPolicy"]
