"""Orchestrator module - action execution and periodic scheduling."""

from .executor import ActionExecutor, ExecutionResult, RollbackResult, SweepResult
from .scheduler import EngineScheduler

__all__ = ["ActionExecutor", "ExecutionResult", "RollbackResult", "SweepResult", "EngineScheduler"]
