"""Core engine components."""

from .config import ConfigLoader, EngineConfig
from .store import StateStore
from .errors import (
    EngineError,
    ConfigError,
    NotFoundError,
    InvalidStateError,
    HandlerValidationError,
    RollbackError,
    DeliveryError,
)

__all__ = [
    "ConfigLoader",
    "EngineConfig",
    "StateStore",
    "EngineError",
    "ConfigError",
    "NotFoundError",
    "InvalidStateError",
    "HandlerValidationError",
    "RollbackError",
    "DeliveryError",
]
