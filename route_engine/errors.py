"""Central error types used across the engine."""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base error for route engine failures."""


class ValidationError(EngineError, ValueError):
    """Raised when caller input is rejected before any storage mutation."""


class StorageError(EngineError):
    """Raised when the backing store fails; the call had no effect."""


class EngineNotInitializedError(EngineError):
    """Raised when an operation needs a store but none is bound."""


class EngineAlreadyInitializedError(EngineError):
    """Raised when re-initialising with a different store path."""


class DetectionError(EngineError):
    """Raised inside a detection run when track data cannot be processed."""


__all__ = [
    "EngineError",
    "ValidationError",
    "StorageError",
    "EngineNotInitializedError",
    "EngineAlreadyInitializedError",
    "DetectionError",
]
