"""Route and section engine for GPS activity tracks."""

from .engine import RouteEngine
from .errors import (
    DetectionError,
    EngineAlreadyInitializedError,
    EngineError,
    EngineNotInitializedError,
    StorageError,
    ValidationError,
)
from .main import main
from .models import (
    ActivityMetrics,
    Bounds,
    CustomSection,
    CustomSectionMatch,
    RouteGroup,
    Section,
    SectionSummary,
)

__all__ = [
    "main",
    "RouteEngine",
    "ActivityMetrics",
    "Bounds",
    "CustomSection",
    "CustomSectionMatch",
    "RouteGroup",
    "Section",
    "SectionSummary",
    "DetectionError",
    "EngineAlreadyInitializedError",
    "EngineError",
    "EngineNotInitializedError",
    "StorageError",
    "ValidationError",
]
