"""Section detection, postprocessing and custom section matching."""

from .custom import CustomSectionMatcher, parse_custom_section
from .detector import (
    PHASES,
    TERMINAL_PHASES,
    DetectionCancelled,
    ProgressReporter,
    SectionDetector,
    reanchor_section,
    reselect_representative,
)

__all__ = [
    "PHASES",
    "TERMINAL_PHASES",
    "CustomSectionMatcher",
    "DetectionCancelled",
    "ProgressReporter",
    "SectionDetector",
    "parse_custom_section",
    "reanchor_section",
    "reselect_representative",
]
