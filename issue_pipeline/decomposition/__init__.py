"""Automatic decomposition of oversized issues into child issues."""

from issue_pipeline.decomposition.manager import DecompositionManager, parent_label
from issue_pipeline.decomposition.parser import (
    COMPLEXITY_KEYWORDS,
    analyze_complexity,
    parse_decomposition,
    validate_decomposition,
)

__all__ = [
    "DecompositionManager",
    "parent_label",
    "COMPLEXITY_KEYWORDS",
    "analyze_complexity",
    "parse_decomposition",
    "validate_decomposition",
]
