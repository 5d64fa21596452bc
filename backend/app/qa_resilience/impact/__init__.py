"""
Change Impact

Detects code changes and ranks the tests they affect.
"""

from .change_detection import (
    ChangeDetectionSystem,
    ChangeRecord,
    ChangeAnalysis,
    CatalogueTest,
    TestImpact,
    detect_language,
)

__all__ = [
    "ChangeDetectionSystem",
    "ChangeRecord",
    "ChangeAnalysis",
    "CatalogueTest",
    "TestImpact",
    "detect_language",
]
