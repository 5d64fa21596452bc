"""
Core Healing Module

Page state capture and the selector healing cascade.
"""

from .page_state import PageElement, PageSnapshot, PageProbe, SnapshotProbe
from .selector_healer import SelectorHealer, HealingResult, HealingMethod, HealingCache

__all__ = [
    "PageElement",
    "PageSnapshot",
    "PageProbe",
    "SnapshotProbe",
    "SelectorHealer",
    "HealingResult",
    "HealingMethod",
    "HealingCache",
]
