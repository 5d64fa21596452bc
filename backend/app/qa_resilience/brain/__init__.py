"""
Language-Model Access

The rate-limited gateway every component shares, and the schemas and
parser that turn its free-text replies into typed results.
"""

from .ai_gateway import AIGateway, AIProvider, ChatMessage
from .response_parser import Parsed, ParseFailure, extract_json, parse_response
from .schemas import (
    HealSuggestion,
    ImpactRanking,
    ImpactedTest,
    OptimizedPlan,
    ApplicationModelInsight,
)

__all__ = [
    "AIGateway",
    "AIProvider",
    "ChatMessage",
    "Parsed",
    "ParseFailure",
    "extract_json",
    "parse_response",
    "HealSuggestion",
    "ImpactRanking",
    "ImpactedTest",
    "OptimizedPlan",
    "ApplicationModelInsight",
]
