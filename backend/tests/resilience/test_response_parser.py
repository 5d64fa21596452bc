"""
Unit tests for the response parser.

Tests JSON recovery from free-text language-model replies and schema validation.
"""

import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "app"))

from qa_resilience.brain.response_parser import (
    MAX_REPAIR_DEPTH,
    Parsed,
    ParseFailure,
    extract_json,
    parse_response,
)
from qa_resilience.brain.schemas import HealSuggestion, ImpactRanking, OptimizedPlan
from qa_resilience.errors import ResponseParseError


class TestExtractJson:
    """Test JSON span extraction."""

    def test_plain_object(self):
        """Test a reply that is only JSON."""
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_object_inside_prose(self):
        """Test JSON surrounded by explanation text."""
        text = 'Sure! Here is the result: {"suggestedSelector": "#save", "confidence": 0.9} Hope it helps.'
        assert extract_json(text)["suggestedSelector"] == "#save"

    def test_fenced_block_preferred(self):
        """Test that a fenced block wins over braces in surrounding prose."""
        text = 'Use {curly} wisely.\n```json\n{"riskScore": 40}\n```'
        assert extract_json(text) == {"riskScore": 40}

    def test_braces_inside_strings_ignored(self):
        """Test that brackets inside string values do not end the span."""
        text = 'prefix {"reasoning": "use } and { carefully", "ok": true} suffix'
        assert extract_json(text) == {"reasoning": "use } and { carefully", "ok": True}

    def test_single_quotes_repaired(self):
        """Test single-quoted JSON is recovered."""
        assert extract_json("{'confidence': 0.8, 'reasoning': 'text match'}") == {
            "confidence": 0.8,
            "reasoning": "text match"
        }

    def test_unquoted_keys_repaired(self):
        """Test bare keys are quoted."""
        assert extract_json('{riskScore: 10, summary: "ok"}') == {"riskScore": 10, "summary": "ok"}

    def test_truncated_object_balanced(self):
        """Test a reply cut off before its closing brackets."""
        text = '{"executionPlan": {"sequential": [{"test": "a", "order": 1}'
        data = extract_json(text)
        assert data["executionPlan"]["sequential"] == [{"test": "a", "order": 1}]

    def test_truncated_inside_string(self):
        """Test a reply cut off inside a string value."""
        data = extract_json('{"reasoning": "because the butt')
        assert data == {"reasoning": "because the butt"}

    def test_array_reply(self):
        """Test a top-level array is returned as a list."""
        assert extract_json("Result: [1, 2, 3]") == [1, 2, 3]

    def test_no_json_raises(self):
        """Test prose without any JSON."""
        with pytest.raises(ResponseParseError) as exc_info:
            extract_json("I could not find a better selector.")

        assert "No JSON found" in str(exc_info.value)

    def test_empty_reply_raises(self):
        """Test an empty reply."""
        with pytest.raises(ResponseParseError):
            extract_json("   ")

    def test_unrepairable_raises_with_preview(self):
        """Test garbage inside braces produces a descriptive error."""
        with pytest.raises(ResponseParseError) as exc_info:
            extract_json("{this is : not [ json at all }")

        assert exc_info.value.raw

    def test_nesting_beyond_repair_depth(self):
        """Test that balancing is bounded."""
        text = "[" * (MAX_REPAIR_DEPTH + 1)
        with pytest.raises(ResponseParseError) as exc_info:
            extract_json(text)

        assert "too deep" in str(exc_info.value)


class TestParseResponse:
    """Test schema validation into typed results."""

    def test_parsed_heal_suggestion(self):
        """Test a valid healing reply."""
        result = parse_response(
            '{"suggestedSelector": "button:has-text(\\"Submit\\")", "confidence": 0.82, '
            '"reasoning": "text", "alternatives": ["#submit"]}',
            HealSuggestion
        )

        assert isinstance(result, Parsed)
        assert result.value.suggested_selector == 'button:has-text("Submit")'
        assert result.value.alternatives == ["#submit"]

    def test_percentage_confidence_normalized(self):
        """Test that 0-100 confidences are scaled to the unit range."""
        result = parse_response('{"suggestedSelector": "#a", "confidence": 85}', HealSuggestion)

        assert isinstance(result, Parsed)
        assert result.value.confidence == pytest.approx(0.85)

    def test_unknown_impact_level_becomes_medium(self):
        """Test impact levels outside the vocabulary."""
        result = parse_response(
            '{"riskScore": 150, "impactedTests": [{"testName": "t1", "impactLevel": "severe"}]}',
            ImpactRanking
        )

        assert isinstance(result, Parsed)
        assert result.value.risk_score == 100
        assert result.value.impacted_tests[0].impact_level == "medium"

    def test_missing_required_field_is_failure(self):
        """Test a reply missing the execution plan."""
        result = parse_response('{"reasoning": "no plan"}', OptimizedPlan)

        assert isinstance(result, ParseFailure)
        assert "OptimizedPlan" in result.error

    def test_array_is_failure_for_object_schema(self):
        """Test that a list cannot satisfy an object schema."""
        result = parse_response("[1, 2]", HealSuggestion)

        assert isinstance(result, ParseFailure)

    def test_no_json_is_failure_not_exception(self):
        """Test that parse_response never raises on bad input."""
        result = parse_response("nothing here", HealSuggestion)

        assert isinstance(result, ParseFailure)
        assert result.raw == "nothing here"
