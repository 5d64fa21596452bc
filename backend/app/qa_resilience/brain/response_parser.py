"""
Response Parser
===============

Turns the free-text reply of a language model into a validated, typed
object. Models wrap JSON in prose or code fences, use single quotes,
forget to quote keys, and sometimes stop mid-object when they run out of
tokens. Recovery is deliberately bounded:

1. Locate a candidate span (fenced block first, then the raw text)
2. Scan it with a string-aware bracket counter
3. If the span never closes, append the missing closers (bounded depth)
4. Try json.loads, then at most three textual repairs
5. Validate against a pydantic schema

Anything else is a ParseFailure carrying a descriptive message.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..errors import ResponseParseError

T = TypeVar("T", bound=BaseModel)

FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
UNQUOTED_KEY_RE = re.compile(r'([{,]\s*)([A-Za-z_][\w-]*)(\s*:)')

# Deepest nesting we are willing to close by hand
MAX_REPAIR_DEPTH = 16

PREVIEW_CHARS = 200


@dataclass
class Parsed(Generic[T]):
    """Successful parse"""
    value: T


@dataclass
class ParseFailure:
    """Failed parse with a human-readable reason"""
    error: str
    raw: str = ""


ParseResult = Union[Parsed, ParseFailure]


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def _scan_span(text: str, start: int) -> Tuple[int, List[str], bool]:
    """
    Walk text from an opening bracket.

    Returns (end_index, open_stack, in_string). end_index is -1 when the
    structure never closes; open_stack then holds the closers still owed.
    """
    closers = {"{": "}", "[": "]"}
    stack: List[str] = []
    in_string = False
    escape_next = False

    for i in range(start, len(text)):
        char = text[i]

        if in_string:
            if escape_next:
                escape_next = False
            elif char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in closers:
            stack.append(closers[char])
        elif char in ("}", "]"):
            if not stack or stack[-1] != char:
                # Mismatched closer, nothing sensible to recover here
                return -1, [], False
            stack.pop()
            if not stack:
                return i, [], False

    return -1, stack, in_string


def _first_opener(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else -1


def _balance(fragment: str, open_stack: List[str], in_string: bool) -> Optional[str]:
    """Close a truncated JSON fragment"""
    if len(open_stack) > MAX_REPAIR_DEPTH:
        return None
    repaired = fragment
    if in_string:
        repaired += '"'
    repaired = repaired.rstrip().rstrip(",")
    return repaired + "".join(reversed(open_stack))


def _loads_with_repair(span: str) -> Any:
    try:
        return json.loads(span)
    except json.JSONDecodeError as first_error:
        quoted_keys = UNQUOTED_KEY_RE.sub(r'\1"\2"\3', span)
        double_quoted = span.replace("'", '"')
        both = UNQUOTED_KEY_RE.sub(r'\1"\2"\3', double_quoted)

        for attempt in (quoted_keys, double_quoted, both):
            try:
                return json.loads(attempt)
            except json.JSONDecodeError:
                continue

        raise ResponseParseError(
            f"Failed to parse JSON. Preview: {_preview(span, 500)}. Error: {first_error}",
            raw=span,
        )


def _extract_from(candidate: str) -> Any:
    start = _first_opener(candidate)
    if start == -1:
        raise ResponseParseError(
            f"No JSON found in response. Text: {_preview(candidate)}", raw=candidate
        )

    end, open_stack, in_string = _scan_span(candidate, start)
    if end != -1:
        return _loads_with_repair(candidate[start:end + 1])

    if not open_stack:
        raise ResponseParseError(
            f"Could not find complete JSON in response. Preview: {_preview(candidate[start:])}",
            raw=candidate,
        )

    balanced = _balance(candidate[start:], open_stack, in_string)
    if balanced is None:
        raise ResponseParseError(
            f"JSON nesting too deep to repair ({len(open_stack)} levels open)", raw=candidate
        )
    return _loads_with_repair(balanced)


def extract_json(text: str) -> Any:
    """
    Extract the first JSON object or array from a model reply.

    Raises:
        ResponseParseError: if no valid JSON span can be recovered
    """
    if not text or not text.strip():
        raise ResponseParseError("Empty response from service", raw=text or "")

    candidates = [m.group(1) for m in FENCED_BLOCK_RE.finditer(text)]
    candidates.append(text)

    last_error: Optional[ResponseParseError] = None
    for candidate in candidates:
        try:
            return _extract_from(candidate)
        except ResponseParseError as e:
            last_error = e

    raise last_error


def parse_response(text: str, schema: Type[T]) -> ParseResult:
    """Extract JSON from text and validate it against schema"""
    try:
        data = extract_json(text)
    except ResponseParseError as e:
        return ParseFailure(error=str(e), raw=text or "")

    if not isinstance(data, dict):
        return ParseFailure(
            error=f"Expected a JSON object for {schema.__name__}, got {type(data).__name__}",
            raw=text,
        )

    try:
        return Parsed(value=schema.model_validate(data))
    except ValidationError as e:
        return ParseFailure(error=f"{schema.__name__} validation failed: {e}", raw=text)
