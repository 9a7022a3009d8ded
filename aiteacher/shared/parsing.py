"""
Parse results for loosely structured language-model output.

Every call site converts a ParseResult with `resolve`, which requires an
explicit fallback, so a malformed reply never escapes as an exception.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, TypeVar, Union

T = TypeVar("T")

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class Ok:
    """Successfully decoded payload."""
    payload: Any


@dataclass(frozen=True)
class Malformed:
    """Reply that could not be decoded or did not have the expected shape."""
    raw_text: str
    error: str = ""


@dataclass(frozen=True)
class Empty:
    """Blank reply."""
    pass


ParseResult = Union[Ok, Malformed, Empty]


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_PATTERN.sub("", text.strip()).strip()


def parse_json_response(text: str | None) -> ParseResult:
    """Decode a JSON reply, tolerating markdown code-fence wrapping."""
    if text is None or not text.strip():
        return Empty()

    cleaned = strip_code_fences(text)
    if not cleaned:
        return Empty()

    try:
        return Ok(json.loads(cleaned))
    except json.JSONDecodeError as e:
        return Malformed(raw_text=text, error=str(e))


def resolve(
    result: ParseResult,
    build: Callable[[Any], T],
    fallback: Callable[[ParseResult], T],
) -> T:
    """
    Turn a parse result into a value.

    `build` receives the decoded payload and may raise ValueError, TypeError
    or KeyError to reject its shape; `fallback` then receives a Malformed
    result carrying the reason.
    """
    if isinstance(result, Ok):
        try:
            return build(result.payload)
        except (ValueError, TypeError, KeyError) as e:
            return fallback(Malformed(raw_text=json.dumps(result.payload, default=str), error=str(e)))
    return fallback(result)


def require_list(payload: Any) -> list:
    """Shape check used by builders expecting a JSON array."""
    if not isinstance(payload, list):
        raise TypeError(f"expected a JSON array, got {type(payload).__name__}")
    return payload


def require_dict(payload: Any) -> dict:
    """Shape check used by builders expecting a JSON object."""
    if not isinstance(payload, dict):
        raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp a number into [low, high]."""
    return max(low, min(high, value))
