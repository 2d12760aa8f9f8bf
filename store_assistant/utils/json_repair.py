"""Best-effort parsing of near-JSON model output.

Each repair step is structural only: strip markdown fences, cut out the
outermost object, close unbalanced braces. Nothing is guessed about meaning.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r'^```(?:json)?\s*', re.IGNORECASE)
_FENCE_CLOSE = re.compile(r'\s*```\s*$')


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub('', cleaned)
    cleaned = _FENCE_CLOSE.sub('', cleaned)
    return cleaned.strip()


def extract_outermost_object(text: str) -> Optional[str]:
    """Return the text from the first '{' to the last '}' (or to the end if unclosed)."""
    start = text.find('{')
    if start < 0:
        return None
    end = text.rfind('}')
    if end < start:
        return text[start:]
    return text[start:end + 1]


def balance_braces(text: str) -> str:
    """Append closing brackets for any left open, ignoring brackets inside strings."""
    stack = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]' and stack and stack[-1] == ch:
            stack.pop()

    repaired = text
    if in_string:
        repaired += '"'
    repaired = repaired.rstrip().rstrip(',')
    return repaired + ''.join(reversed(stack))


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse model output into a dict, applying the repair steps in order.

    Returns None when no dict can be recovered.
    """
    if not text or not text.strip():
        return None

    cleaned = strip_code_fences(text)
    candidates = [cleaned]

    extracted = extract_outermost_object(cleaned)
    if extracted is not None:
        candidates.append(extracted)
        candidates.append(balance_braces(extracted))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.debug(f"Could not recover a JSON object from model output: {cleaned[:300]}")
    return None
