"""Decoding of raw model output into schema-conforming values."""

from __future__ import annotations

import json
import logging
from typing import Any

from ledger_import.errors import ResponseParseError, preview
from ledger_import.llm.schema import SchemaNode, validate

logger = logging.getLogger(__name__)


def strip_code_fences(content: str) -> str:
    """Remove a surrounding markdown code block (```json ... ```)."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def extract_json(text: str) -> Any:
    """Parse JSON from model output.

    Tries the whole (fence-stripped) text first, then the first
    brace-balanced object or array embedded in surrounding prose.

    Raises:
        ResponseParseError: If no JSON value can be recovered.
    """
    if not text or not text.strip():
        raise ResponseParseError("Empty response", text)

    content = strip_code_fences(text)
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    for i, ch in enumerate(content):
        if ch == "{":
            value = _extract_balanced(content, i, "{", "}")
        elif ch == "[":
            value = _extract_balanced(content, i, "[", "]")
        else:
            continue
        if value is not None:
            logger.debug("Recovered JSON embedded in model output: %s", preview(content, 80))
            return value

    raise ResponseParseError(f"Could not parse JSON from response: {preview(content)}", text)


def _extract_balanced(text: str, start: int, open_ch: str, close_ch: str) -> Any:
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def decode_structured_output(text: str, schema: SchemaNode) -> Any:
    """Decode model text and validate it against the schema tree.

    Raises:
        ResponseParseError: Output is not JSON.
        SchemaValidationError: Output is JSON but structurally wrong.
    """
    value = extract_json(text)
    return validate(schema, value, raw_text=text)
