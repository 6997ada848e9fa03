"""Robust JSON extraction from LLM responses.

``parse_complete`` handles a finished response. ``parse_incremental`` is
called repeatedly while a response streams in and returns only the array
elements that are certainly complete.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .errors import JsonParseFailed

logger = logging.getLogger(__name__)

DEFAULT_ARRAY_KEY = "transactions"


def parse_complete(text: str) -> Any:
    """Parse a complete model response.

    Tries the whole text first, then the slice between the first ``{`` and
    the last ``}`` so that commentary around the object is tolerated.
    Raises ``JsonParseFailed`` when neither attempt succeeds.
    """
    cleaned = (text or "").strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except ValueError as exc:
            raise JsonParseFailed("embedded JSON object is invalid") from exc
    raise JsonParseFailed("no JSON object found in model output")


def items_from_payload(parsed: Any, key: str = DEFAULT_ARRAY_KEY) -> list[Any]:
    """Return the list stored under *key*, or ``[]`` when there is none."""
    if isinstance(parsed, dict):
        items = parsed.get(key)
        if isinstance(items, list):
            return items
    return []


def object_elements(items: list[Any]) -> list[dict[str, Any]]:
    """The object elements of *items*, in order; what ``parse_incremental`` counts."""
    return [item for item in items if isinstance(item, dict)]


def _array_start(buffer: str, key: str) -> int:
    """Index of the ``[`` opening the array under *key*, or ``-1`` until it arrives.

    Arrays that precede the key belong to other fields and are never scanned.
    """
    match = re.search(rf'"{re.escape(key)}"\s*:\s*\[', buffer)
    return match.end() - 1 if match else -1


def _object_spans(buffer: str, start: int) -> list[tuple[int, int]]:
    """Spans of the complete object elements of the array opened at *start*.

    Nested arrays and objects are skipped as a whole; only elements sitting
    directly in the array count, so span ``n`` is the ``n``-th object element.
    """
    spans: list[tuple[int, int]] = []
    depth = 0
    obj_start = -1
    in_string = False
    escape = False

    for i in range(start + 1, len(buffer)):
        ch = buffer[i]

        if escape:
            escape = False
            continue
        if in_string:
            if ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            if depth == 0:
                obj_start = i if ch == "{" else -1
            depth += 1
        elif ch in "}]":
            if depth == 0:
                if ch == "]":
                    break
                continue
            depth -= 1
            if depth == 0 and ch == "}" and obj_start >= 0:
                spans.append((obj_start, i))

    return spans


def parse_incremental(
    buffer: str,
    already_extracted: int,
    key: str = DEFAULT_ARRAY_KEY,
) -> tuple[list[dict[str, Any]], int]:
    """Extract newly completed objects from a partially streamed array.

    *already_extracted* is the cursor returned by the previous call (``0``
    initially). Returns ``(new_items, cursor)``; pass *cursor* into the next
    call. An object whose closing brace is the last non-whitespace character
    of *buffer* is withheld because the stream may still extend it. A
    candidate that fails to parse is skipped but still advances the cursor.
    """
    start = _array_start(buffer, key)
    if start < 0:
        return [], already_extracted

    new_items: list[dict[str, Any]] = []
    cursor = already_extracted

    for index, (obj_start, obj_end) in enumerate(_object_spans(buffer, start)):
        if index < already_extracted:
            continue
        if not buffer[obj_end + 1 :].strip():
            break
        cursor = index + 1
        candidate = buffer[obj_start : obj_end + 1]
        try:
            parsed = json.loads(candidate)
        except ValueError:
            logger.debug("Skipping unparseable streamed object #%d: %s", index, candidate[:200])
            continue
        if isinstance(parsed, dict):
            new_items.append(parsed)

    return new_items, cursor
