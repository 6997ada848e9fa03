"""Decoding of server-sent-event streams returned by model services."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON payload of every ``data:`` line in *lines*.

    Blank lines, comments and non-data fields are ignored. Payloads that are
    not valid JSON objects are skipped. Iteration stops at ``data: [DONE]``.
    """
    async for line in lines:
        line = line.strip()
        if not line or not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == DONE_SENTINEL:
            return
        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug("Skipping malformed SSE line: %s", payload[:200])
            continue
        if isinstance(event, dict):
            yield event
