"""Errors raised by the model gateway and JSON extraction helpers."""

from __future__ import annotations


class AIError(Exception):
    """Base class for model gateway failures."""


class ServiceNotConfigured(AIError):
    """The provider has no credential; raised before any network call."""


class UpstreamRequestFailed(AIError):
    """The model service answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"upstream request failed with status {status_code}")


class EmptyResponse(AIError):
    """The model service returned no generated text."""


class JsonParseFailed(AIError):
    """No JSON object could be recovered from the model text."""
