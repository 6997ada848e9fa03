"""Request-level ingestion failures and their HTTP status categories."""

from __future__ import annotations


class IngestionError(Exception):
    """Base class; ``message`` is safe to return to the caller."""

    status_code = 500
    message = "Ingestion failed"

    def __init__(self, message: str | None = None) -> None:
        if message:
            self.message = message
        super().__init__(self.message)


class InvalidInput(IngestionError):
    status_code = 400
    message = "Invalid input"


class NotAuthenticated(IngestionError):
    status_code = 401
    message = "Unauthorized"


class AIServiceNotConfigured(IngestionError):
    status_code = 500
    message = "AI service not configured"


class NoDataExtracted(IngestionError):
    status_code = 422
    message = "Could not extract transaction data"


class PersistenceFailed(IngestionError):
    status_code = 500
    message = "Failed to save transactions"


class AIServiceUnavailable(IngestionError):
    status_code = 502
    message = "AI service unavailable"
