"""
Error taxonomy for the retrieval engine.

Every failure that crosses a component boundary is raised as a subclass of
JurisRagError carrying a provider-neutral ErrorCategory, so callers can tell
"no results" apart from "search failed" and decide whether to retry.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Provider-neutral failure buckets."""
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSIENT_SERVER = "transient_server"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    INVALID_REQUEST = "invalid_request"
    DATA_INTEGRITY = "data_integrity"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


# Categories worth another attempt after a backoff
TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.TRANSIENT_SERVER,
    ErrorCategory.TIMEOUT,
    ErrorCategory.CONNECTION,
})


class JurisRagError(Exception):
    """Base class for all engine errors."""

    default_category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        self.message = message
        self.category = category or self.default_category
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES

    def to_dict(self) -> dict:
        return {"error": self.category.value, "detail": self.message}


class EmbeddingError(JurisRagError):
    """Embedding provider failure, already classified."""

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, category)
        self.status_code = status_code


class StoreError(JurisRagError):
    """Index store failure that survived the connection retries."""
    default_category = ErrorCategory.CONNECTION


class DataIntegrityError(JurisRagError):
    """Embedding count mismatch or malformed vector. Never retried."""
    default_category = ErrorCategory.DATA_INTEGRITY


class QueryValidationError(JurisRagError):
    """Input rejected before any I/O."""
    default_category = ErrorCategory.VALIDATION


class RetrievalError(JurisRagError):
    """A retrieval call failed on infrastructure, not on lack of evidence."""


class IngestionError(JurisRagError):
    """A document could not be ingested and continue_on_error is off."""

    def __init__(
        self,
        message: str,
        document_id: str,
        category: Optional[ErrorCategory] = None,
        stats=None,
    ):
        super().__init__(message, category)
        self.document_id = document_id
        self.stats = stats  # IngestionStats accumulated up to the failure
