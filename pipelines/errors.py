"""Error taxonomy for the indexing pipeline.

Every pipeline failure is an ``IndexingError`` carrying an
``ErrorCategory`` and a retryable flag, so the orchestrator can decide
between requeueing a URL and failing it for good.
"""

from typing import Optional

from .models import ErrorCategory


class IndexingError(Exception):
    """Base class for failures raised inside the pipeline."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, url: Optional[str] = None,
                 category: Optional[ErrorCategory] = None,
                 retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.url = url
        if category is not None:
            self.category = category
        if retryable is not None:
            self.retryable = retryable


class FetchError(IndexingError):
    """HTTP fetch failed (non-2xx, timeout or connection problem)."""

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None,
                 category: Optional[ErrorCategory] = None,
                 retryable: Optional[bool] = None):
        self.status_code = status_code
        if category is None:
            category = self._category_for_status(status_code)
        if retryable is None:
            retryable = status_code in self.RETRYABLE_STATUS_CODES
        super().__init__(message, url=url, category=category, retryable=retryable)

    @staticmethod
    def _category_for_status(status_code: Optional[int]) -> ErrorCategory:
        if status_code == 404 or status_code == 410:
            return ErrorCategory.NOT_FOUND
        if status_code in (401, 403):
            return ErrorCategory.FORBIDDEN
        if status_code == 408:
            return ErrorCategory.TIMEOUT
        if status_code is None:
            return ErrorCategory.NETWORK
        return ErrorCategory.NETWORK if status_code >= 500 or status_code == 429 else ErrorCategory.UNKNOWN


class InsufficientContent(IndexingError):
    """Page text is too short to be worth indexing. Recorded as a skip."""

    category = ErrorCategory.INSUFFICIENT_CONTENT
    retryable = False

    def __init__(self, message: str, url: Optional[str] = None, length: int = 0):
        super().__init__(message, url=url)
        self.length = length


class NoChunksCreated(IndexingError):
    """The chunker produced nothing usable from non-empty text."""

    category = ErrorCategory.NO_CHUNKS
    retryable = False


class EmbeddingError(IndexingError):
    """Embedding service call failed (quota, timeout, malformed input)."""

    category = ErrorCategory.EMBEDDING_FAILURE
    retryable = True


class StoreError(IndexingError):
    """Vector store could not be read or written."""

    category = ErrorCategory.STORE_FAILURE
    retryable = True


class BudgetExceeded(IndexingError):
    """Session-level: cumulative cost went over the configured budget."""

    category = ErrorCategory.BUDGET_EXCEEDED
    retryable = False

    def __init__(self, spent: float, budget: float):
        super().__init__(f"Cost budget exceeded: ${spent:.4f} > ${budget:.2f}")
        self.spent = spent
        self.budget = budget


class InvalidTransition(Exception):
    """A URL record was asked to move to a state it cannot reach."""


class SessionNotFound(KeyError):
    """No indexing session with the given id."""


class SessionConflict(RuntimeError):
    """A session is already running for the same source."""


class SourceConfigError(ValueError):
    """A source configuration file is missing fields or malformed."""


def categorize_error(error) -> ErrorCategory:
    """Best-effort category for an untyped exception or message.

    Typed ``IndexingError`` instances keep their own category; anything
    else falls back to keyword matching on the message.
    """
    if isinstance(error, IndexingError):
        return error.category

    message = str(error).lower()

    if 'timeout' in message or 'timed out' in message:
        return ErrorCategory.TIMEOUT
    if '404' in message or 'not found' in message:
        return ErrorCategory.NOT_FOUND
    if '403' in message or 'forbidden' in message:
        return ErrorCategory.FORBIDDEN
    if 'robots' in message:
        return ErrorCategory.ROBOTS_BLOCKED
    if 'content too short' in message or 'insufficient content' in message:
        return ErrorCategory.INSUFFICIENT_CONTENT
    if 'embedding' in message:
        return ErrorCategory.EMBEDDING_FAILURE
    if 'network' in message or 'enotfound' in message or 'connection' in message:
        return ErrorCategory.NETWORK
    if 'parse' in message or 'selector' in message:
        return ErrorCategory.PARSING

    return ErrorCategory.UNKNOWN
