"""
Retry with classified exponential backoff.

One helper shared by the store and the embedding providers. The caller
supplies a classifier deciding which exceptions are worth another attempt;
anything else propagates immediately.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import psycopg2
import psycopg2.pool

from .errors import ErrorCategory, EmbeddingError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Attempt cap and backoff curve: base_delay doubling, capped at max_delay."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given 1-based failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def retry_with_backoff(
    operation: Callable[[], T],
    is_retryable: Callable[[BaseException], bool],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``operation`` until it succeeds, a non-retryable error is raised,
    or the attempt cap is reached.

    Args:
        operation: Zero-argument callable doing the work.
        is_retryable: Classifier returning True for transient failures.
        policy: Attempt cap and backoff curve.
        on_retry: Hook called with (exception, attempt) before sleeping,
            e.g. to reset a connection pool.
        label: Name used in log messages.
        sleep: Injected for tests.

    Returns:
        Whatever ``operation`` returns.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label}: attempt {attempt}/{policy.max_attempts} failed "
                f"({type(e).__name__}), retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(e, attempt)
            sleep(delay)
            attempt += 1


def is_transient_db_error(exc: BaseException) -> bool:
    """Connection-class database failures: pool exhaustion, timeouts, resets."""
    if isinstance(exc, StoreError):
        return exc.is_transient
    # QueryCanceledError (statement timeout) subclasses OperationalError
    return isinstance(
        exc,
        (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError),
    )


def is_transient_embedding_error(exc: BaseException) -> bool:
    """Rate limits, 5xx responses, timeouts and network errors."""
    return isinstance(exc, EmbeddingError) and exc.is_transient


def is_transient_ingestion_error(exc: BaseException) -> bool:
    """Per-document retry classifier: store connection trouble or provider
    connectivity. Rate limits were already retried inside the provider."""
    if is_transient_db_error(exc):
        return True
    if isinstance(exc, EmbeddingError):
        return exc.category in (ErrorCategory.TIMEOUT, ErrorCategory.CONNECTION)
    return False
