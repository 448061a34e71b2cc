"""
Retry and backoff helpers.

Two levels of retrying exist: a Kubernetes call is retried in place on
throttling and server errors (``retry_on_k8s_error``); a failed
reconciliation pass is requeued by the worker after ``compute_backoff``.
"""
import asyncio
from typing import Callable

from kubernetes_asyncio.client import ApiException
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cass_operator.config.logging import get_logger
from cass_operator.exceptions import TransientError

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def compute_backoff(
    failures: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> float:
    """
    Delay before the next attempt after ``failures`` consecutive failures.

    Example:
        >>> [compute_backoff(n, 1.0, 10.0) for n in range(1, 6)]
        [1.0, 2.0, 4.0, 8.0, 10.0]
    """
    if failures <= 0:
        return 0.0
    return min(initial_delay * (exponential_base ** (failures - 1)), max_delay)


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """Whether a Kubernetes API call is worth repeating as is."""
    return isinstance(exception, ApiException) and exception.status in RETRYABLE_STATUS_CODES


def is_transient_error(exception: BaseException) -> bool:
    """
    Whether a failed pass should be requeued with backoff.

    Anything else (invalid desired state, unsafe operation, bugs) is reported
    as a hard failure.
    """
    return isinstance(exception, (TransientError, ApiException, asyncio.TimeoutError))


def _log_retry(max_retries: int) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "k8s_api_call_failed_retrying",
            function=getattr(retry_state.fn, "__name__", None),
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            status_code=getattr(error, "status", None),
        )

    return log


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Callable:
    """
    Decorator retrying a Kubernetes call on throttling and server errors.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry in seconds
        max_delay: Upper bound of the delay in seconds

    Example:
        @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
        async def delete_pod(self, namespace, name):
            ...
    """
    return retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, min=initial_delay, max=max_delay),
        retry=retry_if_exception(is_retryable_k8s_error),
        before_sleep=_log_retry(max_retries),
        reraise=True,
    )
