"""Retries with exponential backoff for ECR API calls.

Reads (DescribeRepositories, DescribeImages, ListImages) are idempotent and
retried by EcrClient through ``retry_with_backoff``. A BatchDeleteImage batch
that failed as a whole is resubmitted by the garbage collector through
``retry_operation``. Both share one loop and one error classification.
"""

import logging
import random
import time
from enum import Enum
from functools import wraps
from typing import Callable, Collection, Optional, Tuple, TypeVar

from registry_gc.error_utils import AUTH_ERROR_CODES, ActionableError, ErrorCategory, aws_error_code

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ECR/AWS error codes that indicate a transient server-side condition
TRANSIENT_ERROR_CODES = {
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServerException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "RequestTimeout",
    "RequestTimeoutException",
}

# Substrings of transport failures (botocore EndpointConnectionError, ReadTimeoutError, socket errors)
NETWORK_INDICATORS = (
    "connection",
    "could not connect",
    "timeout",
    "timed out",
    "network",
    "dns",
    "name resolution",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "temporary failure",
)

PERMANENT_CATEGORIES = (
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.CONFIGURATION,
    ErrorCategory.PERMISSION,
    ErrorCategory.RESOURCE,
)


class RetryableErrorType(Enum):
    """How a failed call should be treated"""

    NETWORK = "network"  # transport failures: endpoint unreachable, timeouts
    TEMPORARY = "temporary"  # throttling, 5xx
    PERMANENT = "permanent"  # bad credentials, missing repository, other 4xx


def _http_status(error: Exception) -> Optional[int]:
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        return response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return None


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Classify a failed ECR call.

    Wrapped errors (an ActionableError with a ``cause``) are judged by what they
    wrap. AWS error codes are checked before HTTP status, and the message text
    is the last resort. Anything unrecognised is treated as temporary.

    Returns:
        (should_retry, error_type)
    """
    cause = getattr(error, "cause", None)
    if isinstance(cause, Exception):
        return is_retryable_error(cause, error_message)

    if isinstance(error, ActionableError) and error.category in PERMANENT_CATEGORIES:
        return False, RetryableErrorType.PERMANENT

    code = aws_error_code(error)
    if code in AUTH_ERROR_CODES:
        return False, RetryableErrorType.PERMANENT
    if code in TRANSIENT_ERROR_CODES:
        return True, RetryableErrorType.TEMPORARY

    status = _http_status(error)
    if status is not None:
        if status == 429 or status >= 500:
            return True, RetryableErrorType.TEMPORARY
        if status >= 400:
            return False, RetryableErrorType.PERMANENT

    text = f"{error} {error_message}".lower()
    if any(indicator in text for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK
    if "throttl" in text or "rate exceeded" in text or "429" in text:
        return True, RetryableErrorType.TEMPORARY
    if "access denied" in text or "unauthorized" in text or "403" in text or "401" in text:
        return False, RetryableErrorType.PERMANENT
    if "not found" in text or "404" in text:
        return False, RetryableErrorType.PERMANENT

    return True, RetryableErrorType.TEMPORARY


def _backoff_delay(attempt: int, initial_delay: float, max_delay: float, exponential_base: float, jitter: bool) -> float:
    """Delay before retry number ``attempt + 1``, capped at ``max_delay``, +/-10% when jittered."""
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        spread = delay * 0.1
        delay = max(0.1, delay + random.uniform(-spread, spread))
    return delay


def _call_with_retries(
    call: Callable[[], T],
    name: str,
    max_retries: int,
    initial_delay: float,
    max_delay: float,
    exponential_base: float,
    jitter: bool,
    retry_on: Collection[RetryableErrorType],
) -> T:
    attempts = max_retries + 1
    for attempt in range(attempts):
        try:
            result = call()
        except Exception as e:
            retryable, error_type = is_retryable_error(e)
            if not retryable or error_type not in retry_on:
                logger.error(f"{name}: giving up on {error_type.value} error: {e}")
                raise
            if attempt == attempts - 1:
                logger.error(f"{name}: still failing after {attempts} attempts ({error_type.value}): {e}")
                raise
            delay = _backoff_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
            logger.warning(f"{name}: attempt {attempt + 1}/{attempts} hit a {error_type.value} error, "
                           f"retrying in {delay:.2f}s: {e}")
            time.sleep(delay)
        else:
            if attempt:
                logger.info(f"{name}: succeeded on attempt {attempt + 1}/{attempts}")
            return result


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_errors: Optional[Collection[RetryableErrorType]] = None,
) -> Callable:
    """Decorator retrying the wrapped call on network and temporary errors.

    Args:
        max_retries: Retries after the first attempt (default: 3)
        initial_delay: Seconds before the first retry (default: 1.0)
        max_delay: Upper bound for any single delay (default: 60.0)
        exponential_base: Growth factor of the delay (default: 2.0)
        jitter: Randomise each delay by up to 10% (default: True)
        retryable_errors: Error types worth retrying (default: NETWORK and TEMPORARY)

    The last error is re-raised once retries run out.
    """
    retry_on = retryable_errors or (RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return _call_with_retries(
                lambda: func(*args, **kwargs),
                func.__name__,
                max_retries,
                initial_delay,
                max_delay,
                exponential_base,
                jitter,
                retry_on,
            )

        return wrapper

    return decorator


def retry_operation(
    operation: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    operation_name: str = "operation",
) -> T:
    """Call ``operation`` with the same backoff as ``retry_with_backoff``, without decorating it.

    Used to resubmit a deletion batch that failed as a whole.

    Raises:
        The first permanent error, or the last error once retries run out
    """
    return _call_with_retries(
        operation,
        operation_name,
        max_retries,
        initial_delay,
        max_delay,
        exponential_base,
        jitter,
        (RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY),
    )
