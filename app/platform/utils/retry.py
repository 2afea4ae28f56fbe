import logging
import time
from typing import Callable, Optional, Type, TypeVar

from app.platform.exceptions import AppError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit", "quota", "too many requests")

# Low-level failures a provider client may leak without wrapping
TRANSIENT_EXCEPTIONS = (TimeoutError, ConnectionError)


def is_rate_limited(error: BaseException) -> bool:
    """Rate limiting is flagged on ProviderError or spelled out in the message."""
    if getattr(error, "rate_limited", False):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, AppError):
        # Security, validation and persistence errors are never retried here
        return False
    return isinstance(error, TRANSIENT_EXCEPTIONS)


def backoff_delay(attempt: int, base_delay: float, rate_limited: bool = False) -> float:
    """base * 2^(attempt-1), doubled again when the provider is throttling us."""
    delay = base_delay * (2 ** (attempt - 1))
    if rate_limited:
        delay *= 2
    return delay


def with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    provider: str = "provider",
    target: Optional[str] = None,
    error_cls: Type[ProviderError] = ProviderError,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Invoke `operation` up to `max_attempts` times with exponential backoff.

    Terminal failures (configuration errors, malformed responses, anything not
    classified as transient) are raised immediately. When every attempt fails
    the last error is wrapped in `error_cls` naming the provider and target.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            last_error = e

            if not is_retryable(e):
                logger.warning(f"{provider} failed for {target} with a non-retryable error: {e}")
                raise

            if attempt >= max_attempts:
                break

            rate_limited = is_rate_limited(e)
            delay = backoff_delay(attempt, base_delay, rate_limited)
            if rate_limited:
                logger.warning(
                    f"{provider} rate limit hit for {target} (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.2f}s"
                )
            else:
                logger.warning(
                    f"{provider} attempt {attempt}/{max_attempts} failed for {target}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
            sleep(delay)

    logger.error(f"{provider} failed for {target} after {max_attempts} attempts: {last_error}")
    raise error_cls(
        f"{provider} failed after {max_attempts} attempts for {target}: {last_error}",
        {"provider": provider, "target": target, "attempts": max_attempts, "last_error": str(last_error)},
        provider=provider,
        retryable=False,
        rate_limited=is_rate_limited(last_error),
    ) from last_error
