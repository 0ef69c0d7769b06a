import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from qr_checkout.config import RETRY_BASE_DELAY

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    success: bool
    value: Any = None
    error: Optional[Exception] = None
    attempts: int = 0


def linear_backoff(base: float = RETRY_BASE_DELAY) -> Callable[[int], float]:
    return lambda attempt: base * attempt


def exponential_backoff(base: float = RETRY_BASE_DELAY) -> Callable[[int], float]:
    return lambda attempt: base * (2 ** (attempt - 1))


def no_backoff(attempt: int) -> float:
    return 0


def always(exc: Exception) -> bool:
    return True


def with_retry(
    operation: Callable[[], Any],
    max_attempts: int = 3,
    backoff: Callable[[int], float] = linear_backoff(),
    should_retry: Callable[[Exception], bool] = always,
    label: str = "operation",
) -> RetryResult:
    """Run ``operation`` up to ``max_attempts`` times.

    The last exception is returned in the result instead of raised. An
    exception rejected by ``should_retry`` ends the loop immediately.
    """
    error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return RetryResult(success=True, value=operation(), attempts=attempt)
        except Exception as exc:
            error = exc
            if attempt == max_attempts or not should_retry(exc):
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                return RetryResult(success=False, error=exc, attempts=attempt)
            delay = backoff(attempt)
            logger.info("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                        label, attempt, max_attempts, delay, exc)
            if delay > 0:
                time.sleep(delay)
    return RetryResult(success=False, error=error, attempts=max_attempts)
