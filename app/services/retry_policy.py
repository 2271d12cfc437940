"""
Retry policy for failed job executions.

Backoff is exponential in the attempt count, capped at
RETRY_MAX_BACKOFF_SECONDS, and never shorter than the linear
``base * attempts``. The first retry therefore waits exactly ``base``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.utils.payload_sanitizer import sanitize_multiline, truncate_message
from app.utils.time import ensure_utc, utc_now

DEFAULT_ERROR_MESSAGE = "Unknown scheduler error"


@dataclass(frozen=True)
class RetryDecision:
    attempts: int
    terminal: bool
    retry_at: Optional[datetime]
    last_error: str


def compute_backoff_seconds(attempts: int, base: int, cap: Optional[int] = None) -> int:
    """Delay before the next run after ``attempts`` failed executions."""
    attempts = max(1, int(attempts))
    base = max(0, int(base))
    limit = settings.RETRY_MAX_BACKOFF_SECONDS if cap is None else cap

    linear = base * attempts
    # Clamp the exponent; the cap is reached long before this for any sane base.
    exponential = min(base * (2 ** min(attempts - 1, 32)), limit)
    return max(linear, exponential)


def format_error(error: object) -> str:
    """Single bounded message for last_error and attempt rows."""
    if isinstance(error, BaseException):
        text = str(error) or error.__class__.__name__
    elif error is None:
        text = ""
    else:
        text = str(error)
    cleaned = sanitize_multiline(text)
    return truncate_message(cleaned or DEFAULT_ERROR_MESSAGE)


def decide_retry(
    attempts: int,
    max_attempts: int,
    base: int,
    error: object,
    fatal: bool = False,
    now: Optional[datetime] = None,
) -> RetryDecision:
    """
    Count one more failed attempt and decide between a retry and terminal failure.

    ``attempts`` is the count before this failure. The result never exceeds
    ``max_attempts``.
    """
    next_attempts = min(attempts + 1, max_attempts)
    last_error = format_error(error)

    if fatal or next_attempts >= max_attempts:
        return RetryDecision(attempts=next_attempts, terminal=True, retry_at=None, last_error=last_error)

    current = ensure_utc(now) if now is not None else utc_now()
    delay = compute_backoff_seconds(next_attempts, base)
    return RetryDecision(
        attempts=next_attempts,
        terminal=False,
        retry_at=current + timedelta(seconds=delay),
        last_error=last_error,
    )
