"""
Rate-limit aware retry for generative-model calls.

Anthropic (and the other HTTP collaborators) signal throttling in several
shapes — a 429 status on the error or its response, a nested
``{'type': 'rate_limit_error'}`` body, or just the words in the message.
with_rate_limit_retry() waits out the limit on a fixed backoff schedule
(honouring any Retry-After hint) and raises RateLimitError once the attempts
are used up, so the dispatcher can pause the run instead of failing it.
"""
import logging
import math
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

from app.config import (
    RATE_LIMIT_JITTER_MS, RATE_LIMIT_MAX_ATTEMPTS, RATE_LIMIT_SCHEDULE_MS,
)

logger = logging.getLogger('services.rate_limit')

RATE_LIMIT_CODE = 'RATE_LIMIT'


class RateLimitError(Exception):
    """Raised when a call is still rate limited after every retry attempt."""
    code = RATE_LIMIT_CODE

    def __init__(self, message, cause=None, retry_after_ms=None):
        super().__init__(message)
        self.cause = cause
        self.retry_after_ms = retry_after_ms


def _status_of(obj) -> Optional[int]:
    for attr in ('status', 'status_code'):
        value = getattr(obj, attr, None)
        if isinstance(value, int):
            return value
    return None


def _nested_error_type(err) -> Optional[str]:
    nested = getattr(err, 'error', None)
    if isinstance(nested, dict) and nested.get('type'):
        return nested.get('type')
    body = getattr(err, 'body', None)
    if isinstance(body, dict):
        inner = body.get('error')
        if isinstance(inner, dict):
            return inner.get('type')
    return None


def is_rate_limit_error(err) -> bool:
    """True if err looks like a rate-limit signal from any collaborator."""
    if isinstance(err, RateLimitError):
        return True
    if getattr(err, 'code', None) == RATE_LIMIT_CODE:
        return True
    if _status_of(err) == 429:
        return True
    response = getattr(err, 'response', None)
    if response is not None and _status_of(response) == 429:
        return True
    if _nested_error_type(err) == 'rate_limit_error':
        return True

    message = str(err).lower()
    return 'rate limit' in message or '429' in message


def parse_retry_after_ms(err) -> Optional[int]:
    """
    Read a Retry-After hint off the error (or its response) in milliseconds.

    Accepts integer seconds or an HTTP date; a date in the past yields 0.
    Returns None when there is no usable header.
    """
    headers = getattr(err, 'headers', None)
    if headers is None:
        headers = getattr(getattr(err, 'response', None), 'headers', None)
    if not headers:
        return None

    try:
        raw = headers.get('retry-after') or headers.get('Retry-After')
    except AttributeError:
        return None
    if not raw:
        return None

    raw = str(raw).strip()
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        # "inf", "nan" and 1e400 parse as floats but are not usable waits
        if not math.isfinite(seconds) or seconds < 0:
            return None
        return int(round(seconds * 1000))

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds() * 1000
    return max(0, int(delta))


def compute_delay_ms(attempt: int, retry_after_ms: Optional[int] = None) -> int:
    """Delay before retry number `attempt` (1-based): schedule + jitter, or the hint if longer."""
    idx = max(0, min(attempt - 1, len(RATE_LIMIT_SCHEDULE_MS) - 1))
    scheduled = RATE_LIMIT_SCHEDULE_MS[idx] + random.randrange(RATE_LIMIT_JITTER_MS)
    return max(retry_after_ms or 0, scheduled)


def with_rate_limit_retry(
    operation: str,
    fn: Callable[[], Any],
    max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
):
    """
    Call fn(), retrying on rate-limit errors.

    Non-rate-limit errors propagate unchanged on the first occurrence.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise

            retry_after_ms = parse_retry_after_ms(e)
            if attempt >= max_attempts:
                raise RateLimitError(
                    f"Rate limit in {operation} after {max_attempts} attempts",
                    cause=e,
                    retry_after_ms=retry_after_ms,
                ) from e

            delay_ms = compute_delay_ms(attempt, retry_after_ms)
            logger.warning(
                "%s rate limited (attempt %d/%d) — waiting %ds",
                operation, attempt, max_attempts, round(delay_ms / 1000),
            )
            time.sleep(delay_ms / 1000)

    raise RuntimeError(f"Retry loop exited unexpectedly for {operation}")
