from datetime import datetime, timedelta
from typing import Optional

from fieldwork.domain.sla import utcnow
from fieldwork.settings import settings


def backoff_delay(
    attempts: int,
    base_delay_seconds: Optional[float] = None,
    max_delay_seconds: Optional[float] = None,
    multiplier: Optional[float] = None,
) -> timedelta:
    """
    Exponential backoff for the retry that follows the `attempts`-th failure.

    Formula:
        delay = min(max_delay, base * multiplier ^ (attempts - 1))

    So with the defaults (5s, x2, capped at 300s): 1 -> 5s, 2 -> 10s, 3 -> 20s.
    attempts <= 0 is treated as the first retry.
    """
    base = settings.NOTIFICATION_BASE_DELAY_SECONDS if base_delay_seconds is None else base_delay_seconds
    cap = settings.NOTIFICATION_MAX_DELAY_SECONDS if max_delay_seconds is None else max_delay_seconds
    factor = settings.NOTIFICATION_BACKOFF_MULTIPLIER if multiplier is None else multiplier

    # Past ~20 doublings every delay is capped anyway; keeps pow() small.
    exponent = min(max(attempts, 1) - 1, 20)
    delay = min(base * (factor ** exponent), cap)
    return timedelta(seconds=delay)


def calculate_next_retry(attempts: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + backoff_delay(attempts)
