"""
Retry policy for outbound notifications.

Errors are split into transient ones (worth another attempt after a
jittered exponential backoff) and permanent ones (bad number, oversized
message, rejected credentials). Anything unrecognised is treated as
permanent so a broken message is never retried forever.
"""

from dataclasses import dataclass
import random
from typing import Callable, Optional

import httpx

from smartwait.core.config import NotificationSettings, get_settings
from smartwait.core.exceptions import DeliveryError

RETRYABLE_KEYWORDS = ("timeout", "timed out", "unavailable", "rate limit", "temporarily", "connection")

NON_RETRYABLE_KEYWORDS = ("invalid phone number", "message too long", "invalid credentials", "unauthorized")

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: Optional[NotificationSettings] = None) -> "RetryPolicy":
        settings = settings or get_settings().notifications
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay_ms=settings.BASE_DELAY_MS,
            max_delay_ms=settings.MAX_DELAY_MS,
            backoff_multiplier=settings.BACKOFF_MULTIPLIER,
            jitter_ratio=settings.JITTER_RATIO,
        )


def calculate_retry_delay(
    attempt: int,
    policy: Optional[RetryPolicy] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay in milliseconds before retry number ``attempt`` (0-based).

    The exponential term is capped at ``max_delay_ms`` and up to
    ``jitter_ratio`` of it is added on top.
    """
    policy = policy or RetryPolicy()
    exponential = policy.base_delay_ms * (policy.backoff_multiplier ** max(0, attempt))
    capped = min(policy.max_delay_ms, exponential)
    return capped + rng() * policy.jitter_ratio * capped


def is_retryable_error(error: BaseException) -> bool:
    """Whether a failed send is worth another attempt"""
    if isinstance(error, DeliveryError):
        if error.retryable:
            return True
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            return status_code in RETRYABLE_STATUS_CODES
        # Classified at the source
        if error.code is not None:
            return False

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES

    message = str(error).lower()
    if any(keyword in message for keyword in NON_RETRYABLE_KEYWORDS):
        return False
    return any(keyword in message for keyword in RETRYABLE_KEYWORDS)
