"""Exponential backoff for transient delivery failures."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """How often and how long to wait between attempts."""

    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


# Peer messages are interactive, so keep the total wait short
PEER_POLICY = BackoffPolicy(max_retries=2, base_delay=0.25, max_delay=2.0)
CLOUD_POLICY = BackoffPolicy(max_retries=3, base_delay=1.0, max_delay=30.0)


class RetryExhausted(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts")


def delay_for(attempt: int, policy: BackoffPolicy) -> float:
    """Delay before retry number ``attempt`` (0-indexed), with +/- 25% jitter."""
    delay = min(policy.base_delay * (policy.exponential_base ** attempt), policy.max_delay)
    if policy.jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    policy: Optional[BackoffPolicy] = None,
    retryable: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the policy runs out.

    Raises:
        RetryExhausted: every attempt raised one of ``retryable``
        Exception: anything not in ``retryable`` propagates immediately
    """
    policy = policy or BackoffPolicy()
    last_error: Optional[Exception] = None

    for attempt in range(policy.max_retries + 1):
        try:
            return func()
        except retryable as e:
            last_error = e
            if attempt >= policy.max_retries:
                break
            delay = delay_for(attempt, policy)
            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s...")
            sleep(delay)

    raise RetryExhausted(policy.max_retries + 1, last_error)
