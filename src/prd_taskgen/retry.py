"""Backoff helpers shared by adapter and orchestration retries."""

import random

from .models import RetryConfig


def calculate_retry_delay(attempt: int, retry_config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        retry_config: Retry configuration

    Returns:
        Delay in seconds
    """
    # Exponential backoff: base_delay * (exponential_base ^ attempt)
    delay = retry_config.base_delay_seconds * (
        retry_config.exponential_base ** attempt
    )

    # Cap at max delay
    delay = min(delay, retry_config.max_delay_seconds)

    # Add jitter (+/- jitter_factor)
    jitter = delay * retry_config.jitter_factor
    delay += random.uniform(-jitter, jitter)

    return max(0, delay)  # Never negative
