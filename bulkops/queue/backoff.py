"""Exponential backoff with centred jitter.

Shared by the request queue (transient per-item retries) and the recovery
retry handler so both wait according to the same policy.
"""

import random
from typing import Optional

from ..models.config import QueueConfig


def calculate_retry_delay(
    retry_count: int,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    jitter_ratio: float = 0.2,
    rng: Optional[random.Random] = None
) -> float:
    """Calculate the delay before retry number ``retry_count``.

    The delay is ``min(max_delay, initial_delay * backoff_factor ** retry_count)``
    scaled by a uniform factor in ``[1 - jitter_ratio, 1 + jitter_ratio]``.
    The jittered value is clamped to ``max_delay``.

    Args:
        retry_count: Number of retries already performed (0 for the first retry)
        initial_delay: Base delay in seconds
        backoff_factor: Exponential growth factor
        max_delay: Upper bound in seconds
        jitter_ratio: Relative jitter width around the computed delay
        rng: Random source, mainly for deterministic tests

    Returns:
        Delay in seconds, never negative.
    """
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")

    try:
        delay = initial_delay * (backoff_factor ** retry_count)
    except OverflowError:
        delay = max_delay
    delay = min(delay, max_delay)

    if jitter_ratio > 0:
        uniform = (rng or random).uniform
        delay *= 1.0 + uniform(-jitter_ratio, jitter_ratio)

    return max(0.0, min(delay, max_delay))


def retry_delay_for(config: QueueConfig, retry_count: int, rng: Optional[random.Random] = None) -> float:
    """Calculate a retry delay using the queue configuration."""
    return calculate_retry_delay(
        retry_count,
        initial_delay=config.initial_retry_delay,
        backoff_factor=config.backoff_factor,
        max_delay=config.max_retry_delay,
        jitter_ratio=config.jitter_ratio,
        rng=rng
    )
