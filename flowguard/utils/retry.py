from __future__ import annotations

import asyncio
import random
from typing import Optional

from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float = 500.0,
    multiplier: float = 2.0,
    jitter: float = 0.0,
    cap: Optional[float] = None,
) -> float:
    """Compute exponential backoff in milliseconds with optional jitter and cap."""
    delay = base * multiplier ** max(0, attempt - 1)
    delay += random.uniform(0, jitter) if jitter else 0.0
    if cap is not None:
        delay = min(delay, cap)
    return max(0.0, delay)


def retry_delay_ms(
    attempt: int, config: RetryConfig, remaining_ms: Optional[float] = None
) -> float:
    """Backoff for ``attempt`` bounded by the config and the remaining budget."""
    cap = config.max_delay_ms
    if remaining_ms is not None:
        cap = min(cap, remaining_ms)
    return compute_backoff(
        attempt,
        base=config.base_delay_ms,
        multiplier=config.multiplier,
        jitter=config.jitter_ms,
        cap=cap,
    )


async def schedule_retry(delay_ms: float) -> None:
    """Sleep for computed backoff delay before retrying."""
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)
