"""
Exponential backoff arithmetic for the retry handler.

``delay = min(initial_delay_ms * backoff_multiplier ** attempt, max_delay_ms)``,
optionally increased by a uniform jitter drawn from
``[0, delay * jitter_factor)`` so that concurrent retries spread out.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.errors import ContractViolationError
from ..utils.config_types import RetrySettings


@dataclass(frozen=True)
class BackoffResult:
    delay_ms: int
    max_delay_reached: bool
    attempt_number: int


def apply_jitter(
    delay: float,
    jitter_factor: float,
    rng: Optional[Callable[[float, float], float]] = None,
) -> float:
    """Add a uniform jitter in ``[0, delay * jitter_factor)`` to ``delay``."""
    if not 0 <= jitter_factor <= 1:
        raise ContractViolationError(
            "Jitter factor must be between 0 and 1",
            context={"jitter_factor": jitter_factor},
        )
    uniform = rng or random.uniform
    return delay + uniform(0, delay * jitter_factor)


def calculate_backoff(
    attempt_number: int,
    config: Optional[RetrySettings] = None,
    rng: Optional[Callable[[float, float], float]] = None,
) -> BackoffResult:
    """
    Calculate the delay before retry ``attempt_number + 1``.

    Args:
        attempt_number: Zero-based index of the attempt that just failed.
        config: Retry settings; defaults are used when omitted.
        rng: Optional ``uniform(a, b)`` replacement for deterministic tests.
    """
    if attempt_number < 0:
        raise ContractViolationError(
            "Attempt number must be non-negative",
            context={"attempt_number": attempt_number},
        )
    config = config or RetrySettings()

    base_delay = config.initial_delay_ms * config.backoff_multiplier**attempt_number
    capped_delay = min(base_delay, config.max_delay_ms)

    final_delay = capped_delay
    if config.enable_jitter:
        final_delay = apply_jitter(capped_delay, config.jitter_factor, rng)

    return BackoffResult(
        delay_ms=int(round(final_delay)),
        max_delay_reached=base_delay >= config.max_delay_ms,
        attempt_number=attempt_number,
    )


def calculate_total_retry_time(config: Optional[RetrySettings] = None) -> int:
    """Sum of the backoff delays across all retries of one task."""
    config = config or RetrySettings()
    return sum(
        calculate_backoff(attempt, config).delay_ms
        for attempt in range(config.max_retries)
    )


async def sleep(delay_ms: float) -> None:
    if delay_ms < 0:
        raise ContractViolationError(
            "Delay must be non-negative", context={"delay_ms": delay_ms}
        )
    await asyncio.sleep(delay_ms / 1000)
