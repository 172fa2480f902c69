import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

MAX_JITTER = 1 / 3


def backoff_delay_seconds(
    attempts: int,
    base_delay_seconds: float = 30,
    max_delay_seconds: float = 600,
    jitter: float = 0.2,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with jitter for the retry following `attempts` failures.

    Formula:
        delay = min(base * 2^(attempts - 1) * uniform(1 - jitter, 1 + jitter), max_delay)

    Jitter is applied before the cap. With jitter <= 1/3 the lowest possible
    delay for attempt n+1 is never below the highest possible delay for
    attempt n, so successive delays are non-decreasing.

    Args:
        attempts: Attempts consumed so far, counting the one that just failed.
                  attempts <= 1 yields the base delay.
    """
    if not 0 <= jitter <= MAX_JITTER:
        raise ValueError(f"jitter must be between 0 and {MAX_JITTER:.3f}, got {jitter}")

    # 2^20 * base is far past any sane cap.
    exponent = min(max(attempts - 1, 0), 20)
    delay = base_delay_seconds * (2 ** exponent)

    if jitter:
        # Spread retries of jobs that failed together
        delay *= (rng or random).uniform(1 - jitter, 1 + jitter)

    return min(delay, max_delay_seconds)


def calculate_next_run(
    attempts: int,
    now: datetime,
    base_delay_seconds: float = 30,
    max_delay_seconds: float = 600,
    jitter: float = 0.2,
    rng: Optional[random.Random] = None,
) -> datetime:
    delay = backoff_delay_seconds(
        attempts,
        base_delay_seconds=base_delay_seconds,
        max_delay_seconds=max_delay_seconds,
        jitter=jitter,
        rng=rng,
    )
    return now + timedelta(seconds=delay)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 30
    max_delay_seconds: float = 600
    jitter: float = 0.2

    def next_run(self, attempts: int, now: datetime, rng: Optional[random.Random] = None) -> datetime:
        return calculate_next_run(
            attempts,
            now,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
            rng=rng,
        )
