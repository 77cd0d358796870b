import random
from dataclasses import dataclass
from datetime import datetime, timedelta


def calculate_next_run(
    attempts: int,
    now: datetime,
    base_delay_seconds: int = 10,
    max_delay_seconds: int = 3600,
    jitter: bool = True
) -> datetime:
    """
    Calculates the next run time using exponential backoff with optional jitter.

    Formula:
        delay = min(base * (2 ^ (attempts - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    `attempts` is the number of attempts already made, so attempts=1 means
    "we failed once, when should we try again?" and yields the base delay.
    """
    safe_attempts = min(max(attempts - 1, 0), 20)

    delay = base_delay_seconds * (2 ** safe_attempts)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% jitter to avoid thundering herd
        delay += random.uniform(0, delay * 0.1)

    return now + timedelta(seconds=delay)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings for one queue.

    max_attempts is copied onto each item at enqueue; failure handling reads
    the item's own value. max_attempts=1 keeps `failed` terminal on the first
    failure.
    """
    max_attempts: int = 1
    base_delay_seconds: int = 10
    max_delay_seconds: int = 3600
    jitter: bool = True

    def next_run(self, attempts: int, now: datetime) -> datetime:
        return calculate_next_run(
            attempts,
            now,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
        )
