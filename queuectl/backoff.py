"""
Exponential retry backoff.
"""

from dataclasses import dataclass

from queuectl.constants import DEFAULT_BACKOFF_BASE


def compute_delay(attempts: int, base: int, max_delay: float | None = None) -> float:
    """
    Seconds to wait before a failed job becomes claimable again.

    ``attempts`` is the count after the claim that just failed, so the first
    retry of a job with base 2 waits 2 seconds, the third waits 8.

    Args:
        attempts: Attempts so far, including the failed one.
        base: Exponent base.
        max_delay: Optional ceiling in seconds.

    Returns:
        Delay in seconds.
    """
    if attempts < 0:
        raise ValueError("attempts must be non-negative")
    delay = float(base**attempts)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff parameters bound together for a worker."""

    base: int = DEFAULT_BACKOFF_BASE
    max_delay: float | None = None

    def delay(self, attempts: int) -> float:
        return compute_delay(attempts, self.base, self.max_delay)
