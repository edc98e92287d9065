"""
Retry policy with exponential backoff and jitter.

The policy is a pure decision function: given the attempt number and the
classified failure, it answers whether to retry and how long to wait. The
request pipeline owns the loop and the waiting.

    delay = min(max_delay, base_delay * backoff_factor ** attempt)
    delay = delay * uniform(1 - jitter_factor, 1 + jitter_factor)
    delay = max(delay, retry_after)   # never retry sooner than the server asked

Example:
    >>> from testluy._config import RetryConfig
    >>> from testluy._errors import TransientError
    >>> policy = RetryPolicy(RetryConfig(max_retries=3, base_delay=1.0))
    >>> decision = policy.next_delay(0, TransientError("HTTP 503", status_code=503))
    >>> decision.retry, round(decision.delay)
    (True, 1)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from testluy._config import RetryConfig

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Base class for exceptions that the retry policy is allowed to retry.

    New retryable failures are declared by extending this class, without
    modifying the policy.

    Example:
        >>> class MyTransientError(RetryableError):
        ...     '''Custom retryable error.'''
        ...     pass
    """

    pass


class Jitter:
    """
    Bounded random perturbation of a delay.

    A factor of 0.20 multiplies values by a random number in [0.80, 1.20],
    desynchronizing concurrent callers that failed at the same moment.

    Example:
        >>> jitter = Jitter(factor=0.20)
        >>> jittered = jitter.apply(10.0)  # Returns ~8-12

    Args:
        factor: Jitter factor (default: 0.20 = +/-20%).
        rng: Optional RNG for testing.
    """

    def __init__(self, factor: float = 0.20, rng: random.Random | None = None):
        assert factor >= 0, "factor must be non-negative"
        assert factor < 1, "factor must be less than 1"

        self.factor = factor
        self._rng = rng or random.Random()

    def next(self) -> float:
        """Return a random multiplier in [1-factor, 1+factor]."""
        return self._rng.uniform(1.0 - self.factor, 1.0 + self.factor)

    def apply(self, value: float) -> float:
        """Apply jitter to a value, never returning less than zero."""
        return max(0.0, value * self.next())


@dataclass(frozen=True)
class RetryDecision:
    """
    Outcome of consulting the retry policy for one failed attempt.

    Attributes:
        retry: Whether another attempt should be made.
        delay: Seconds to wait before the next attempt (0 when not retrying).
        attempt: Zero-based index of the attempt that failed.
        reason: Short explanation, used in log messages.
    """

    retry: bool
    delay: float
    attempt: int
    reason: str = ""


class RetryPolicy:
    """
    Decides whether and when to retry a failed attempt.

    Only failures extending RetryableError (rate-limited and transient ones)
    are retried, and only while `attempt < max_retries`. With max_retries=0
    the pipeline performs exactly one attempt.

    Args:
        config: Retry bounds (max_retries, base_delay, max_delay,
            backoff_factor, jitter_factor, max_retry_after).
        rng: Optional RNG used for jitter, for deterministic tests.
    """

    def __init__(self, config: RetryConfig, rng: random.Random | None = None):
        assert config is not None, "config cannot be None"
        assert config.max_retries >= 0, f"max_retries must be >= 0, got {config.max_retries}"
        assert config.base_delay >= 0, f"base_delay must be >= 0, got {config.base_delay}"
        assert config.backoff_factor >= 1, f"backoff_factor must be >= 1, got {config.backoff_factor}"

        self.config = config
        self._jitter = Jitter(factor=config.jitter_factor, rng=rng)

    @property
    def max_attempts(self) -> int:
        """Total number of attempts allowed (1 original + max_retries)."""
        return self.config.max_retries + 1

    def computed_delay(self, attempt: int) -> float:
        """
        Exponential backoff for the given attempt, before jitter.

        Non-decreasing in attempt and bounded by max_delay.
        """
        assert attempt >= 0, f"attempt must be >= 0, got {attempt}"
        cfg = self.config
        try:
            delay = cfg.base_delay * (cfg.backoff_factor ** attempt)
        except OverflowError:
            return cfg.max_delay
        return min(cfg.max_delay, delay)

    def next_delay(
        self,
        attempt: int,
        error: Exception,
        retry_after: float | None = None,
    ) -> RetryDecision:
        """
        Decide whether to retry after a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed.
            error: The classified failure.
            retry_after: Server-provided wait hint. Defaults to the error's own
                `retry_after` attribute when present.

        Returns:
            RetryDecision with the retry flag and the delay in seconds.
        """
        if not isinstance(error, RetryableError):
            return RetryDecision(retry=False, delay=0.0, attempt=attempt, reason="not retryable")

        if attempt >= self.config.max_retries:
            return RetryDecision(retry=False, delay=0.0, attempt=attempt, reason="retries exhausted")

        if retry_after is None:
            retry_after = getattr(error, "retry_after", None)

        if retry_after is not None and retry_after > self.config.max_retry_after:
            logger.warning(
                f"Retry-After ({retry_after}s) exceeds max_retry_after "
                f"({self.config.max_retry_after}s). Giving up instead of retrying early."
            )
            return RetryDecision(retry=False, delay=0.0, attempt=attempt, reason="retry-after too long")

        delay = self._jitter.apply(self.computed_delay(attempt))
        if retry_after is not None and retry_after > delay:
            return RetryDecision(retry=True, delay=float(retry_after), attempt=attempt, reason="retry-after")

        return RetryDecision(retry=True, delay=delay, attempt=attempt, reason="backoff")
