"""
Rate-limit tracking for the testluy SDK.

The TestLuy API reports its quota window on every response through the
`x-ratelimit-limit`, `x-ratelimit-remaining` and `x-ratelimit-reset` headers.
`RateLimitTracker` keeps the most recently observed window so callers can
inspect it and the request pipeline can back off before exhausting it.

The tracker is shared by every call made through one client. Under concurrency
the last response wins, so treat `snapshot()` as an advisory hint, not as an
authoritative counter.

Example:
    >>> tracker = RateLimitTracker()
    >>> tracker.update({"x-ratelimit-limit": "60", "x-ratelimit-remaining": "59"})
    >>> tracker.snapshot()
    RateLimitState(limit=60, remaining=59, reset=None)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from typing import Any

from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

LIMIT_HEADER = "x-ratelimit-limit"
REMAINING_HEADER = "x-ratelimit-remaining"
RESET_HEADER = "x-ratelimit-reset"


@dataclass(frozen=True)
class RateLimitState:
    """
    Most recently observed rate-limit window.

    Attributes:
        limit: Maximum requests per window.
        remaining: Requests left in the current window.
        reset: Epoch seconds when the window resets.
    """

    limit: int | None = None
    remaining: int | None = None
    reset: int | None = None

    @property
    def is_exhausted(self) -> bool:
        """Return True if the server reported no requests left in the window."""
        return self.remaining is not None and self.remaining <= 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_int_header(headers: Mapping[str, str], name: str) -> int | None:
    """
    Parse a numeric header value.

    Args:
        headers: Response headers (looked up case-insensitively).
        name: Header name.

    Returns:
        The parsed integer, or None if the header is absent or malformed.
    """
    raw = CaseInsensitiveDict(headers).get(name)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(float(str(raw).strip()))
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed {name} header value: {raw!r}")
        return None


class RateLimitTracker:
    """
    Thread-safe holder of the last observed rate-limit window.

    Only the request pipeline calls `update()`; everything else reads through
    `snapshot()`.
    """

    def __init__(self) -> None:
        self._state: RateLimitState | None = None
        self._lock = threading.Lock()

    def update(self, headers: Mapping[str, str]) -> RateLimitState | None:
        """
        Merge rate-limit headers from a response into the tracked state.

        Absent or malformed headers leave the corresponding field untouched,
        so the state never regresses to None once populated.

        Args:
            headers: Response headers.

        Returns:
            The state after the update.
        """
        observed = {
            "limit": parse_int_header(headers, LIMIT_HEADER),
            "remaining": parse_int_header(headers, REMAINING_HEADER),
            "reset": parse_int_header(headers, RESET_HEADER),
        }
        changes = {k: v for k, v in observed.items() if v is not None}

        with self._lock:
            if changes:
                self._state = replace(self._state or RateLimitState(), **changes)
            return self._state

    def snapshot(self) -> RateLimitState | None:
        """Return the last observed state, or None before the first response."""
        return self._state

    def preemptive_delay(self, now: float | None = None) -> float:
        """
        Seconds to wait before sending, based on the tracked window.

        Returns a positive delay only when the server reported an exhausted
        window whose reset lies in the future.

        Args:
            now: Current epoch seconds (defaults to time.time()).

        Returns:
            Seconds until the window resets, or 0.0 if no wait is needed.
        """
        state = self._state
        if state is None or not state.is_exhausted or state.reset is None:
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, state.reset - current)
