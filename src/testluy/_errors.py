"""
Error taxonomy for the testluy SDK.

Every failure surfaced by the SDK is a subclass of `TestluyError`. Failures
that originate from the remote API (or from the network while talking to it)
are `ApiError`s and carry a machine-readable `kind` so callers can react to
them without inspecting status codes:

    - RateLimitedError: HTTP 429, carries retry-after and rate-limit window.
    - ProtectionChallengeError: a browser-verification page was returned.
    - NotFoundError: the requested resource does not exist.
    - TransientError: 5xx or network-level failure (timeout, connection reset).
    - FatalError: any other non-2xx response.

RateLimitedError and TransientError extend RetryableError, so the retry policy
treats them as worth retrying; every other kind surfaces immediately.

Example:
    >>> try:
    ...     client.get_payment_status("txn_123")
    ... except RateLimitedError as e:
    ...     print(f"Slow down, retry after {e.retry_after}s ({e.upgrade_info})")
    ... except NotFoundError:
    ...     print("Unknown transaction")
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from testluy._retry import RetryableError

if TYPE_CHECKING:
    from testluy._rate_limit import RateLimitState


class ErrorKind(Enum):
    """Classification of a failed API call."""
    RATE_LIMITED = "rate_limited"
    PROTECTION_CHALLENGE = "protection_challenge"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


# =============================================================================
# Base Exceptions
# =============================================================================


class TestluyError(Exception):
    """
    Base class for all errors raised by the testluy SDK.

    Attributes:
        message: Human-readable error message.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TestluyError, ValueError):
    """
    Raised when caller input is malformed. Never sent over the wire.

    Attributes:
        field: Name of the offending argument.
        value: The rejected value.
    """

    def __init__(self, field: str, value: Any, message: str):
        super().__init__(f"Invalid value for '{field}': {value!r}. {message}")
        self.field = field
        self.value = value


class ConfigurationError(TestluyError, ValueError):
    """Raised when a client is set up with missing or invalid configuration."""

    pass


class CancelledError(TestluyError):
    """
    Raised when a call is abandoned through its CancellationToken.

    Attributes:
        attempts: Number of attempts performed before cancellation was observed.
    """

    def __init__(self, message: str = "Request cancelled", attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


# =============================================================================
# Classified API Errors
# =============================================================================


class ApiError(TestluyError):
    """
    Base class for classified failures of a remote API call.

    The request pipeline enriches the error with `attempts`, `elapsed` and
    `rate_limit` right before surfacing it to the caller.

    Attributes:
        kind: The classification of this failure.
        status_code: HTTP status code, or None for transport-level failures.
        body: The decoded response body (dict or text), if any.
        attempts: Number of attempts performed by the pipeline.
        elapsed: Seconds spent in the pipeline, retry waits included.
        rate_limit: Rate-limit snapshot observed when the error surfaced.
    """

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts: int = 0
        self.elapsed: float = 0.0
        self.rate_limit: RateLimitState | None = None

    @property
    def retryable(self) -> bool:
        """Return True if the retry policy may retry this kind of failure."""
        return isinstance(self, RetryableError)

    def details(self) -> dict[str, Any]:
        """Kind-specific payload. Subclasses extend it."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """
        Render the error as structured data for a presentation layer.

        Returns:
            Dict with kind, message, status code, kind-specific details
            and pipeline diagnostics.
        """
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details(),
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
        }


class RateLimitedError(ApiError, RetryableError):
    """
    Raised when the server answers HTTP 429 (Too Many Requests).

    Attributes:
        retry_after: Seconds the server asked to wait, if provided.
        limit: Requests allowed per window (x-ratelimit-limit).
        remaining: Requests left in the window (x-ratelimit-remaining).
        reset: Epoch seconds when the window resets (x-ratelimit-reset).
        tier: Account tier reported by the server, if any.
        upgrade_info: Upgrade guidance when the tier is not the highest one.
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        limit: int | None = None,
        remaining: int | None = None,
        reset: int | None = None,
        tier: str | None = None,
        upgrade_info: str | None = None,
        body: Any = None,
    ):
        super().__init__(message, status_code=429, body=body)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining
        self.reset = reset
        self.tier = tier
        self.upgrade_info = upgrade_info

    def details(self) -> dict[str, Any]:
        return {
            "retry_after": self.retry_after,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
            "tier": self.tier,
            "upgrade_info": self.upgrade_info,
        }


class ProtectionChallengeError(ApiError):
    """
    Raised when a bot-protection layer answers with a browser-verification page.

    Bypassing the challenge is out of the SDK's hands, so it is never retried.

    Attributes:
        challenge_type: Tag describing the challenge (e.g. "managed_challenge").
    """

    kind = ErrorKind.PROTECTION_CHALLENGE

    def __init__(
        self,
        message: str = "Protection challenge encountered",
        *,
        challenge_type: str = "browser_verification",
        status_code: int | None = 403,
        body: Any = None,
    ):
        super().__init__(message, status_code=status_code, body=body)
        self.challenge_type = challenge_type

    def details(self) -> dict[str, Any]:
        return {"challenge_type": self.challenge_type}


class NotFoundError(ApiError):
    """Raised when the requested resource (e.g. a transaction) does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Resource not found", *, status_code: int | None = 404, body: Any = None):
        super().__init__(message, status_code=status_code, body=body)


class TransientError(ApiError, RetryableError):
    """
    Raised on 5xx responses and network failures (timeouts, connection resets).

    Attributes:
        cause: The transport exception, for network-level failures.
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, status_code=status_code, body=body)
        self.cause = cause

    def details(self) -> dict[str, Any]:
        return {"cause": type(self.cause).__name__ if self.cause else None}


class FatalError(ApiError):
    """Raised on any other non-2xx response or unusable success payload."""

    kind = ErrorKind.FATAL
