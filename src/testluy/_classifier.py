"""
Classification of failed API calls.

`ErrorClassifier` turns a raw failure (an HTTP status with headers and body,
or a transport exception) into one of the `ApiError` kinds. The retry policy
then decides what to do purely from the class of the returned error, instead
of ad hoc status checks spread across call sites.

Classification order:
    1. 429                                      -> RateLimitedError
    2. 403/503/HTML 2xx with challenge marks    -> ProtectionChallengeError
    3. 404, or any status with "not found" text -> NotFoundError
    4. >= 500, timeouts, connection errors      -> TransientError
    5. anything else                            -> FatalError
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

import requests
from requests.structures import CaseInsensitiveDict

from testluy._errors import (
    ApiError,
    FatalError,
    NotFoundError,
    ProtectionChallengeError,
    RateLimitedError,
    TransientError,
)
from testluy._rate_limit import LIMIT_HEADER, REMAINING_HEADER, RESET_HEADER, parse_int_header

logger = logging.getLogger(__name__)

NOT_FOUND_PATTERN = re.compile(r"not\s+found", re.IGNORECASE)

# Account tiers from lowest to highest quota.
TIERS = ("explorer", "explorer_plus")
TIER_LABELS = {"explorer": "Explorer", "explorer_plus": "Explorer PLUS"}

# Ordered: the first matching marker decides the challenge type.
CHALLENGE_MARKERS: tuple[tuple[str, str], ...] = (
    ("cf-turnstile", "captcha"),
    ("g-recaptcha", "captcha"),
    ("h-captcha", "captcha"),
    ("cf_captcha", "captcha"),
    ("managed_challenge", "managed_challenge"),
    ("cf-chl-", "js_challenge"),
    ("challenge-platform", "js_challenge"),
    ("just a moment", "js_challenge"),
    ("checking your browser", "browser_verification"),
    ("attention required", "access_denied"),
)


def _normalize_tier(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, Mapping):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return default


def _parse_seconds(value: Any) -> float | None:
    """Parse a delay in seconds. HTTP-date values are not supported."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class ErrorClassifier:
    """
    Maps raw failures to classified ApiError instances.

    The classifier is stateless; a single instance can be shared.
    """

    def classify(
        self,
        status: int,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> ApiError:
        """
        Classify a failed response.

        Only non-2xx responses are accepted; a 2xx body that is not usable
        JSON goes through `detect_challenge()` instead.

        Args:
            status: HTTP status code (non-2xx).
            headers: Response headers.
            body: Decoded body: a dict for JSON responses, text otherwise.

        Returns:
            The classified error (not raised).
        """
        assert not (200 <= status < 300), f"Cannot classify a successful response (HTTP {status})."
        headers = CaseInsensitiveDict(headers or {})

        if status == 429:
            return self._rate_limited(headers, body)

        challenge_type = self.detect_challenge(status, headers, body)
        if challenge_type is not None:
            return ProtectionChallengeError(
                f"Protection challenge encountered (HTTP {status}, {challenge_type})",
                challenge_type=challenge_type,
                status_code=status,
                body=body,
            )

        message = _error_message(body, f"Request failed with status code {status}")

        if status == 404 or NOT_FOUND_PATTERN.search(message):
            return NotFoundError(message, status_code=status, body=body)

        if status >= 500:
            return TransientError(message, status_code=status, body=body)

        return FatalError(message, status_code=status, body=body)

    def classify_exception(self, exc: Exception) -> ApiError:
        """
        Classify a transport-level failure.

        Timeouts and connection errors are transient; any other
        RequestException (invalid URL, too many redirects...) is fatal.
        """
        if isinstance(exc, ApiError):
            return exc
        if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
            return TransientError(f"Network error: {exc}", cause=exc)
        return FatalError(f"Request could not be performed: {exc}")

    def detect_challenge(
        self,
        status: int,
        headers: Mapping[str, str],
        body: Any,
    ) -> str | None:
        """
        Detect a browser-verification challenge.

        Challenge pages come back as 403 or 503, and occasionally as a 2xx
        HTML page where JSON was expected.

        Returns:
            The challenge-type tag, or None if the response is not a challenge.
        """
        if status not in (403, 503) and not (200 <= status < 300):
            return None

        headers = CaseInsensitiveDict(headers)
        if headers.get("cf-mitigated", "").lower() == "challenge":
            return self._challenge_type_from_text(body) or "managed_challenge"

        if not isinstance(body, str) or not body:
            return None

        challenge_type = self._challenge_type_from_text(body)
        if challenge_type is not None:
            return challenge_type

        if 200 <= status < 300:
            return None

        text = body.lstrip().lower()
        server = headers.get("server", "").lower()
        if status == 403 and server == "cloudflare" and (text.startswith("<!doctype") or text.startswith("<html")):
            return "access_denied"
        return None

    @staticmethod
    def _challenge_type_from_text(body: Any) -> str | None:
        if not isinstance(body, str):
            return None
        text = body.lower()
        for marker, challenge_type in CHALLENGE_MARKERS:
            if marker in text:
                return challenge_type
        return None

    def _rate_limited(self, headers: CaseInsensitiveDict, body: Any) -> RateLimitedError:
        retry_after = _parse_seconds(headers.get("retry-after"))
        if retry_after is None and isinstance(body, Mapping):
            retry_after = _parse_seconds(body.get("retry_after"))

        tier = None
        upgrade_info = None
        if isinstance(body, Mapping):
            tier = _normalize_tier(body.get("tier") or body.get("subscription_tier") or body.get("plan"))
            provided = body.get("upgrade_info")
            upgrade_info = provided if isinstance(provided, str) and provided else None
        if upgrade_info is None:
            upgrade_info = self.upgrade_suggestion(tier)

        return RateLimitedError(
            _error_message(body, "Rate limit exceeded"),
            retry_after=retry_after,
            limit=parse_int_header(headers, LIMIT_HEADER),
            remaining=parse_int_header(headers, REMAINING_HEADER),
            reset=parse_int_header(headers, RESET_HEADER),
            tier=tier,
            upgrade_info=upgrade_info,
            body=body,
        )

    @staticmethod
    def upgrade_suggestion(tier: str | None) -> str | None:
        """
        Suggest the next tier when the reported one is not the highest.

        Unknown or missing tiers yield no suggestion.
        """
        if tier not in TIERS or tier == TIERS[-1]:
            return None
        next_tier = TIERS[TIERS.index(tier) + 1]
        return (
            f"Upgrade from {TIER_LABELS[tier]} to {TIER_LABELS[next_tier]} "
            f"for a higher rate limit."
        )


_DEFAULT_CLASSIFIER = ErrorClassifier()


def classify(status: int, headers: Mapping[str, str] | None = None, body: Any = None) -> ApiError:
    """Classify a failed response with the default classifier."""
    return _DEFAULT_CLASSIFIER.classify(status, headers, body)


def classify_exception(exc: Exception) -> ApiError:
    """Classify a transport exception with the default classifier."""
    return _DEFAULT_CLASSIFIER.classify_exception(exc)
