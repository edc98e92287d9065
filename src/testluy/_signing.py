"""
Request signing for the TestLuy API.

Each request is authenticated with an HMAC-SHA256 signature computed over the
exact bytes the server can observe:

    METHOD + "\\n" + PATH + "\\n" + TIMESTAMP + "\\n" + BODY

where BODY is the canonical JSON text actually transmitted (empty string for
requests without a body). Nothing else (header order, salts) takes part in
the signature, so the server can reproduce it from the same four fields.

Example:
    >>> from testluy._signing import canonical_json, sign
    >>> body = canonical_json({"amount": 10.5})
    >>> sign("POST", "api/payment-simulator/generate-url", "1700000000", body, "secret")
    '4c1d...'
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

from testluy._errors import ConfigurationError

SIGNATURE_ALGORITHM = "HMAC-SHA256"


def canonical_json(body: Mapping[str, Any] | None) -> str:
    """
    Serialize a request body to its canonical JSON text.

    Keys are sorted and separators carry no whitespace, so the same body always
    yields the same text (and therefore the same signature).

    Args:
        body: The request body, or None for requests without a body.

    Returns:
        The canonical JSON text, or an empty string when body is None.
    """
    if body is None:
        return ""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def string_to_sign(method: str, path: str, timestamp: str, body: str) -> str:
    """Return the exact text covered by the signature."""
    return f"{method}\n{path}\n{timestamp}\n{body}"


def sign(method: str, path: str, timestamp: str, body: str, secret: str) -> str:
    """
    Compute the request signature.

    Args:
        method: Upper-case HTTP method ("GET" or "POST").
        path: Request path relative to the base URL, without leading slash.
        timestamp: Whole seconds since epoch, as a decimal string.
        body: Canonical JSON text transmitted, or "" when there is no body.
        secret: The shared secret key.

    Returns:
        Lowercase hex HMAC-SHA256 digest (64 characters).

    Raises:
        ConfigurationError: If secret is empty.
    """
    if not secret:
        raise ConfigurationError("Secret key is required to sign requests.")

    assert method == method.upper(), f"method must be upper-case, got {method!r}"
    assert not path.startswith("/"), f"path must not start with '/', got {path!r}"
    assert timestamp.isdigit(), f"timestamp must be whole seconds, got {timestamp!r}"

    message = string_to_sign(method, path, timestamp, body)
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
