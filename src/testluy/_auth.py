"""
Authentication for the testluy SDK.

TestLuy authenticates every request with three headers:

    X-Client-ID:  the client identifier
    X-Timestamp:  whole seconds since epoch, generated when the request is sent
    X-Signature:  HMAC-SHA256 of METHOD, PATH, TIMESTAMP and BODY

The main classes are:
- Credentials: Immutable client id / secret key pair.
- AuthProvider: Abstract base class producing per-request auth headers.
- HmacAuthProvider: Signs requests with the shared secret.

Example:
    >>> from testluy._auth import Credentials, HmacAuthProvider
    >>> auth = HmacAuthProvider(Credentials(client_id="my-id", secret_key="my-secret"))
    >>> headers = auth.get_auth_headers("GET", "api/payment-simulator/status/abc", "")
    >>> # {"X-Client-ID": "my-id", "X-Timestamp": "1700000000", "X-Signature": "9f2c..."}
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

from testluy._errors import ConfigurationError
from testluy._signing import sign

CLIENT_ID_HEADER = "X-Client-ID"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_HEADER = "X-Signature"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Credentials:
    """
    Client identifier and shared secret.

    Values are stripped of surrounding whitespace. Neither value is ever shown
    in cleartext by `repr()`; use `masked_client_id` in log messages.

    Attributes:
        client_id: The client identifier, sent as X-Client-ID.
        secret_key: The shared secret, used only to compute signatures.

    Raises:
        ConfigurationError: If either value is missing or blank.
    """

    client_id: str
    secret_key: str = field(repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.client_id, str) or not self.client_id.strip():
            raise ConfigurationError("Client ID is required.")
        if not isinstance(self.secret_key, str) or not self.secret_key.strip():
            raise ConfigurationError("Secret key is required.")
        object.__setattr__(self, "client_id", self.client_id.strip())
        object.__setattr__(self, "secret_key", self.secret_key.strip())

    @property
    def masked_client_id(self) -> str:
        """Client id with all but its first 4 characters hidden."""
        if len(self.client_id) <= 4:
            return "****"
        return f"{self.client_id[:4]}****"

    def __repr__(self) -> str:
        return f"Credentials(client_id='{self.masked_client_id}', secret_key='********')"


# =============================================================================
# Abstract Base Class
# =============================================================================


class AuthProvider(ABC):
    """
    Abstract base class for authentication providers.

    Implementations must be thread-safe.
    """

    @abstractmethod
    def get_auth_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        """
        Return authentication headers for one request attempt.

        Args:
            method: Upper-case HTTP method.
            path: Signed request path (relative, no leading slash).
            body: Canonical JSON body text, or "".

        Returns:
            Headers to merge into the request.
        """
        pass


# =============================================================================
# Implementations
# =============================================================================


class HmacAuthProvider(AuthProvider):
    """
    Signs each request with HMAC-SHA256.

    A fresh timestamp is taken on every call, so a retried request is signed
    again with the time it is actually sent, within the server's allowed
    clock skew.

    Args:
        credentials: The client id / secret key pair.
        clock: Source of epoch seconds (injectable for tests).
    """

    def __init__(self, credentials: Credentials, clock: Callable[[], float] = time.time):
        assert credentials is not None, "credentials cannot be None"
        self._credentials = credentials
        self._clock = clock

    @property
    def client_id(self) -> str:
        return self._credentials.client_id

    @property
    def masked_client_id(self) -> str:
        return self._credentials.masked_client_id

    def timestamp(self) -> str:
        """Whole seconds since epoch, as a decimal string."""
        return str(int(self._clock()))

    def get_auth_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        timestamp = self.timestamp()
        return {
            CLIENT_ID_HEADER: self._credentials.client_id,
            TIMESTAMP_HEADER: timestamp,
            SIGNATURE_HEADER: sign(method, path, timestamp, body, self._credentials.secret_key),
        }
