"""
HTTP transport abstraction for the testluy SDK.

The request pipeline talks to the network only through `HttpClient`, so tests
and callers can plug in their own transport (a recording fake, a proxy-aware
session, etc.).

Unlike generic JSON clients, `post()` receives the request body already
serialized: the body bytes on the wire must be exactly the text covered by
the request signature.

Available implementations:
    - RequestsHttpClient: Default transport backed by a `requests.Session`.

Example:
    >>> from testluy._http import RequestsHttpClient
    >>> client = RequestsHttpClient()
    >>> response = client.post(
    ...     "https://api.example.com/api/validate-credentials",
    ...     body="{}",
    ...     headers={"Content-Type": "application/json"},
    ... )
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing_extensions import override

import requests

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP transports.

    Implementations only move bytes: signing, retries and error
    classification are handled by the request pipeline.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def get(self, url, headers=None, timeout=30.0):
        ...         return requests.get(url, headers=headers, timeout=timeout)
        ...     def post(self, url, body=None, headers=None, timeout=30.0):
        ...         return requests.post(url, data=body, headers=headers, timeout=timeout)
    """

    @abstractmethod
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> requests.Response:
        """
        Execute a GET request.

        Args:
            url: The full URL to request.
            headers: Headers to send.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            requests.RequestException: If the request could not be performed.
        """
        pass

    @abstractmethod
    def post(
        self,
        url: str,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> requests.Response:
        """
        Execute a POST request with a pre-serialized body.

        Args:
            url: The full URL to request.
            body: Body text to send verbatim (UTF-8 encoded).
            headers: Headers to send.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            requests.RequestException: If the request could not be performed.
        """
        pass

    def close(self) -> None:
        """Release pooled connections, if any."""
        pass


# =============================================================================
# requests Implementation
# =============================================================================


class RequestsHttpClient(HttpClient):
    """
    HTTP transport backed by `requests`.

    A single `requests.Session` is created lazily and reused for connection
    pooling. Creation is guarded by a lock so the client can be shared across
    threads.

    Args:
        session: Optional pre-configured session (proxies, adapters, certs).
            If None, a new session is created on first use.
    """

    def __init__(self, session: requests.Session | None = None):
        self._session = session
        self._lock = threading.Lock()

    def _get_session(self) -> requests.Session:
        if self._session is None:
            with self._lock:
                if self._session is None:
                    self._session = requests.Session()
        return self._session

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        return self._get_session().get(
            url,
            headers=headers,
            timeout=timeout,
        )

    @override
    def post(
        self,
        url: str,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        return self._get_session().post(
            url,
            data=body.encode("utf-8") if body is not None else None,
            headers=headers,
            timeout=timeout,
        )

    @override
    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
