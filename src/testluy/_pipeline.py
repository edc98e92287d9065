"""
Resilient request pipeline.

`RequestPipeline` performs one logical API call as a small state machine:

    BUILDING -> SENDING -> SUCCESS
                        -> CLASSIFYING -> RETRYING -> BUILDING
                                       -> FAILED

- BUILDING: resolve the path, serialize the body, take a fresh timestamp and sign.
- SENDING: call the transport with a bounded timeout.
- CLASSIFYING: turn a non-2xx response or transport error into an ApiError
  and ask the retry policy what to do.
- RETRYING: wait the computed delay. This is the only suspension point and it
  holds no lock, so other calls through the same client proceed meanwhile.
- SUCCESS / FAILED: terminal. Failures surface enriched with the attempt
  count, elapsed time and the last rate-limit snapshot.

Every HTTP response, successful or not, updates the shared RateLimitTracker.

Example:
    >>> pipeline = RequestPipeline(
    ...     auth=HmacAuthProvider(Credentials("my-id", "my-secret")),
    ...     base_url="https://api-testluy.paragoniu.app",
    ... )
    >>> data = pipeline.execute(RequestDescriptor("POST", "validate-credentials", {}))
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

import requests

from testluy._auth import AuthProvider
from testluy._classifier import ErrorClassifier
from testluy._errors import ApiError, CancelledError, FatalError, ProtectionChallengeError
from testluy._http import HttpClient, RequestsHttpClient
from testluy._rate_limit import RateLimitTracker
from testluy._retry import RetryDecision, RetryPolicy
from testluy._signing import SIGNATURE_ALGORITHM, canonical_json

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST")


class PipelineState(Enum):
    """States of one call through the request pipeline."""
    BUILDING = "BUILDING"
    SENDING = "SENDING"
    CLASSIFYING = "CLASSIFYING"
    RETRYING = "RETRYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.SUCCESS, PipelineState.FAILED)


class CancellationToken:
    """
    Per-call cancellation signal.

    Pass the same token to `execute()` and call `cancel()` from any thread to
    abandon the call. A retry wait in progress is interrupted immediately. An
    in-flight HTTP request cannot be interrupted; it is bounded by the request
    timeout and its result is discarded once cancellation is observed.

    Example:
        >>> token = CancellationToken()
        >>> threading.Timer(5.0, token.cancel).start()
        >>> pipeline.execute(request, cancel_token=token)  # raises CancelledError after 5s
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """
        Block for up to `timeout` seconds.

        Returns:
            True if the token was cancelled during (or before) the wait.
        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self, attempts: int = 0) -> None:
        if self.is_cancelled:
            raise CancelledError(attempts=attempts)


@dataclass(frozen=True)
class RequestDescriptor:
    """
    What to send: method, operation path and body.

    The timestamp and signature are not part of the descriptor; they are
    generated for each attempt at send time.

    Attributes:
        method: "GET" or "POST".
        path: Operation path relative to the API prefix (e.g. "validate-credentials").
        body: JSON-serializable body, or None. Never sent with GET.
    """
    method: str
    path: str
    body: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        assert self.method in ALLOWED_METHODS, f"method must be one of {ALLOWED_METHODS}, got {self.method!r}"
        assert self.path and self.path.strip("/"), "path cannot be empty."
        assert not (self.method == "GET" and self.body is not None), "GET requests cannot carry a body."


@dataclass(frozen=True)
class PreparedRequest:
    """A signed, ready-to-send request attempt."""
    method: str
    url: str
    signed_path: str
    body: str
    headers: dict[str, str]


def _decode_body(response: requests.Response) -> Any:
    """Return the JSON body when possible, the raw text otherwise."""
    text = response.text
    if not text or not text.strip():
        return None
    try:
        return response.json()
    except ValueError:
        return text


class RequestPipeline:
    """
    Orchestrates signing, sending, classification, retry and rate-limit tracking.

    A pipeline instance is stateless per call apart from the shared
    RateLimitTracker, so it can be used concurrently from several threads.

    Args:
        auth: Produces the X-Client-ID / X-Timestamp / X-Signature headers.
        base_url: Base URL of the API.
        path_prefix: Prefix joined in front of every operation path, resolved
            once here ("" for none).
        request_timeout: Per-attempt HTTP timeout in seconds.
        retry_policy: Retry decisions. Defaults to RetryPolicy(RetryConfig()).
        http_client: Transport. Defaults to RequestsHttpClient().
        classifier: Error classifier. Defaults to ErrorClassifier().
        rate_limit_tracker: Shared rate-limit state. Defaults to a new tracker.
        preemptive_backoff: Wait for the window reset before sending when the
            last response reported no requests left.
        waiter: Callable(delay, token) -> cancelled flag, used for every wait.
            Defaults to CancellationToken.wait.
        clock: Monotonic clock used to measure elapsed time.
        logger_prefix: Prefix for log messages (e.g. "Testluy(abcd****)").
    """

    def __init__(
        self,
        auth: AuthProvider,
        base_url: str,
        path_prefix: str = "api",
        request_timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        http_client: HttpClient | None = None,
        classifier: ErrorClassifier | None = None,
        rate_limit_tracker: RateLimitTracker | None = None,
        preemptive_backoff: bool = False,
        waiter: Callable[[float, CancellationToken], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger_prefix: str = "",
    ):
        assert auth is not None, "auth cannot be None"
        assert base_url, "base_url cannot be empty."
        assert request_timeout > 0, "request_timeout must be greater than 0."

        if retry_policy is None:
            from testluy._config import RetryConfig
            retry_policy = RetryPolicy(RetryConfig())

        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.path_prefix = (path_prefix or "").strip("/")
        self.request_timeout = request_timeout
        self.retry_policy = retry_policy
        self.http_client: HttpClient = http_client or RequestsHttpClient()
        self.classifier = classifier or ErrorClassifier()
        self.rate_limit_tracker = rate_limit_tracker or RateLimitTracker()
        self.preemptive_backoff = preemptive_backoff
        self._waiter = waiter or (lambda delay, token: token.wait(delay))
        self._clock = clock
        self.logger_prefix = logger_prefix

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def resolve_path(self, path: str) -> str:
        """
        Join the configured prefix and an operation path.

        The result is relative (no leading slash) and is the exact path
        covered by the signature. A path that already carries the prefix is
        left untouched.
        """
        path = path.strip("/")
        if not self.path_prefix or path == self.path_prefix or path.startswith(f"{self.path_prefix}/"):
            return path
        return f"{self.path_prefix}/{path}"

    def build_url(self, path: str) -> str:
        """Return the full URL an operation path is sent to."""
        return f"{self.base_url}/{self.resolve_path(path)}"

    def prepare(self, request: RequestDescriptor) -> PreparedRequest:
        """Sign a request descriptor for one attempt."""
        signed_path = self.resolve_path(request.path)
        body = canonical_json(request.body) if request.method == "POST" else ""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self.auth.get_auth_headers(request.method, signed_path, body),
        }
        return PreparedRequest(
            method=request.method,
            url=f"{self.base_url}/{signed_path}",
            signed_path=signed_path,
            body=body,
            headers=headers,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(
        self,
        request: RequestDescriptor,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """
        Perform one logical call, retrying per the retry policy.

        Args:
            request: What to send.
            cancel_token: Optional token to abandon the call.

        Returns:
            The decoded JSON body of the successful response ({} when empty).

        Raises:
            ApiError: The classified failure, once retries are exhausted or
                immediately for non-retryable kinds. Carries `attempts`,
                `elapsed` and `rate_limit`.
            CancelledError: If the call was cancelled.
        """
        token = cancel_token or CancellationToken()
        started = self._clock()
        attempt = 0

        while True:
            token.raise_if_cancelled(attempts=attempt)
            try:
                result = self._attempt(request, attempt, token)
            except ApiError as error:
                self._log_state(PipelineState.CLASSIFYING, request, attempt, f"{error.kind.value}: {error}")
                decision = self.retry_policy.next_delay(attempt, error)
                if not decision.retry:
                    self._surface(error, request, attempt, started, decision)
                    raise

                self._log_retry(error, decision)
                self._log_state(PipelineState.RETRYING, request, attempt, f"waiting {decision.delay:.2f}s")
                if self._waiter(decision.delay, token):
                    raise CancelledError(attempts=attempt + 1) from error
                attempt += 1
                continue

            self._log_state(PipelineState.SUCCESS, request, attempt)
            return result

    def _attempt(self, request: RequestDescriptor, attempt: int, token: CancellationToken) -> Any:
        self._log_state(PipelineState.BUILDING, request, attempt)
        self._wait_for_window(token, attempt)
        prepared = self.prepare(request)

        self._log_state(PipelineState.SENDING, request, attempt, prepared.url)
        try:
            response = self._send(prepared)
        except requests.RequestException as e:
            token.raise_if_cancelled(attempts=attempt + 1)
            raise self.classifier.classify_exception(e) from e

        self.rate_limit_tracker.update(response.headers)
        token.raise_if_cancelled(attempts=attempt + 1)

        if 200 <= response.status_code < 300:
            return self._parse_success(response)

        raise self.classifier.classify(
            response.status_code,
            response.headers,
            _decode_body(response),
        )

    def _send(self, prepared: PreparedRequest) -> requests.Response:
        if prepared.method == "GET":
            return self.http_client.get(
                prepared.url,
                headers=prepared.headers,
                timeout=self.request_timeout,
            )
        return self.http_client.post(
            prepared.url,
            body=prepared.body,
            headers=prepared.headers,
            timeout=self.request_timeout,
        )

    def _parse_success(self, response: requests.Response) -> Any:
        text = response.text
        if not text or not text.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            challenge_type = self.classifier.detect_challenge(response.status_code, response.headers, text)
            if challenge_type is not None:
                raise ProtectionChallengeError(
                    f"Protection challenge page returned instead of JSON ({challenge_type})",
                    challenge_type=challenge_type,
                    status_code=response.status_code,
                    body=text,
                ) from e
            raise FatalError(
                f"Invalid JSON in response (HTTP {response.status_code})",
                status_code=response.status_code,
                body=text,
            ) from e

    def _wait_for_window(self, token: CancellationToken, attempt: int) -> None:
        if not self.preemptive_backoff:
            return
        delay = self.rate_limit_tracker.preemptive_delay()
        if delay <= 0:
            return
        delay = min(delay, self.retry_policy.config.max_retry_after)
        logger.info(
            f"{self._prefix()}Rate-limit window exhausted. Waiting {delay:.1f}s for reset before sending..."
        )
        if self._waiter(delay, token):
            raise CancelledError(attempts=attempt)

    def _surface(
        self,
        error: ApiError,
        request: RequestDescriptor,
        attempt: int,
        started: float,
        decision: RetryDecision,
    ) -> None:
        error.attempts = attempt + 1
        error.elapsed = self._clock() - started
        error.rate_limit = self.rate_limit_tracker.snapshot()
        self._log_state(PipelineState.FAILED, request, attempt, decision.reason)

        if decision.reason == "retries exhausted" and self.retry_policy.config.max_retries > 0:
            logger.error(
                f"{self._prefix()}Max retries ({self.retry_policy.config.max_retries}) exceeded. "
                f"Last error: {error}"
            )

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def describe(self) -> dict[str, Any]:
        """
        Return a diagnostic report of this pipeline.

        Contains no secret material: the client id is masked.

        Example:
            >>> pipeline.describe()["base_url"]
            'https://api-testluy.paragoniu.app'
        """
        snapshot = self.rate_limit_tracker.snapshot()
        masked = getattr(self.auth, "masked_client_id", None)
        return {
            "base_url": self.base_url,
            "path_prefix": self.path_prefix,
            "client_id": masked,
            "signature_algorithm": SIGNATURE_ALGORITHM,
            "request_timeout": self.request_timeout,
            "preemptive_backoff": self.preemptive_backoff,
            "retry": asdict(self.retry_policy.config),
            "rate_limit": snapshot.to_dict() if snapshot else None,
        }

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""

    def _log_state(self, state: PipelineState, request: RequestDescriptor, attempt: int, detail: str = "") -> None:
        if logger.isEnabledFor(logging.DEBUG):
            suffix = f" ({detail})" if detail else ""
            logger.debug(
                f"{self._prefix()}{request.method} {request.path} | attempt "
                f"{attempt + 1}/{self.retry_policy.max_attempts} | {state.value}{suffix}"
            )

    def _log_retry(self, error: ApiError, decision: RetryDecision) -> None:
        logger.warning(
            f"{self._prefix()}Attempt {decision.attempt + 1}/{self.retry_policy.max_attempts} failed: {error}"
        )
        logger.warning(
            f"{self._prefix()}Retrying in {decision.delay:.1f}s..."
        )
