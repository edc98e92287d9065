"""
TestLuy Payment SDK for Python.

A Python SDK for the TestLuy payment-simulation API. Every request is signed
with HMAC-SHA256, transient failures are retried with exponential backoff and
jitter, the server's rate-limit window is tracked, and failures are
classified so callers can react precisely.

Quick Start:
    >>> from testluy import TestluyClient, load_config
    >>> client = TestluyClient(load_config(auth={"client_id": "x", "secret_key": "y"}))
    >>> client.validate_credentials()
    True
    >>> payment = client.initiate_payment(10.5, "https://shop.example.com/callback")
    >>> record = client.get_payment_status(payment.transaction_id)
    >>> print(record.status)

Configuration:
    >>> # Defaults + TESTLUY_* env vars + explicit overrides
    >>> config = load_config(
    ...     api={"base_url": "https://api-testluy.paragoniu.app", "request_timeout": 10},
    ...     retry={"max_retries": 5, "base_delay": 0.5},
    ... )

Error Handling:
    >>> from testluy import RateLimitedError, ProtectionChallengeError, NotFoundError
    >>> try:
    ...     client.get_payment_status("txn_123")
    ... except RateLimitedError as e:
    ...     print(e.retry_after, e.upgrade_info, e.attempts)
    ... except ProtectionChallengeError as e:
    ...     print(e.challenge_type)
    ... except NotFoundError:
    ...     print("Unknown transaction")

Main Classes:
    - TestluyClient: Facade with validate_credentials, initiate_payment, get_payment_status.
    - PaymentInitiation: Result of initiate_payment().
    - TransactionRecord: Result of get_payment_status().
    - Credentials: Immutable client id / secret key pair.

Configuration:
    - TestluyConfig, AuthConfig, ApiConfig, RetryConfig: Configuration struct and sections.
    - load_config: Builds a validated TestluyConfig.
    - ConfigEnvVarError, ConfigValidationError: Configuration errors.

Pipeline:
    - RequestPipeline: Signs, sends, classifies, retries and tracks rate limits.
    - RequestDescriptor: Method, path and body of one logical call.
    - CancellationToken: Per-call cancellation.
    - RetryPolicy: Exponential backoff with jitter and Retry-After precedence.
    - RateLimitTracker, RateLimitState: Last observed rate-limit window.
    - ErrorClassifier: Maps failures to error kinds.
    - HttpClient, RequestsHttpClient: Transport abstraction.
    - sign, canonical_json: Request signing primitives.

Errors:
    - TestluyError: Root of the hierarchy.
    - ValidationError, ConfigurationError, CancelledError.
    - ApiError and its kinds: RateLimitedError, ProtectionChallengeError,
      NotFoundError, TransientError, FatalError (see ErrorKind).
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("testluy-sdk")

from testluy._auth import (
    AuthProvider,
    Credentials,
    HmacAuthProvider,
)
from testluy._classifier import (
    ErrorClassifier,
    classify,
    classify_exception,
)
from testluy._client import TestluyClient
from testluy._config import (
    ApiConfig,
    AuthConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    RetryConfig,
    TestluyConfig,
    load_config,
)
from testluy._errors import (
    ApiError,
    CancelledError,
    ConfigurationError,
    ErrorKind,
    FatalError,
    NotFoundError,
    ProtectionChallengeError,
    RateLimitedError,
    TestluyError,
    TransientError,
    ValidationError,
)
from testluy._http import (
    HttpClient,
    RequestsHttpClient,
)
from testluy._models import (
    PaymentInitiation,
    TransactionRecord,
)
from testluy._pipeline import (
    CancellationToken,
    PipelineState,
    RequestDescriptor,
    RequestPipeline,
)
from testluy._rate_limit import (
    RateLimitState,
    RateLimitTracker,
)
from testluy._retry import (
    RetryableError,
    RetryDecision,
    RetryPolicy,
)
from testluy._signing import (
    SIGNATURE_ALGORITHM,
    canonical_json,
    sign,
)

__all__ = [
    "__version__",
    # Client
    "TestluyClient",
    "PaymentInitiation",
    "TransactionRecord",
    # Authentication
    "Credentials",
    "AuthProvider",
    "HmacAuthProvider",
    "SIGNATURE_ALGORITHM",
    "sign",
    "canonical_json",
    # Configuration
    "TestluyConfig",
    "AuthConfig",
    "ApiConfig",
    "RetryConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "load_config",
    # Pipeline
    "RequestPipeline",
    "RequestDescriptor",
    "PipelineState",
    "CancellationToken",
    "RetryPolicy",
    "RetryDecision",
    "RetryableError",
    "RateLimitTracker",
    "RateLimitState",
    "ErrorClassifier",
    "classify",
    "classify_exception",
    # HTTP Client
    "HttpClient",
    "RequestsHttpClient",
    # Errors
    "TestluyError",
    "ValidationError",
    "ConfigurationError",
    "CancelledError",
    "ErrorKind",
    "ApiError",
    "RateLimitedError",
    "ProtectionChallengeError",
    "NotFoundError",
    "TransientError",
    "FatalError",
]
