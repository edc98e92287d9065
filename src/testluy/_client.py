"""
TestLuy payment-simulation client.

This module provides the public facade of the SDK: three operations that map
to one signed request each and delegate the heavy lifting (signing, retries,
rate-limit tracking, error classification) to the RequestPipeline.
"""

import logging
import math
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlsplit

if TYPE_CHECKING:
    from testluy._config import TestluyConfig

from testluy._auth import Credentials, HmacAuthProvider
from testluy._errors import ConfigurationError, FatalError, ValidationError
from testluy._http import HttpClient
from testluy._models import PaymentInitiation, TransactionRecord
from testluy._pipeline import CancellationToken, RequestDescriptor, RequestPipeline
from testluy._rate_limit import RateLimitState
from testluy._retry import RetryPolicy

logger = logging.getLogger(__name__)

VALIDATE_CREDENTIALS_PATH = "validate-credentials"
GENERATE_URL_PATH = "payment-simulator/generate-url"
PAYMENT_STATUS_PATH = "payment-simulator/status"


def _validate_absolute_url(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, value, "Must be a non-empty absolute URL.")
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(field, value, "Must be an absolute 'http://' or 'https://' URL.")
    return value.strip()


def _validate_amount(amount: Any) -> float | int:
    # JSON-encodable numbers only: rejects bool, Decimal, Fraction
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount", amount, "Must be an int or float.")
    try:
        finite = math.isfinite(amount)
    except OverflowError:
        finite = False
    if not finite:
        raise ValidationError("amount", amount, "Must be a finite number.")
    if amount <= 0:
        raise ValidationError("amount", amount, "Must be greater than 0.")
    return amount


class TestluyClient:
    """
    Client for the TestLuy payment-simulation API.

    Each client binds one credential pair for its lifetime; rotating
    credentials means constructing a new client. A client can be shared
    across threads.

    Example:
        >>> from testluy import TestluyClient, load_config
        >>> client = TestluyClient(load_config(auth={"client_id": "x", "secret_key": "y"}))
        >>> if client.validate_credentials():
        ...     payment = client.initiate_payment(10.5, "https://shop.example.com/callback")
        ...     print(payment.payment_url)
        ...     record = client.get_payment_status(payment.transaction_id)
        ...     print(record.status)

    Attributes:
        config: The configuration struct the client was built from
            (None when a custom pipeline was given).
        pipeline: The request pipeline shared by all operations.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        config: "TestluyConfig | None" = None,
        http_client: HttpClient | None = None,
        pipeline: RequestPipeline | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Configuration struct. If None, uses load_config(), which
                reads TESTLUY_* environment variables.
            http_client: Custom transport. If None, uses RequestsHttpClient.
            pipeline: Fully custom pipeline (takes precedence over config
                and http_client), mostly useful for tests.

        Raises:
            ConfigurationError: If credentials are missing.
        """
        if pipeline is None:
            if config is None:
                from testluy._config import load_config
                config = load_config()

            if not config.auth.has_credentials():
                raise ConfigurationError(
                    "Client credentials not configured. Pass auth={'client_id': ..., 'secret_key': ...} "
                    "to load_config() or set TESTLUY_CLIENT_ID and TESTLUY_SECRET_KEY."
                )
            credentials = Credentials(
                client_id=config.auth.client_id,  # type: ignore[arg-type]
                secret_key=config.auth.secret_key,  # type: ignore[arg-type]
            )
            pipeline = RequestPipeline(
                auth=HmacAuthProvider(credentials),
                base_url=config.api.base_url,
                path_prefix=config.api.path_prefix,
                request_timeout=config.api.request_timeout,
                retry_policy=RetryPolicy(config.retry),
                http_client=http_client,
                preemptive_backoff=config.api.preemptive_backoff,
                logger_prefix=f"Testluy({credentials.masked_client_id})",
            )

        self.config = config
        self.pipeline = pipeline

    @classmethod
    def from_credentials(
        cls,
        client_id: str,
        secret_key: str,
        base_url: str | None = None,
        **retry: Any,
    ) -> "TestluyClient":
        """
        Shortcut building a client from explicit credentials, ignoring env vars.

        Example:
            >>> client = TestluyClient.from_credentials("id", "secret", max_retries=5)
        """
        from testluy._config import load_config

        config = load_config(
            auth={"client_id": client_id, "secret_key": secret_key},
            api={"base_url": base_url},
            retry=retry,
            allow_env_override=False,
        )
        return cls(config)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def validate_credentials(self, cancel_token: CancellationToken | None = None) -> bool:
        """
        Check that the configured credentials are accepted by the API.

        Returns:
            True if the API accepted the credentials; False if it rejected
            them (HTTP 401, or a success payload flagging them invalid).

        Raises:
            ApiError: For any other failure (rate limit, challenge, network...).
        """
        request = RequestDescriptor("POST", VALIDATE_CREDENTIALS_PATH, {})
        try:
            data = self.pipeline.execute(request, cancel_token=cancel_token)
        except FatalError as e:
            if e.status_code == 401:
                logger.warning(f"{self._log_prefix()}Credentials rejected: {e}")
                return False
            raise

        if isinstance(data, dict):
            for key in ("valid", "success"):
                if data.get(key) is False:
                    return False
        return True

    def initiate_payment(
        self,
        amount: float,
        callback_url: str,
        back_url: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PaymentInitiation:
        """
        Start a simulated payment.

        Inputs are validated before anything is sent over the network.

        Args:
            amount: Payment amount, a finite number greater than 0.
            callback_url: Absolute URL the simulator redirects to on completion.
            back_url: Optional absolute URL for cancellation.
            cancel_token: Optional token to abandon the call.

        Returns:
            PaymentInitiation with the payment URL and transaction id.

        Raises:
            ValidationError: If an argument is malformed.
            FatalError: If the API response lacks payment_url or transaction_id.
            ApiError: For any classified API failure.
        """
        amount = _validate_amount(amount)
        callback_url = _validate_absolute_url("callback_url", callback_url)
        body: dict[str, Any] = {"amount": amount, "callback_url": callback_url}
        if back_url is not None:
            body["back_url"] = _validate_absolute_url("back_url", back_url)

        data = self.pipeline.execute(
            RequestDescriptor("POST", GENERATE_URL_PATH, body),
            cancel_token=cancel_token,
        )

        result = PaymentInitiation.from_api_response(data) if isinstance(data, dict) else None
        if result is None:
            logger.error(f"{self._log_prefix()}Incomplete payment initiation response: {data!r}")
            raise FatalError(
                "API did not return the expected payment details (payment_url, transaction_id).",
                body=data,
            )
        return result

    def get_payment_status(
        self,
        transaction_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> TransactionRecord:
        """
        Fetch the current record of a transaction.

        Args:
            transaction_id: The id returned by initiate_payment().
            cancel_token: Optional token to abandon the call.

        Returns:
            The TransactionRecord.

        Raises:
            ValidationError: If transaction_id is not a non-empty string.
            NotFoundError: If the transaction does not exist.
            ApiError: For any other classified API failure.
        """
        if not isinstance(transaction_id, str) or not transaction_id.strip():
            raise ValidationError("transaction_id", transaction_id, "Must be a non-empty string.")

        path = f"{PAYMENT_STATUS_PATH}/{quote(transaction_id.strip(), safe='')}"
        data = self.pipeline.execute(RequestDescriptor("GET", path), cancel_token=cancel_token)

        record = TransactionRecord.from_api_response(data) if isinstance(data, dict) else None
        if record is None:
            raise FatalError("API did not return a transaction record.", body=data)
        return record

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    @property
    def rate_limit_info(self) -> RateLimitState | None:
        """Last observed rate-limit window (advisory under concurrency)."""
        return self.pipeline.rate_limit_tracker.snapshot()

    def describe(self) -> dict[str, Any]:
        """Diagnostic report: base URL, retry configuration, rate-limit snapshot."""
        return self.pipeline.describe()

    def close(self) -> None:
        """Release the transport's pooled connections."""
        self.pipeline.http_client.close()

    def _log_prefix(self) -> str:
        prefix = self.pipeline.logger_prefix
        return f"{prefix} | " if prefix else ""

    def __enter__(self) -> "TestluyClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
