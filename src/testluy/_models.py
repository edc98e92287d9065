"""
Data models for the TestLuy payment-simulation API.

These classes represent the results returned by the client facade.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PaymentInitiation:
    """
    Result of initiating a simulated payment.

    Attributes:
        payment_url: URL where the payer completes the simulated payment.
        transaction_id: Identifier used to query the payment status later.
    """
    payment_url: str
    transaction_id: str

    @classmethod
    def from_api_response(cls, data: Mapping[str, Any]) -> "PaymentInitiation | None":
        """
        Build from the API payload, or return None if a field is missing.

        Example:
            >>> PaymentInitiation.from_api_response(
            ...     {"payment_url": "https://pay/abc", "transaction_id": "abc"}
            ... )
            PaymentInitiation(payment_url='https://pay/abc', transaction_id='abc')
        """
        payment_url = data.get("payment_url")
        transaction_id = data.get("transaction_id")
        if not payment_url or not transaction_id:
            return None
        return cls(payment_url=str(payment_url), transaction_id=str(transaction_id))


@dataclass(frozen=True)
class TransactionRecord:
    """
    Status of a simulated payment.

    Attributes:
        transaction_id: Transaction identifier (`transaction_id` or `id` in the payload).
        status: Payment status as reported by the API (e.g. "Pending", "Success").
        amount: Payment amount.
        created_at: Creation timestamp as sent by the API.
        updated_at: Last update timestamp as sent by the API.
        callback_url: Callback URL registered at initiation, if returned.
        raw: The full payload, including fields not modelled here.
    """
    transaction_id: str
    status: str | None = None
    amount: float | None = None
    created_at: str | None = None
    updated_at: str | None = None
    callback_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api_response(cls, data: Mapping[str, Any]) -> "TransactionRecord | None":
        """Build from the API payload, or return None if no identifier is present."""
        transaction_id = data.get("transaction_id") or data.get("id")
        if transaction_id is None or transaction_id == "":
            return None

        amount = data.get("amount")
        try:
            amount = float(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount = None

        return cls(
            transaction_id=str(transaction_id),
            status=data.get("status"),
            amount=amount,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            callback_url=data.get("callback_url"),
            raw=dict(data),
        )

    def is_success(self) -> bool:
        """Returns True if the payment completed successfully."""
        return isinstance(self.status, str) and self.status.lower() in ("success", "completed", "paid")
