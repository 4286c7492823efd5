"""
Payment gateway protocol.

Defines the interface the reconciliation engine uses for outbound calls
to the payment gateway (recurring subscription create/cancel). This allows
swapping the gateway, or injecting a fake in tests, without changing
business logic.
"""
from typing import Protocol, Optional
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CreatedSubscription:
    """Result of registering a recurring charge at the gateway."""
    subscription_id: str
    status: str
    start_date: Optional[str] = None
    next_transaction_date: Optional[str] = None


class GatewayClient(Protocol):
    """
    Protocol for payment gateway clients.

    Implementations must be synchronous, use a bounded request timeout
    and never retry inside a call.
    """

    def create_recurring_subscription(
        self,
        *,
        card_token: str,
        payer_id: str,
        amount: int,
        currency: str,
        start_date: datetime,
        description: str,
        interval: str = "Month",
        period: int = 1,
        email: Optional[str] = None,
    ) -> CreatedSubscription:
        """
        Register a future recurring charge from a one-time card token.

        Args:
            card_token: Token from a completed first payment
            payer_id: Internal payer id (sent as the gateway account id)
            amount: Charge amount per period
            currency: ISO currency code
            start_date: First recurring charge date, no earlier than paid_until
            description: Human-readable description shown by the gateway
            interval: Gateway interval unit
            period: Number of interval units between charges
            email: Optional receipt email

        Returns:
            CreatedSubscription with the gateway subscription id

        Raises:
            GatewayError: If the gateway rejects the call or does not answer
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """
        Stop future recurring charges. Never refunds.

        Raises:
            GatewayError: If the gateway rejects the call or does not answer
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class GatewayConfigError(BillingProviderError):
    """Gateway credentials are missing."""
    pass


class GatewayError(BillingProviderError):
    """The gateway answered with a failure or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the configured timeout."""
    pass


class WebhookSignatureError(BillingProviderError):
    """Inbound notification failed signature verification."""
    pass
