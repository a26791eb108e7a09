"""
Billing provider protocol.

Defines the interface the trial core needs from the billing system (Stripe).
Business logic depends on this protocol only, so tests can substitute a mock.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class SubscriptionState:
    """Subscription as reported by the provider after a call."""
    subscription_id: str
    status: str  # trialing, active, past_due, unpaid, canceled, incomplete
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    tenant_id: Optional[str]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[str]  # active, canceled, past_due, etc.
    current_period_end: Optional[datetime]
    trial_end: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must:
    - bound every remote call by `timeout` seconds
    - never retry internally
    - raise BillingTransientError for failures worth retrying and
      BillingRejectedError for definitive refusals
    """

    def end_trial_now(self, subscription_id: str, timeout: float) -> SubscriptionState:
        """
        End the trial immediately and charge the first paid cycle.

        An already-active subscription is returned as-is, so repeating the
        call after an ambiguous timeout is safe.

        Raises:
            BillingTransientError: network, timeout, rate limit, 5xx
            BillingRejectedError: card declined, no payment method,
                subscription not convertible
        """
        ...

    def confirm_scheduled_conversion(self, subscription_id: str, timeout: float) -> SubscriptionState:
        """
        Confirm that the provider converted the trial at its scheduled end.

        Raises:
            BillingTransientError: provider has not settled yet, or is unreachable
            BillingRejectedError: the scheduled charge failed
        """
        ...

    def cancel_subscription(self, subscription_id: str, timeout: float) -> SubscriptionState:
        """Cancel the subscription immediately. Already canceled is success."""
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingTransientError(BillingProviderError):
    """Provider unreachable, timed out, rate limited or failing (5xx). Retryable."""
    pass


class BillingRejectedError(BillingProviderError):
    """Provider definitively refused the operation. Not retryable."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
