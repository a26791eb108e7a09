"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe API:
- trial conversion (end trial now / confirm scheduled conversion)
- cancellation
- webhook signature verification and event parsing

Stripe errors are classified into BillingTransientError (retryable) and
BillingRejectedError (definitive). Calls are bounded by a timeout and never
retried here.
"""
import json
import os
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Any, Optional, TypeVar
from datetime import datetime, timezone
import stripe

from trialmeter.features.billing.provider import (
    BillingProviderError,
    BillingRejectedError,
    BillingTransientError,
    BillingWebhookError,
    BillingWebhookResult,
    SubscriptionState,
)


logger = logging.getLogger("trialmeter")

T = TypeVar("T")

# Subscription statuses that mean the first paid charge did not go through
FAILED_PAYMENT_STATUSES = {"past_due", "unpaid", "incomplete", "incomplete_expired"}

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="stripe-call")


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def classify_stripe_error(exc: Exception) -> BillingProviderError:
    """Map a Stripe SDK exception to the provider error taxonomy."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return BillingTransientError(f"Stripe unavailable: {exc}")
    if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError)):
        return BillingRejectedError(f"Stripe rejected request: {exc}")
    status = getattr(exc, "http_status", None)
    if status is None or status >= 500:
        return BillingTransientError(f"Stripe error: {exc}")
    if status in (401, 403):
        # Our credentials are wrong; neither retrying nor blaming the customer helps
        return BillingProviderError(f"Stripe authentication failed: {exc}")
    return BillingRejectedError(f"Stripe rejected request: {exc}")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Retries belong to the caller
        stripe.max_network_retries = 0

    def _call(self, fn: Callable[[], T], timeout: float, operation: str) -> T:
        future = _executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("billing.timeout", extra={"operation": operation, "timeout_s": timeout})
            raise BillingTransientError(f"Stripe {operation} timed out after {timeout}s")
        except stripe.StripeError as e:
            raise classify_stripe_error(e) from e

    @staticmethod
    def _state(subscription) -> SubscriptionState:
        return SubscriptionState(
            subscription_id=subscription.id,
            status=subscription.status,
            current_period_end=_ts(getattr(subscription, "current_period_end", None)),
            trial_end=_ts(getattr(subscription, "trial_end", None)),
        )

    def end_trial_now(self, subscription_id: str, timeout: float) -> SubscriptionState:
        """End the trial immediately; an already-active subscription is success."""

        def _run():
            current = stripe.Subscription.retrieve(subscription_id)
            if current.status == "active":
                return current
            if current.status != "trialing":
                raise BillingRejectedError(
                    f"Subscription {subscription_id} is {current.status}, cannot end trial"
                )
            return stripe.Subscription.modify(
                subscription_id,
                trial_end="now",
                billing_cycle_anchor="now",
                proration_behavior="none",
            )

        subscription = self._call(_run, timeout, "end_trial_now")
        state = self._state(subscription)
        if state.status in FAILED_PAYMENT_STATUSES:
            raise BillingRejectedError(
                f"First charge for subscription {subscription_id} failed (status {state.status})"
            )
        if state.status != "active":
            raise BillingTransientError(
                f"Subscription {subscription_id} not active yet (status {state.status})"
            )
        return state

    def confirm_scheduled_conversion(self, subscription_id: str, timeout: float) -> SubscriptionState:
        subscription = self._call(
            lambda: stripe.Subscription.retrieve(subscription_id), timeout, "confirm_scheduled_conversion"
        )
        state = self._state(subscription)
        if state.status == "active":
            return state
        if state.status == "trialing":
            raise BillingTransientError(f"Subscription {subscription_id} has not converted yet")
        raise BillingRejectedError(
            f"Scheduled conversion of subscription {subscription_id} failed (status {state.status})"
        )

    def cancel_subscription(self, subscription_id: str, timeout: float) -> SubscriptionState:
        def _run():
            current = stripe.Subscription.retrieve(subscription_id)
            if current.status == "canceled":
                return current
            return stripe.Subscription.cancel(subscription_id)

        return self._state(self._call(_run, timeout, "cancel_subscription"))

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return parse_event(event)


def parse_event(event: Dict[str, Any]) -> BillingWebhookResult:
    """Parse a Stripe event payload into a normalized BillingWebhookResult."""
    try:
        event_type = event["type"]
        event_id = event["id"]
    except (KeyError, TypeError) as e:
        raise BillingWebhookError(f"Malformed event: missing {e}")
    data = (event.get("data") or {}).get("object") or {}
    metadata = data.get("metadata") or {}

    subscription_id = None
    customer_id = data.get("customer")
    status = None
    current_period_end = None
    trial_end = None

    if event_type.startswith("customer.subscription."):
        subscription_id = data.get("id")
        status = data.get("status")
        current_period_end = _ts(data.get("current_period_end"))
        trial_end = _ts(data.get("trial_end"))
    elif event_type.startswith("invoice."):
        subscription_id = data.get("subscription")

    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        tenant_id=metadata.get("tenant_id"),
        subscription_id=subscription_id,
        customer_id=customer_id,
        status=status,
        current_period_end=current_period_end,
        trial_end=trial_end,
        metadata=dict(metadata),
    )
