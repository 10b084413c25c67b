"""Stripe Checkout client used for INTL card payments."""

from __future__ import annotations

import logging
from typing import Any, Optional

import stripe

from services.payment_providers.base import BasePaymentProvider
from services.payment_providers.types import (
    OrderCreationResult,
    OrderRequest,
    PaymentMethod,
    ProviderUnavailableError,
    VerificationResult,
    to_minor_units,
)

logger = logging.getLogger(__name__)


def read_field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


class StripeProvider(BasePaymentProvider):
    name: PaymentMethod = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self.secret_key = (secret_key or "").strip()
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _ensure_configured(self) -> None:
        if not self.secret_key:
            raise ProviderUnavailableError("STRIPE_SECRET_KEY not configured")

    async def verify(self, identifier: str) -> VerificationResult:
        """Retrieve the Checkout Session; only ``payment_status == "paid"`` counts."""
        self._ensure_configured()
        session = await stripe.checkout.Session.retrieve_async(identifier, api_key=self.secret_key)
        payment_status = read_field(session, "payment_status", "")
        customer_details = read_field(session, "customer_details")
        amount_total = read_field(session, "amount_total")
        currency = str(read_field(session, "currency", "usd")).upper()
        email = read_field(customer_details, "email") or read_field(session, "customer_email")
        if payment_status != "paid":
            logger.info("Stripe session %s not paid: %s", identifier, payment_status)
        return VerificationResult(
            success=payment_status == "paid",
            transaction_id=read_field(session, "id", identifier),
            amount=(amount_total / 100.0) if amount_total is not None else None,
            currency=currency,
            customer_email=str(email).strip().lower() if email else None,
            status=payment_status or None,
        )

    async def create_order(self, order: OrderRequest) -> OrderCreationResult:
        self._ensure_configured()
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": order.currency.lower(),
                        "product_data": {"name": order.description},
                        "unit_amount": to_minor_units(order.amount),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": order.reference_id,
            "metadata": {
                "plan_id": order.plan_id,
                "billing_cycle": order.billing_cycle,
                "user_email": order.user_email or "",
            },
        }
        if order.user_email:
            params["customer_email"] = order.user_email
        session = await stripe.checkout.Session.create_async(api_key=self.secret_key, **params)
        return OrderCreationResult(
            reference_id=str(session["id"]),
            provider=self.name,
            payment_url=read_field(session, "url"),
        )


def construct_webhook_event(payload: bytes, signature: Optional[str], webhook_secret: str) -> Any:
    """Verify the ``Stripe-Signature`` header and parse the event."""
    if not webhook_secret:
        raise ProviderUnavailableError("STRIPE_WEBHOOK_SECRET not configured")
    if not signature:
        raise ValueError("Missing stripe-signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, webhook_secret, tolerance=300)
    except stripe.SignatureVerificationError as exc:
        raise ValueError("Invalid webhook signature") from exc
