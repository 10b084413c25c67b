"""Provider notification handling: dedupe events, then confirm with verification skipped."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.webhook_event import WebhookEvent
from services.payment_confirmation import ConfirmationRequest, ConfirmationResult, confirm_payment
from services.payment_providers import PaymentProviderRegistry
from services.payment_providers.stripe_provider import read_field
from services.payment_store import SqlPaymentStore

logger = logging.getLogger(__name__)

STRIPE_COMPLETED_EVENT = "checkout.session.completed"
WECHAT_SUCCESS_EVENT = "TRANSACTION.SUCCESS"


async def register_webhook_event(
    db: AsyncSession,
    *,
    event_id: str,
    provider: str,
    event_type: Optional[str],
    payload: Optional[Dict[str, Any]],
) -> bool:
    """Record an incoming event; False when it was already processed successfully."""
    existing = await db.get(WebhookEvent, event_id)
    if existing is not None:
        return not (existing.processed and not existing.error_message)

    db.add(
        WebhookEvent(
            id=event_id,
            provider=provider,
            event_type=event_type,
            payload=payload,
            processed=False,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return False
    return True


async def finish_webhook_event(db: AsyncSession, event_id: str, *, error_message: Optional[str] = None) -> None:
    event = await db.get(WebhookEvent, event_id)
    if event is None:
        return
    event.processed = True
    event.processed_at = datetime.now(timezone.utc)
    event.error_message = error_message
    await db.commit()


async def handle_stripe_event(
    event: Any,
    *,
    store: SqlPaymentStore,
    providers: PaymentProviderRegistry,
    region: str,
) -> Optional[ConfirmationResult]:
    """Confirm a paid Checkout Session; other event types are acknowledged and ignored."""
    if read_field(event, "type") != STRIPE_COMPLETED_EVENT:
        return None
    session = read_field(read_field(event, "data"), "object")
    if read_field(session, "payment_status") != "paid":
        logger.info("Stripe session %s completed without payment", read_field(session, "id"))
        return None

    session_id = str(read_field(session, "id", ""))
    metadata = read_field(session, "metadata", {}) or {}
    customer_details = read_field(session, "customer_details")
    record = await store.find_payment_by_reference(session_id) if session_id else None
    user_email = (
        (record.user_email if record is not None else None)
        or read_field(customer_details, "email")
        or read_field(session, "customer_email")
        or read_field(metadata, "user_email")
    )
    return await confirm_payment(
        ConfirmationRequest(
            reference_id=session_id,
            user_email=user_email,
            user_id=record.user_id if record is not None else None,
            plan_id=read_field(metadata, "plan_id"),
            billing_cycle=read_field(metadata, "billing_cycle"),
            payment_method="stripe",
            session_id=session_id,
            transaction_id=read_field(session, "payment_intent"),
            skip_provider_verification=True,
        ),
        store=store,
        providers=providers,
        region=region,
    )


async def handle_wechat_notification(
    payload: Dict[str, Any],
    *,
    store: SqlPaymentStore,
    providers: PaymentProviderRegistry,
    region: str,
) -> Optional[ConfirmationResult]:
    """Confirm a decrypted ``TRANSACTION.SUCCESS`` notification against its pending order."""
    event_type = payload.get("event_type") or payload.get("eventType")
    if event_type != WECHAT_SUCCESS_EVENT:
        return None

    resource = payload.get("resource") or payload
    out_trade_no = str(resource.get("out_trade_no") or "").strip()
    transaction_id = str(resource.get("transaction_id") or "").strip()
    trade_state = resource.get("trade_state") or "SUCCESS"
    if not out_trade_no or not transaction_id or trade_state != "SUCCESS":
        raise ValueError("Invalid WeChat payment payload")

    record = await store.find_payment_by_reference(out_trade_no)
    if record is not None and not record.credits_applied:
        await store.attach_provider_transaction(out_trade_no, transaction_id)

    return await confirm_payment(
        ConfirmationRequest(
            reference_id=out_trade_no,
            user_email=record.user_email if record is not None else None,
            user_id=record.user_id if record is not None else None,
            plan_id=record.plan_id if record is not None else None,
            billing_cycle=record.billing_cycle if record is not None else None,
            payment_method="wechatpay",
            out_trade_no=out_trade_no,
            transaction_id=transaction_id,
            skip_provider_verification=True,
        ),
        store=store,
        providers=providers,
        region=region,
    )
