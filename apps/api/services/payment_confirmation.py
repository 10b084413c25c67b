"""
Payment confirmation and idempotent credit granting.

``confirm_payment`` verifies a payment with its provider, resolves the plan
grant and credits the payer exactly once per reference id. Failures come
back as a ``ConfirmationResult`` with a ``ConfirmationFailure`` kind; no
exception leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from models.payment_record import PaymentRecord
from services.payment_providers import (
    PaymentProviderRegistry,
    ProviderNotAllowedError,
    ProviderUnavailableError,
    VerificationResult,
    resolve_payment_method,
)
from services.payment_store import StoreUnavailableError, normalize_email
from services.pricing import MembershipPlan, credits_for_plan, normalize_billing_cycle, plan_by_id, price_for_plan

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_TIMEOUT_SECONDS = 10.0
_PLACEHOLDER_PATTERN = re.compile(r"^\{[A-Z0-9_]+\}$")


class ConfirmationFailure(str, Enum):
    MISSING_REFERENCE = "missing_reference"
    MISSING_RECIPIENT = "missing_recipient"
    PAYMENT_NOT_VERIFIED = "payment_not_verified"
    UNKNOWN_PLAN = "unknown_plan"
    INVALID_GRANT = "invalid_grant"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def is_retryable(self) -> bool:
        return self is ConfirmationFailure.STORE_UNAVAILABLE


@dataclass
class ConfirmationRequest:
    reference_id: Optional[str]
    user_email: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    payment_method: Optional[str] = None
    session_id: Optional[str] = None
    out_trade_no: Optional[str] = None
    trade_no: Optional[str] = None
    transaction_id: Optional[str] = None
    skip_provider_verification: bool = False


@dataclass
class ConfirmationResult:
    success: bool
    already_processed: bool = False
    reference_id: Optional[str] = None
    credits_to_add: Optional[int] = None
    user_email: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    new_balance: Optional[int] = None
    failure: Optional[ConfirmationFailure] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["failure"] = self.failure.value if self.failure else None
        return payload


def is_placeholder_id(value: Optional[str]) -> bool:
    """Detect unexpanded checkout redirect templates such as ``{CHECKOUT_SESSION_ID}``."""
    trimmed = str(value or "").strip()
    if not trimmed:
        return False
    return bool(_PLACEHOLDER_PATTERN.match(trimmed)) or "CHECKOUT_SESSION_ID" in trimmed


def _failed(
    failure: ConfirmationFailure,
    message: str,
    *,
    reference_id: Optional[str] = None,
    **extra: Any,
) -> ConfirmationResult:
    return ConfirmationResult(success=False, failure=failure, message=message, reference_id=reference_id, **extra)


def _provider_identifier(method: str, request: ConfirmationRequest, reference_id: str) -> str:
    if method == "stripe":
        return (request.session_id or reference_id).strip()
    if method == "wechatpay":
        return (request.out_trade_no or reference_id).strip()
    return (request.out_trade_no or request.trade_no or reference_id).strip()


def _to_cents(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _paid_amount_mismatch(
    verification: VerificationResult,
    record: Optional[PaymentRecord],
    plan: MembershipPlan,
    billing_cycle: str,
    region: str,
) -> Optional[str]:
    """Compare what the provider collected with the order amount, or the plan price without an order."""
    if record is not None and record.amount is not None:
        expected = _to_cents(record.amount)
        expected_currency = record.currency
    else:
        price, expected_currency = price_for_plan(plan, billing_cycle, region)
        expected = _to_cents(price)

    paid = _to_cents(verification.amount) if verification.amount is not None else None
    if paid is None:
        return "Provider did not report a paid amount."
    if expected is None or expected <= 0 or paid != expected:
        return f"Paid amount {paid} does not match expected {expected}."
    if (
        verification.currency
        and expected_currency
        and verification.currency.strip().upper() != expected_currency.strip().upper()
    ):
        return f"Paid currency {verification.currency} does not match expected {expected_currency}."
    return None


async def _verify_with_provider(
    providers: PaymentProviderRegistry,
    method: str,
    identifier: str,
    timeout: float,
) -> VerificationResult:
    provider = providers.get(method)
    return await asyncio.wait_for(provider.verify(identifier), timeout=timeout)


async def confirm_payment(
    request: ConfirmationRequest,
    *,
    store,
    providers: PaymentProviderRegistry,
    region: str,
    verify_timeout: float = DEFAULT_VERIFY_TIMEOUT_SECONDS,
) -> ConfirmationResult:
    """
    Verify a payment and grant its plan credits at most once.

    Args:
        request: reference id, recipient, plan and provider identifiers
        store: record/balance store (see ``SqlPaymentStore``)
        providers: region-scoped provider clients
        region: deployment region used for the grant table

    Returns:
        ConfirmationResult; ``already_processed`` is set when another call
        already applied credits for this reference.
    """
    reference_id = str(request.reference_id or "").strip()
    if not reference_id or is_placeholder_id(reference_id) or is_placeholder_id(request.session_id):
        return _failed(ConfirmationFailure.MISSING_REFERENCE, "A payment reference id is required.")

    requested_email = normalize_email(request.user_email)
    requested_user_id = str(request.user_id or "").strip()
    if not requested_email and not requested_user_id:
        return _failed(
            ConfirmationFailure.MISSING_RECIPIENT,
            "Either user_email or user_id is required.",
            reference_id=reference_id,
        )

    try:
        record: Optional[PaymentRecord] = await store.find_payment_by_reference(reference_id)
    except StoreUnavailableError as exc:
        logger.warning("Payment lookup failed for %s: %s", reference_id, exc)
        return _failed(ConfirmationFailure.STORE_UNAVAILABLE, "Payment store unavailable.", reference_id=reference_id)

    if record is not None and record.credits_applied:
        logger.info("Payment %s already credited; skipping", reference_id)
        return ConfirmationResult(
            success=True,
            already_processed=True,
            reference_id=reference_id,
            credits_to_add=record.credits_granted,
            user_email=record.user_email,
            plan_id=record.plan_id,
            billing_cycle=record.billing_cycle,
        )

    # An initiated order fixes who is paid and for which plan.
    user_email = requested_email
    user_id = requested_user_id or None
    plan_id = request.plan_id
    billing_cycle = request.billing_cycle
    if record is not None:
        if record.user_email or record.user_id:
            if requested_email and record.user_email and requested_email != record.user_email:
                logger.warning(
                    "Confirm for %s supplied recipient %s but order belongs to %s",
                    reference_id,
                    requested_email,
                    record.user_email,
                )
            user_email = record.user_email or ""
            user_id = record.user_id
        plan_id = record.plan_id or plan_id
        billing_cycle = record.billing_cycle or billing_cycle
    billing_cycle = normalize_billing_cycle(billing_cycle)

    method = resolve_payment_method(
        request.payment_method or (record.payment_method if record is not None else None),
        session_id=request.session_id,
        out_trade_no=request.out_trade_no,
        trade_no=request.trade_no,
        region=region,
    )

    verification: Optional[VerificationResult] = None
    if not request.skip_provider_verification:
        identifier = _provider_identifier(method, request, reference_id)
        # The verified provider payment is the idempotency key.
        if identifier != reference_id:
            logger.warning(
                "Confirm reference %s does not match provider identifier %s (%s)",
                reference_id,
                identifier,
                method,
            )
            return _failed(
                ConfirmationFailure.PAYMENT_NOT_VERIFIED,
                "Payment reference does not match the provider payment.",
                reference_id=reference_id,
            )
        try:
            verification = await _verify_with_provider(providers, method, identifier, verify_timeout)
        except asyncio.TimeoutError:
            logger.warning("Provider %s timed out verifying %s", method, reference_id)
            return _failed(
                ConfirmationFailure.PAYMENT_NOT_VERIFIED,
                "Payment provider did not answer in time.",
                reference_id=reference_id,
            )
        except (ProviderNotAllowedError, ProviderUnavailableError) as exc:
            logger.warning("Provider %s unusable for %s: %s", method, reference_id, exc)
            return _failed(ConfirmationFailure.PAYMENT_NOT_VERIFIED, str(exc), reference_id=reference_id)
        except Exception as exc:
            logger.warning("Provider %s verification error for %s: %s", method, reference_id, exc)
            return _failed(
                ConfirmationFailure.PAYMENT_NOT_VERIFIED,
                "Payment could not be verified.",
                reference_id=reference_id,
            )
        if not verification.success:
            logger.info("Provider %s rejected %s (status=%s)", method, reference_id, verification.status)
            return _failed(
                ConfirmationFailure.PAYMENT_NOT_VERIFIED,
                "Payment not completed.",
                reference_id=reference_id,
            )

    plan = plan_by_id(plan_id)
    if plan is None:
        return _failed(
            ConfirmationFailure.UNKNOWN_PLAN,
            f"Unknown plan: {plan_id}",
            reference_id=reference_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
        )

    credits_to_add = credits_for_plan(plan, billing_cycle, region)
    if credits_to_add <= 0:
        logger.error("Plan %s/%s/%s resolves to a non-positive grant", plan.id, billing_cycle, region)
        return _failed(
            ConfirmationFailure.INVALID_GRANT,
            f"Invalid credit grant for plan {plan.id}.",
            reference_id=reference_id,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
        )

    if verification is not None:
        mismatch = _paid_amount_mismatch(verification, record, plan, billing_cycle, region)
        if mismatch:
            logger.warning("Payment %s rejected for plan %s/%s: %s", reference_id, plan.id, billing_cycle, mismatch)
            return _failed(
                ConfirmationFailure.PAYMENT_NOT_VERIFIED,
                mismatch,
                reference_id=reference_id,
                plan_id=plan.id,
                billing_cycle=billing_cycle,
            )

    try:
        user = await store.find_user(email=user_email, user_id=user_id)
    except StoreUnavailableError as exc:
        logger.warning("User lookup failed for %s: %s", reference_id, exc)
        return _failed(ConfirmationFailure.STORE_UNAVAILABLE, "Payment store unavailable.", reference_id=reference_id)
    if user is None:
        return _failed(
            ConfirmationFailure.RECIPIENT_NOT_FOUND,
            f"User not found: {user_email or user_id}",
            reference_id=reference_id,
            user_email=user_email or None,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
        )
    user_email = normalize_email(user.email)

    # Claim, increment and ledger row commit together or not at all.
    try:
        claimed = await store.claim_credits(
            reference_id=reference_id,
            user_email=user_email,
            user_id=user.id,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
            payment_method=method,
            region=region,
            credits=credits_to_add,
            amount=verification.amount if verification else None,
            currency=verification.currency if verification else None,
            provider_transaction_id=(
                (verification.transaction_id if verification else None) or request.transaction_id
            ),
        )
        if not claimed:
            await store.rollback()
            logger.info("Payment %s credited by a concurrent call", reference_id)
            return ConfirmationResult(
                success=True,
                already_processed=True,
                reference_id=reference_id,
                credits_to_add=credits_to_add,
                user_email=user_email,
                plan_id=plan.id,
                billing_cycle=billing_cycle,
            )
        new_balance = await store.increment_user_credits(user.id, credits_to_add)
        await store.record_credit_transaction(
            user_id=user.id,
            reference_id=reference_id,
            delta_credits=credits_to_add,
            balance_after=new_balance,
            provider=method,
            reason=f"{region} payment credits ({plan.id}-{billing_cycle})",
        )
        await store.commit()
    except StoreUnavailableError as exc:
        await store.rollback()
        logger.exception(
            "Credit grant for %s rolled back (user=%s credits=%s); check for reconciliation: %s",
            reference_id,
            user_email,
            credits_to_add,
            exc,
        )
        return _failed(
            ConfirmationFailure.STORE_UNAVAILABLE,
            "Payment store unavailable.",
            reference_id=reference_id,
            user_email=user_email,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
        )

    logger.info(
        "Payment %s credited: user=%s plan=%s cycle=%s credits=%s balance=%s",
        reference_id,
        user_email,
        plan.id,
        billing_cycle,
        credits_to_add,
        new_balance,
    )
    return ConfirmationResult(
        success=True,
        already_processed=False,
        reference_id=reference_id,
        credits_to_add=credits_to_add,
        user_email=user_email,
        plan_id=plan.id,
        billing_cycle=billing_cycle,
        new_balance=new_balance,
    )
