"""Order initiation: price the plan, open the provider order, persist it as pending."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException

from services.payment_providers import OrderRequest, PaymentProviderRegistry
from services.payment_store import SqlPaymentStore
from services.pricing import normalize_billing_cycle, plan_by_id, price_for_plan

logger = logging.getLogger(__name__)


def generate_out_trade_no(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return f"MT{current.strftime('%Y%m%d%H%M%S')}{secrets.token_hex(4).upper()}"


async def create_payment_order(
    *,
    store: SqlPaymentStore,
    providers: PaymentProviderRegistry,
    region: str,
    payment_method: str,
    plan_id: str,
    billing_cycle: Optional[str],
    user_id: str,
    user_email: Optional[str],
) -> Dict[str, Any]:
    plan = plan_by_id(plan_id)
    if plan is None:
        raise HTTPException(status_code=422, detail=f"Unknown plan: {plan_id}")

    cycle = normalize_billing_cycle(billing_cycle)
    amount, currency = price_for_plan(plan, cycle, region)
    if amount <= 0:
        raise HTTPException(status_code=422, detail=f"Plan {plan.id} has no {region} price configured")

    provider = providers.get(payment_method)
    order = OrderRequest(
        reference_id=generate_out_trade_no(),
        description=f"{plan.name} membership ({cycle})",
        amount=amount,
        currency=currency,
        user_email=user_email,
        plan_id=plan.id,
        billing_cycle=cycle,
    )
    created = await provider.create_order(order)

    await store.create_pending_payment(
        reference_id=created.reference_id,
        user_email=user_email,
        user_id=user_id,
        plan_id=plan.id,
        billing_cycle=cycle,
        payment_method=payment_method,
        region=region,
        amount=float(amount),
        currency=currency,
    )
    logger.info(
        "payment_order_created user=%s method=%s plan=%s cycle=%s reference=%s",
        user_id,
        payment_method,
        plan.id,
        cycle,
        created.reference_id,
    )
    return {
        "reference_id": created.reference_id,
        "payment_method": payment_method,
        "payment_url": created.payment_url,
        "code_url": created.code_url,
        "amount": str(amount),
        "currency": currency,
        "plan_id": plan.id,
        "billing_cycle": cycle,
    }
