"""Payment order, confirmation and provider webhook router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.payment_record import PaymentRecord
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.payment_deps import get_payment_store, get_provider_registry, get_region
from routers.rate_limit import rate_limit
from services.payment_confirmation import (
    ConfirmationFailure,
    ConfirmationRequest,
    ConfirmationResult,
    confirm_payment,
)
from services.payment_orders import create_payment_order
from services.payment_providers import (
    PaymentProviderRegistry,
    ProviderNotAllowedError,
    ProviderUnavailableError,
    resolve_payment_method,
)
from services.payment_providers.stripe_provider import construct_webhook_event, read_field
from services.payment_providers.wechatpay import parse_notification
from services.payment_store import SqlPaymentStore, StoreUnavailableError
from services.payment_webhooks import (
    finish_webhook_event,
    handle_stripe_event,
    handle_wechat_notification,
    register_webhook_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)


_FAILURE_MESSAGES: Dict[ConfirmationFailure, Dict[str, str]] = {
    ConfirmationFailure.MISSING_REFERENCE: {
        "en": "Missing payment reference.",
        "zh": "缺少支付订单号。",
    },
    ConfirmationFailure.MISSING_RECIPIENT: {
        "en": "Missing account information for this payment.",
        "zh": "缺少支付账户信息。",
    },
    ConfirmationFailure.PAYMENT_NOT_VERIFIED: {
        "en": "Payment has not been confirmed yet. Please retry shortly.",
        "zh": "支付尚未确认，请稍后重试。",
    },
    ConfirmationFailure.UNKNOWN_PLAN: {
        "en": "The selected plan does not exist.",
        "zh": "所选套餐不存在。",
    },
    ConfirmationFailure.INVALID_GRANT: {
        "en": "This plan is misconfigured. Please contact support.",
        "zh": "套餐配置错误，请联系客服。",
    },
    ConfirmationFailure.RECIPIENT_NOT_FOUND: {
        "en": "No account matches this payment.",
        "zh": "未找到与该支付匹配的账户。",
    },
    ConfirmationFailure.STORE_UNAVAILABLE: {
        "en": "Service temporarily unavailable. Please retry.",
        "zh": "服务暂时不可用，请重试。",
    },
}
_SUCCESS_MESSAGES = {
    "credited": {"en": "Payment confirmed and credits added.", "zh": "支付成功，积分已到账。"},
    "already": {"en": "Payment was already processed.", "zh": "该订单已处理。"},
}


class CreatePaymentRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)
    billing_cycle: Optional[str] = "monthly"
    payment_method: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    reference_id: Optional[str] = None
    user_email: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    payment_method: Optional[str] = None
    session_id: Optional[str] = None
    out_trade_no: Optional[str] = None
    trade_no: Optional[str] = None
    transaction_id: Optional[str] = None


class CancelPaymentRequest(BaseModel):
    reference_id: str = Field(min_length=1)


def _language(request: Request, region: str) -> str:
    accept = (request.headers.get("accept-language") or "").strip().lower()
    if accept.startswith("zh"):
        return "zh"
    if accept.startswith("en"):
        return "en"
    return "zh" if region == "CN" else "en"


def _confirmation_payload(result: ConfirmationResult, language: str) -> Dict[str, Any]:
    payload = result.to_dict()
    if result.failure is not None:
        payload["error"] = result.failure.value
        payload["message"] = _FAILURE_MESSAGES[result.failure][language]
        payload["detail"] = result.message
    else:
        key = "already" if result.already_processed else "credited"
        payload["message"] = _SUCCESS_MESSAGES[key][language]
    return payload


def _serialize_payment(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "reference_id": record.reference_id,
        "status": record.status,
        "credits_applied": bool(record.credits_applied),
        "credits_granted": record.credits_granted,
        "plan_id": record.plan_id,
        "billing_cycle": record.billing_cycle,
        "payment_method": record.payment_method,
        "amount": record.amount,
        "currency": record.currency,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


@router.post("/create")
async def create_payment(
    request: CreatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("payment_create", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    region: str = Depends(get_region),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
    store: SqlPaymentStore = Depends(get_payment_store),
):
    method = resolve_payment_method(request.payment_method, region=region)
    try:
        return await create_payment_order(
            store=store,
            providers=providers,
            region=region,
            payment_method=method,
            plan_id=request.plan_id,
            billing_cycle=request.billing_cycle,
            user_id=auth.user_id,
            user_email=auth.email,
        )
    except ProviderNotAllowedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        logger.warning("Payment order for %s not persisted: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail="Payment store unavailable.") from exc
    except (httpx.HTTPError, stripe.StripeError) as exc:
        logger.warning("Provider %s order creation failed: %s", method, exc)
        raise HTTPException(status_code=502, detail="Payment provider request failed.") from exc


@router.post("/confirm")
async def confirm(
    body: ConfirmPaymentRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("payment_confirm", limit=60, window_seconds=3600)),
    region: str = Depends(get_region),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
    store: SqlPaymentStore = Depends(get_payment_store),
):
    method = resolve_payment_method(
        body.payment_method,
        session_id=body.session_id,
        out_trade_no=body.out_trade_no,
        trade_no=body.trade_no,
        region=region,
    )
    if method not in providers.allowed_methods():
        raise HTTPException(status_code=403, detail=f"Payment method '{method}' is not available in region {region}.")

    reference_id = body.reference_id or body.session_id or body.out_trade_no or body.trade_no or body.transaction_id
    result = await confirm_payment(
        ConfirmationRequest(
            reference_id=reference_id,
            user_email=body.user_email,
            user_id=body.user_id,
            plan_id=body.plan_id,
            billing_cycle=body.billing_cycle,
            payment_method=method,
            session_id=body.session_id,
            out_trade_no=body.out_trade_no,
            trade_no=body.trade_no,
            transaction_id=body.transaction_id,
        ),
        store=store,
        providers=providers,
        region=region,
        verify_timeout=float(settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS),
    )
    payload = _confirmation_payload(result, _language(request, region))
    if result.failure is not None:
        logger.info("payment_confirm reference=%s failure=%s", result.reference_id, result.failure.value)
        if result.failure.is_retryable:
            return JSONResponse(status_code=503, content=payload)
    return payload


@router.post("/cancel")
async def cancel_payment(
    request: CancelPaymentRequest,
    auth: AuthContext = Depends(get_auth_context),
    store: SqlPaymentStore = Depends(get_payment_store),
):
    try:
        record = await store.find_payment_by_reference(request.reference_id)
        if record is None or not auth.owns(record.user_id, record.user_email):
            raise HTTPException(status_code=404, detail="Payment not found.")
        cancelled = await store.mark_failed(request.reference_id)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Payment store unavailable.") from exc
    return {"reference_id": request.reference_id, "cancelled": cancelled}


@router.get("/status")
async def payment_status(
    reference_id: str = Query(min_length=1),
    auth: AuthContext = Depends(get_auth_context),
    store: SqlPaymentStore = Depends(get_payment_store),
):
    try:
        record = await store.find_payment_by_reference(reference_id)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Payment store unavailable.") from exc
    if record is None or not auth.owns(record.user_id, record.user_email):
        raise HTTPException(status_code=404, detail="Payment not found.")
    return _serialize_payment(record)


@router.get("/history")
async def payment_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    store: SqlPaymentStore = Depends(get_payment_store),
):
    ensure_user_scope(auth, user_id)
    try:
        records = await store.list_payments_for_user(user_id=auth.user_id, email=auth.email, limit=limit)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Payment store unavailable.") from exc
    return {"items": [_serialize_payment(record) for record in records]}


@router.get("/wechat/query")
async def wechat_query(
    out_trade_no: str = Query(min_length=1),
    _auth: AuthContext = Depends(get_auth_context),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
):
    try:
        provider = providers.get("wechatpay")
        data = await provider.query_order(out_trade_no)
    except ProviderNotAllowedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except httpx.HTTPError as exc:
        logger.warning("WeChat order query failed for %s: %s", out_trade_no, exc)
        raise HTTPException(status_code=502, detail="Failed to query WeChat order") from exc
    return {
        "success": True,
        "out_trade_no": out_trade_no,
        "trade_state": data.get("trade_state"),
        "transaction_id": data.get("transaction_id"),
        "amount": data.get("amount"),
    }


@router.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    region: str = Depends(get_region),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
    store: SqlPaymentStore = Depends(get_payment_store),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    try:
        event = construct_webhook_event(payload, request.headers.get("stripe-signature"), settings.STRIPE_WEBHOOK_SECRET)
    except ProviderUnavailableError as exc:
        logger.error("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=500, detail="Webhook secret not configured") from exc
    except ValueError as exc:
        logger.warning("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    event_id = f"stripe_{read_field(event, 'id', '')}"
    event_type = read_field(event, "type")
    if not await register_webhook_event(db, event_id=event_id, provider="stripe", event_type=event_type, payload=None):
        logger.info("Skipping duplicate Stripe event %s", event_id)
        return {"received": True, "duplicate": True}

    try:
        result = await handle_stripe_event(event, store=store, providers=providers, region=region)
    except StoreUnavailableError as exc:
        await finish_webhook_event(db, event_id, error_message=str(exc))
        raise HTTPException(status_code=500, detail="Payment store unavailable.") from exc

    error_message = result.message if result is not None and not result.success else None
    await finish_webhook_event(db, event_id, error_message=error_message)
    if result is not None and result.failure is not None and result.failure.is_retryable:
        raise HTTPException(status_code=500, detail="Payment store unavailable.")
    return {"received": True, "result": result.to_dict() if result is not None else None}


@router.post("/webhook/wechat")
async def wechat_webhook(
    request: Request,
    region: str = Depends(get_region),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
    store: SqlPaymentStore = Depends(get_payment_store),
    db: AsyncSession = Depends(get_db),
):
    if region != "CN":
        return JSONResponse(status_code=403, content={"code": "FAIL", "message": "WeChat webhook only available in CN"})

    raw_body = await request.body()
    try:
        payload = parse_notification(raw_body, settings.WECHAT_PAY_API_V3_KEY)
    except ProviderUnavailableError as exc:
        logger.error("WeChat webhook rejected: %s", exc)
        return JSONResponse(status_code=500, content={"code": "FAIL", "message": str(exc)})
    except ValueError as exc:
        logger.warning("WeChat webhook rejected: %s", exc)
        return JSONResponse(status_code=400, content={"code": "FAIL", "message": "Invalid notification"})

    event_type = payload.get("event_type") or payload.get("eventType")
    if event_type != "TRANSACTION.SUCCESS":
        return {"code": "SUCCESS", "message": "Ok"}

    resource = payload.get("resource") or {}
    event_id = f"wechat_{resource.get('transaction_id') or payload.get('id') or ''}"
    if not await register_webhook_event(
        db, event_id=event_id, provider="wechatpay", event_type=event_type, payload=resource
    ):
        return {"code": "SUCCESS", "message": "Ok"}

    try:
        result = await handle_wechat_notification(payload, store=store, providers=providers, region=region)
    except ValueError as exc:
        await finish_webhook_event(db, event_id, error_message=str(exc))
        return JSONResponse(status_code=400, content={"code": "FAIL", "message": str(exc)})
    except StoreUnavailableError as exc:
        await finish_webhook_event(db, event_id, error_message=str(exc))
        return JSONResponse(status_code=500, content={"code": "FAIL", "message": "Payment store unavailable"})

    if result is not None and not result.success:
        await finish_webhook_event(db, event_id, error_message=result.message)
        logger.warning(
            "WeChat notification %s not credited: %s",
            event_id,
            result.failure.value if result.failure else result.message,
        )
        return JSONResponse(status_code=500, content={"code": "FAIL", "message": result.message or "Credits apply failed"})

    await finish_webhook_event(db, event_id)
    if result is not None:
        logger.info(
            "WeChat notification %s applied: user=%s plan=%s credits=%s already=%s",
            event_id,
            result.user_email,
            result.plan_id,
            result.credits_to_add,
            result.already_processed,
        )
    return {"code": "SUCCESS", "message": "Ok"}
