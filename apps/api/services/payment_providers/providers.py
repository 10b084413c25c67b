"""Payment provider abstraction and region-aware provider selection."""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Tuple

from config import settings
from services.payment_providers.base import BasePaymentProvider
from services.payment_providers.stripe_provider import StripeProvider
from services.payment_providers.types import (
    OrderCreationResult,
    OrderRequest,
    PaymentMethod,
    ProviderNotAllowedError,
    ProviderUnavailableError,
    VerificationResult,
)
from services.payment_providers.wechatpay import WechatPayProvider


REGION_PAYMENT_METHODS: Dict[str, Tuple[PaymentMethod, ...]] = {
    "CN": ("wechatpay", "alipay"),
    "INTL": ("stripe", "alipay"),
}


class AlipayProvider(BasePaymentProvider):
    """Placeholder until the Alipay gateway is integrated; never confirms a payment."""

    name: PaymentMethod = "alipay"

    def __init__(self, *, enabled: bool) -> None:
        self.enabled = enabled

    async def verify(self, identifier: str) -> VerificationResult:
        status = "unsupported" if self.enabled else "disabled"
        return VerificationResult(success=False, transaction_id=identifier, currency="CNY", status=status)

    async def create_order(self, order: OrderRequest) -> OrderCreationResult:
        raise ProviderUnavailableError("Alipay is not configured for this deployment.")


class PaymentProviderRegistry:
    """Payment method -> provider client, restricted to one region's rails."""

    def __init__(self, region: str, providers: Mapping[str, BasePaymentProvider]) -> None:
        self.region = region
        self._providers = dict(providers)

    def allowed_methods(self) -> Tuple[PaymentMethod, ...]:
        return REGION_PAYMENT_METHODS.get(self.region, ())

    def get(self, method: str) -> BasePaymentProvider:
        if method not in self.allowed_methods():
            raise ProviderNotAllowedError(method, self.region)
        provider = self._providers.get(method)
        if provider is None:
            raise ProviderUnavailableError(f"Payment provider '{method}' is not configured.")
        return provider


def resolve_payment_method(
    payment_method: Optional[str],
    *,
    session_id: Optional[str] = None,
    out_trade_no: Optional[str] = None,
    trade_no: Optional[str] = None,
    region: str = "INTL",
) -> str:
    """Infer the payment method from whichever provider identifier was supplied."""
    if payment_method:
        return str(payment_method).strip().lower()
    if session_id:
        return "stripe"
    if trade_no:
        return "alipay"
    if out_trade_no:
        return "wechatpay" if region == "CN" else "alipay"
    return "wechatpay" if region == "CN" else "stripe"


def build_provider_registry(region: str) -> PaymentProviderRegistry:
    timeout = float(settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS)
    providers: Dict[str, BasePaymentProvider] = {
        "alipay": AlipayProvider(enabled=bool(settings.ALIPAY_ENABLED)),
    }
    if region == "CN":
        providers["wechatpay"] = WechatPayProvider(
            mch_id=settings.WECHAT_PAY_MCH_ID,
            serial_no=settings.WECHAT_PAY_SERIAL_NO,
            private_key_pem=settings.WECHAT_PAY_PRIVATE_KEY,
            api_v3_key=settings.WECHAT_PAY_API_V3_KEY,
            app_id=settings.WECHAT_APP_ID,
            notify_url=settings.WECHAT_PAY_NOTIFY_URL,
            api_base=settings.WECHAT_PAY_API_BASE,
            timeout=timeout,
        )
    else:
        providers["stripe"] = StripeProvider(
            secret_key=settings.STRIPE_SECRET_KEY,
            success_url=settings.STRIPE_SUCCESS_URL,
            cancel_url=settings.STRIPE_CANCEL_URL,
        )
    return PaymentProviderRegistry(region, providers)
