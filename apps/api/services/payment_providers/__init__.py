"""Public payment provider utilities."""

from services.payment_providers.base import BasePaymentProvider
from services.payment_providers.providers import (
    REGION_PAYMENT_METHODS,
    AlipayProvider,
    PaymentProviderRegistry,
    build_provider_registry,
    resolve_payment_method,
)
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

__all__ = [
    "AlipayProvider",
    "BasePaymentProvider",
    "OrderCreationResult",
    "OrderRequest",
    "PaymentMethod",
    "PaymentProviderRegistry",
    "ProviderNotAllowedError",
    "ProviderUnavailableError",
    "REGION_PAYMENT_METHODS",
    "StripeProvider",
    "VerificationResult",
    "WechatPayProvider",
    "build_provider_registry",
    "resolve_payment_method",
]
