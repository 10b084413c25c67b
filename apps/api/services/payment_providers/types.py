"""Payment provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Literal, Optional


PaymentMethod = Literal["stripe", "wechatpay", "alipay"]


def to_minor_units(amount: Decimal) -> int:
    """Major currency units to the integer minor units both Stripe and WeChat Pay expect."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ProviderUnavailableError(RuntimeError):
    """Raised when a payment provider is not configured or disabled."""


class ProviderNotAllowedError(ValueError):
    """Raised when a payment method is not offered in the deployment region."""

    def __init__(self, method: str, region: str) -> None:
        super().__init__(f"Payment method '{method}' is not available in region {region}.")
        self.method = method
        self.region = region


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderRequest:
    reference_id: str
    description: str
    amount: Decimal
    currency: str
    user_email: Optional[str]
    plan_id: str
    billing_cycle: str


@dataclass(frozen=True)
class OrderCreationResult:
    reference_id: str
    provider: str
    payment_url: Optional[str] = None
    code_url: Optional[str] = None
