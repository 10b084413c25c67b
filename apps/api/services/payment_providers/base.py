"""Base class shared by payment provider clients."""

from __future__ import annotations

from abc import ABC, abstractmethod

from services.payment_providers.types import (
    OrderCreationResult,
    OrderRequest,
    PaymentMethod,
    VerificationResult,
)


class BasePaymentProvider(ABC):
    name: PaymentMethod

    @abstractmethod
    async def verify(self, identifier: str) -> VerificationResult:
        raise NotImplementedError

    @abstractmethod
    async def create_order(self, order: OrderRequest) -> OrderCreationResult:
        raise NotImplementedError
