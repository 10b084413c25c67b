"""Request-scoped collaborators for the payment routers."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import resolve_deployment_region
from database import get_db
from services.payment_providers import PaymentProviderRegistry, build_provider_registry
from services.payment_store import SqlPaymentStore


def get_region() -> str:
    return resolve_deployment_region()


def get_provider_registry(region: str = Depends(get_region)) -> PaymentProviderRegistry:
    return build_provider_registry(region)


def get_payment_store(db: AsyncSession = Depends(get_db)) -> SqlPaymentStore:
    return SqlPaymentStore(db)
