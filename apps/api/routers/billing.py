"""Plans and credits router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.payment_deps import get_provider_registry, get_region
from services.credits import get_credit_summary, get_user
from services.payment_providers import PaymentProviderRegistry
from services.pricing import list_plans

router = APIRouter()


@router.get("/plans")
async def plans(
    region: str = Depends(get_region),
    providers: PaymentProviderRegistry = Depends(get_provider_registry),
):
    return {
        "region": region,
        "payment_methods": list(providers.allowed_methods()),
        "plans": list_plans(region),
    }


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth, user_id)
    user = await get_user(db, user_id=auth.user_id, email=auth.email)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return await get_credit_summary(user, db)
