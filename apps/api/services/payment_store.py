"""SQLAlchemy-backed payment record and balance store."""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.payment_record import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_VERIFIED,
    PaymentRecord,
)
from models.user import User

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """Transient storage failure; the whole operation is safe to retry."""


def _store_operation(method):
    @functools.wraps(method)
    async def _wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except StoreUnavailableError:
            raise
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"{method.__name__} failed: {exc}") from exc

    return _wrapper


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


class SqlPaymentStore:
    """Record store plus balance store over one request-scoped session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @_store_operation
    async def find_payment_by_reference(self, reference_id: str) -> Optional[PaymentRecord]:
        result = await self.db.execute(select(PaymentRecord).where(PaymentRecord.reference_id == reference_id))
        return result.scalar_one_or_none()

    @_store_operation
    async def find_user(self, *, email: Optional[str] = None, user_id: Optional[str] = None) -> Optional[User]:
        normalized = normalize_email(email)
        if normalized:
            result = await self.db.execute(select(User).where(func.lower(User.email) == normalized))
            user = result.scalar_one_or_none()
            if user is not None:
                return user
        if user_id:
            result = await self.db.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()
        return None

    @_store_operation
    async def claim_credits(
        self,
        *,
        reference_id: str,
        user_email: Optional[str],
        user_id: Optional[str],
        plan_id: str,
        billing_cycle: str,
        payment_method: Optional[str],
        region: str,
        credits: int,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> bool:
        """
        Mark ``reference_id`` verified with credits applied.

        Returns True only for the single caller whose conditional write
        flipped ``credits_applied``; every later caller gets False. When no
        record exists one is inserted and the unique reference decides the
        winner.
        """
        now = _utcnow()
        values: Dict[str, Any] = {
            "status": PAYMENT_STATUS_VERIFIED,
            "credits_applied": True,
            "credits_granted": int(credits),
            "user_email": normalize_email(user_email) or None,
            "user_id": user_id,
            "plan_id": plan_id,
            "billing_cycle": billing_cycle,
            "updated_at": now,
        }
        if provider_transaction_id:
            values["provider_transaction_id"] = provider_transaction_id
        result = await self.db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.reference_id == reference_id,
                PaymentRecord.credits_applied.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True

        existing = await self.db.execute(select(PaymentRecord.id).where(PaymentRecord.reference_id == reference_id))
        if existing.scalar_one_or_none() is not None:
            return False

        self.db.add(
            PaymentRecord(
                reference_id=reference_id,
                payment_method=payment_method,
                region=region,
                amount=amount,
                currency=currency,
                created_at=now,
                **values,
            )
        )
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Payment %s was inserted concurrently; treating as already processed", reference_id)
            return False
        return True

    @_store_operation
    async def increment_user_credits(self, user_id: str, amount: int) -> int:
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=func.coalesce(User.credits, 0) + int(amount), updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StoreUnavailableError(f"User {user_id} disappeared during credit grant")
        balance = await self.db.execute(select(User.credits).where(User.id == user_id))
        return int(balance.scalar() or 0)

    @_store_operation
    async def record_credit_transaction(
        self,
        *,
        user_id: str,
        reference_id: str,
        delta_credits: int,
        balance_after: int,
        provider: Optional[str],
        reason: str,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user_id,
            entry_type="purchase",
            delta_credits=int(delta_credits),
            balance_after=int(balance_after),
            reason=reason,
            reference_id=reference_id,
            billing_provider=provider,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    @_store_operation
    async def create_pending_payment(
        self,
        *,
        reference_id: str,
        user_email: Optional[str],
        user_id: Optional[str],
        plan_id: str,
        billing_cycle: str,
        payment_method: str,
        region: str,
        amount: float,
        currency: str,
    ) -> PaymentRecord:
        record = PaymentRecord(
            reference_id=reference_id,
            user_email=normalize_email(user_email) or None,
            user_id=user_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            payment_method=payment_method,
            region=region,
            amount=amount,
            currency=currency,
            status=PAYMENT_STATUS_PENDING,
            credits_applied=False,
        )
        self.db.add(record)
        await self.db.commit()
        return record

    @_store_operation
    async def attach_provider_transaction(self, reference_id: str, provider_transaction_id: str) -> None:
        await self.db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.reference_id == reference_id)
            .values(provider_transaction_id=provider_transaction_id, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    @_store_operation
    async def mark_failed(self, reference_id: str) -> bool:
        """Close a pending order that will never be paid; credited records are untouched."""
        result = await self.db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.reference_id == reference_id,
                PaymentRecord.status == PAYMENT_STATUS_PENDING,
                PaymentRecord.credits_applied.is_(False),
            )
            .values(status=PAYMENT_STATUS_FAILED, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    @_store_operation
    async def list_payments_for_user(
        self,
        *,
        user_id: str,
        email: Optional[str],
        limit: int = 30,
    ) -> List[PaymentRecord]:
        conditions = [PaymentRecord.user_id == user_id]
        normalized = normalize_email(email)
        if normalized:
            conditions.append(PaymentRecord.user_email == normalized)
        result = await self.db.execute(
            select(PaymentRecord)
            .where(or_(*conditions))
            .order_by(PaymentRecord.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @_store_operation
    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed")
