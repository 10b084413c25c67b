import asyncio
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
from main import app
from models.payment_record import PaymentRecord
from models.user import User
from routers import rate_limit
from services.payment_providers import (
    AlipayProvider,
    BasePaymentProvider,
    OrderCreationResult,
    OrderRequest,
    PaymentProviderRegistry,
    VerificationResult,
)


class FakePaymentProvider(BasePaymentProvider):
    """Scriptable provider client recording every identifier it is asked about."""

    def __init__(
        self,
        name: str,
        *,
        success: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        amount: float = 9.99,
        currency: str = "USD",
    ) -> None:
        self.name = name
        self.success = success
        self.delay = delay
        self.error = error
        self.amount = amount
        self.currency = currency
        self.verify_calls: List[str] = []
        self.orders: List[OrderRequest] = []
        self._order_amounts: Dict[str, Tuple[float, str]] = {}

    async def verify(self, identifier: str) -> VerificationResult:
        self.verify_calls.append(identifier)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        amount, currency = self._order_amounts.get(identifier, (self.amount, self.currency))
        return VerificationResult(
            success=self.success,
            transaction_id=f"txn_{identifier}",
            amount=amount,
            currency=currency,
            status="paid" if self.success else "unpaid",
        )

    async def create_order(self, order: OrderRequest) -> OrderCreationResult:
        self.orders.append(order)
        if self.name == "stripe":
            created = OrderCreationResult(
                reference_id=f"cs_test_{order.reference_id}",
                provider=self.name,
                payment_url=f"https://checkout.stripe.test/{order.reference_id}",
            )
        else:
            created = OrderCreationResult(
                reference_id=order.reference_id,
                provider=self.name,
                code_url=f"weixin://wxpay/bizpayurl?pr={order.reference_id}",
            )
        self._order_amounts[created.reference_id] = (float(order.amount), order.currency)
        return created

    async def query_order(self, out_trade_no: str):
        self.verify_calls.append(out_trade_no)
        return {
            "out_trade_no": out_trade_no,
            "trade_state": "SUCCESS" if self.success else "NOTPAY",
            "transaction_id": f"wx_{out_trade_no}",
            "amount": {"total": 6900, "currency": "CNY"},
        }


def make_registry(region: str, **providers: BasePaymentProvider) -> PaymentProviderRegistry:
    resolved = {"alipay": AlipayProvider(enabled=False)}
    resolved.update(providers)
    return PaymentProviderRegistry(region, resolved)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "payments.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def seed_user(session_maker):
    async def _seed(email: str, *, user_id: Optional[str] = None, credits: int = 0) -> str:
        async with session_maker() as session:
            user = User(email=email, credits=credits)
            if user_id:
                user.id = user_id
            session.add(user)
            await session.commit()
            return user.id

    return _seed


@pytest.fixture
def seed_pending_payment(session_maker):
    async def _seed(
        reference_id: str,
        *,
        user_email: Optional[str],
        plan_id: str = "pro",
        billing_cycle: str = "monthly",
        payment_method: str = "stripe",
        user_id: Optional[str] = None,
        region: str = "INTL",
        amount: Optional[float] = None,
        currency: Optional[str] = None,
    ) -> None:
        async with session_maker() as session:
            session.add(
                PaymentRecord(
                    reference_id=reference_id,
                    user_email=user_email,
                    user_id=user_id,
                    plan_id=plan_id,
                    billing_cycle=billing_cycle,
                    payment_method=payment_method,
                    region=region,
                    amount=amount,
                    currency=currency,
                    status="pending",
                    credits_applied=False,
                )
            )
            await session.commit()

    return _seed


@pytest.fixture
def load_credits(session_maker):
    async def _load(email: str) -> int:
        async with session_maker() as session:
            result = await session.execute(select(User.credits).where(User.email == email))
            return int(result.scalar_one())

    return _load


@pytest.fixture
def load_payment(session_maker):
    async def _load(reference_id: str) -> Optional[PaymentRecord]:
        async with session_maker() as session:
            result = await session.execute(select(PaymentRecord).where(PaymentRecord.reference_id == reference_id))
            return result.scalar_one_or_none()

    return _load
