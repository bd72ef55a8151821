import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.models import PaymentMethod, Subscription, SubscriptionHistory, SubscriptionPlan, Transaction
from app.repository.base_repository import BaseRepository
from app.utils.helpers import mask_uid

logger = logging.getLogger(__name__)


class SQLAlchemySubscriptionRepository:
    def __init__(self):
        self.plans = BaseRepository(SubscriptionPlan)
        self.subscriptions = BaseRepository(Subscription)
        self.transactions = BaseRepository(Transaction)
        self.history = BaseRepository(SubscriptionHistory)

    # plans

    async def get_plan(self, db: AsyncSession, plan_id: int) -> Optional[SubscriptionPlan]:
        return await self.plans.get(db, plan_id)

    async def list_active_plans(
        self, db: AsyncSession, billing_period: Optional[str] = None
    ) -> Sequence[SubscriptionPlan]:
        query = select(SubscriptionPlan).filter(SubscriptionPlan.is_active.is_(True))
        if billing_period:
            query = query.filter(SubscriptionPlan.billing_period == billing_period)
        result = await db.execute(query.order_by(SubscriptionPlan.price))
        return result.scalars().all()

    # subscriptions

    def _subscription_query(self, subscription_id: int, user_id: Optional[str]):
        query = select(Subscription).filter(Subscription.id == subscription_id)
        if user_id is not None:
            query = query.filter(Subscription.user_id == user_id)
        return query

    async def get_subscription(
        self, db: AsyncSession, subscription_id: int, user_id: Optional[str] = None
    ) -> Optional[Subscription]:
        result = await db.execute(self._subscription_query(subscription_id, user_id))
        return result.scalars().first()

    async def get_subscription_for_update(
        self, db: AsyncSession, subscription_id: int, user_id: Optional[str] = None
    ) -> Optional[Subscription]:
        """Load the row with SELECT ... FOR UPDATE, refreshing any stale identity-map copy."""
        query = (
            self._subscription_query(subscription_id, user_id)
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        return result.scalars().first()

    async def list_user_subscriptions(
        self, db: AsyncSession, user_id: str, status: Optional[str] = None, limit: Optional[int] = None
    ) -> Sequence[Subscription]:
        query = select(Subscription).filter(Subscription.user_id == user_id)
        if status:
            query = query.filter(Subscription.status == status)
        query = query.order_by(desc(Subscription.created_at), desc(Subscription.id))
        if limit:
            query = query.limit(limit)
        result = await db.execute(query)
        return result.scalars().all()

    async def find_user_subscription_by_status(
        self, db: AsyncSession, user_id: str, statuses: Sequence[str]
    ) -> Optional[Subscription]:
        result = await db.execute(
            select(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status.in_(list(statuses)))
            .order_by(desc(Subscription.created_at), desc(Subscription.id))
        )
        return result.scalars().first()

    async def list_due_scheduled_cancellations(self, db: AsyncSession, now: datetime) -> Sequence[Subscription]:
        result = await db.execute(
            select(Subscription).filter(
                Subscription.status == "active",
                Subscription.cancelled_at.isnot(None),
                Subscription.end_date.isnot(None),
                Subscription.end_date <= now,
            )
        )
        return result.scalars().all()

    async def create_subscription(self, db: AsyncSession, plan: SubscriptionPlan, **values) -> Subscription:
        return await self.subscriptions.create(db, plan=plan, subscription_plan_id=plan.id, **values)

    async def update_subscription(self, db: AsyncSession, subscription: Subscription, **values) -> Subscription:
        return await self.subscriptions.update(db, subscription, **values)

    # transactions

    async def create_transaction(self, db: AsyncSession, **values) -> Transaction:
        return await self.transactions.create(db, **values)

    async def update_transaction(self, db: AsyncSession, transaction: Transaction, **values) -> Transaction:
        return await self.transactions.update(db, transaction, **values)

    async def get_page_transaction(self, db: AsyncSession, subscription_id: int) -> Optional[Transaction]:
        """The payment-page transaction that started the subscription."""
        result = await db.execute(
            select(Transaction)
            .filter(
                Transaction.subscription_id == subscription_id,
                Transaction.transaction_type == "subscription_payment",
            )
            .order_by(desc(Transaction.id))
        )
        return result.scalars().first()

    async def get_transaction_by_gateway_uid(self, db: AsyncSession, transaction_uid: str) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction).filter(Transaction.payplus_transaction_uid == transaction_uid)
        )
        return result.scalars().first()

    async def record_gateway_transaction(self, db: AsyncSession, **values) -> Tuple[Transaction, bool]:
        """
        Insert a transaction keyed by its gateway uid unless it is already recorded.
        Returns the row and whether it was created. The unique constraint on
        payplus_transaction_uid settles races between concurrent polls.
        """
        transaction_uid = values["payplus_transaction_uid"]
        existing = await self.get_transaction_by_gateway_uid(db, transaction_uid)
        if existing:
            return existing, False

        transaction = Transaction(**values)
        try:
            async with db.begin_nested():
                db.add(transaction)
                await db.flush()
        except IntegrityError:
            logger.info("Gateway transaction %s recorded concurrently", mask_uid(transaction_uid))
            existing = await self.get_transaction_by_gateway_uid(db, transaction_uid)
            if existing is None:
                raise
            return existing, False
        return transaction, True

    # payment methods

    async def get_payment_method(self, db: AsyncSession, payment_method_id: int, user_id: str) -> Optional[PaymentMethod]:
        result = await db.execute(
            select(PaymentMethod).filter(
                PaymentMethod.id == payment_method_id,
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def get_default_payment_method(self, db: AsyncSession, user_id: str) -> Optional[PaymentMethod]:
        result = await db.execute(
            select(PaymentMethod)
            .filter(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
            .order_by(desc(PaymentMethod.is_default), desc(PaymentMethod.created_at))
        )
        return result.scalars().first()

    # history (append-only)

    async def append_history(self, db: AsyncSession, **values) -> SubscriptionHistory:
        return await self.history.create(db, **values)

    async def list_history(self, db: AsyncSession, user_id: str, limit: int = 50) -> List[SubscriptionHistory]:
        result = await db.execute(
            select(SubscriptionHistory)
            .filter(SubscriptionHistory.user_id == user_id)
            .order_by(desc(SubscriptionHistory.created_at), desc(SubscriptionHistory.id))
            .limit(limit)
        )
        return result.scalars().all()
