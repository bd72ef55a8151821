import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from app.models import Subscription, SubscriptionHistory, SubscriptionPlan, Transaction
from app.repository.subscription_repository import SQLAlchemySubscriptionRepository


class MockDBSession:
    def __init__(self, *results):
        self.add = MagicMock()
        self.flush = AsyncMock()
        self.begin_nested = MagicMock()
        self.execute = AsyncMock(side_effect=[self._result(value) for value in results])

    @staticmethod
    def _result(value):
        result = MagicMock()
        result.scalars.return_value.first.return_value = value
        result.scalars.return_value.all.return_value = value if isinstance(value, list) else [value]
        return result

    def sql(self, call_index=0):
        query = self.execute.await_args_list[call_index].args[0]
        return str(query.compile(dialect=postgresql.dialect()))


@pytest.fixture
def repository():
    return SQLAlchemySubscriptionRepository()


@pytest.mark.asyncio
async def test_get_subscription_for_update_locks_the_row(repository):
    subscription = Subscription(id=1, user_id="user-1")
    db = MockDBSession(subscription)

    result = await repository.get_subscription_for_update(db, 1, "user-1")

    assert result is subscription
    sql = db.sql()
    assert "FOR UPDATE OF subscriptions" in sql
    assert "subscriptions.user_id =" in sql


@pytest.mark.asyncio
async def test_get_subscription_without_owner_filter(repository):
    db = MockDBSession(None)

    assert await repository.get_subscription(db, 5) is None
    assert "subscriptions.user_id =" not in db.sql()


@pytest.mark.asyncio
async def test_list_due_scheduled_cancellations_filters_active_with_end_date(repository):
    db = MockDBSession([])

    await repository.list_due_scheduled_cancellations(db, datetime(2025, 6, 20))

    sql = db.sql()
    assert "subscriptions.status =" in sql
    assert "subscriptions.cancelled_at IS NOT NULL" in sql
    assert "subscriptions.end_date <=" in sql


@pytest.mark.asyncio
async def test_record_gateway_transaction_returns_existing_row(repository):
    existing = Transaction(id=3, payplus_transaction_uid="renew-1")
    db = MockDBSession(existing)

    transaction, created = await repository.record_gateway_transaction(
        db, payplus_transaction_uid="renew-1", user_id="user-1", transaction_type="subscription_renewal", amount=50
    )

    assert transaction is existing
    assert created is False
    db.add.assert_not_called()


@pytest.mark.asyncio
async def test_record_gateway_transaction_inserts_new_row(repository):
    db = MockDBSession(None)

    transaction, created = await repository.record_gateway_transaction(
        db, payplus_transaction_uid="renew-2", user_id="user-1", transaction_type="subscription_renewal", amount=50
    )

    assert created is True
    assert transaction.payplus_transaction_uid == "renew-2"
    db.add.assert_called_once_with(transaction)
    db.begin_nested.assert_called_once()
    db.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_record_gateway_transaction_resolves_concurrent_insert(repository):
    winner = Transaction(id=9, payplus_transaction_uid="renew-3")
    db = MockDBSession(None, winner)
    db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

    transaction, created = await repository.record_gateway_transaction(
        db, payplus_transaction_uid="renew-3", user_id="user-1", transaction_type="subscription_renewal", amount=50
    )

    assert transaction is winner
    assert created is False


@pytest.mark.asyncio
async def test_create_subscription_links_plan(repository):
    plan = SubscriptionPlan(id=2, name="Pro", price=80, billing_period="monthly")
    db = MockDBSession()

    subscription = await repository.create_subscription(db, plan, user_id="user-1", billing_price=80)

    assert subscription.plan is plan
    assert subscription.subscription_plan_id == 2
    db.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_list_history_is_scoped_to_user(repository):
    db = MockDBSession([SubscriptionHistory(id=1, user_id="user-1")])

    history = await repository.list_history(db, "user-1", limit=5)

    assert len(history) == 1
    sql = db.sql()
    assert "subscription_history.user_id =" in sql
    assert "LIMIT" in sql
