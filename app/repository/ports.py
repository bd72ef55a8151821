"""Interfaces the subscription services depend on."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from app.schemas.gateway_schema import (
    ChargeResult,
    GatewayUpdateResult,
    PaymentPage,
    RecurringChargeHistory,
    TransactionHistory,
)


class PaymentGatewayClient(Protocol):
    """
    Recurring-billing provider. Query methods raise ExternalGatewayError;
    command methods report failure through ``success=False``.
    """

    async def charge_token(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult: ...

    async def update_recurring_amount(
        self, subscription_uid: str, new_amount: Decimal, reason: str
    ) -> GatewayUpdateResult: ...

    async def cancel_recurring(
        self, subscription_uid: str, immediate: bool = True, reason: str = "user_cancelled"
    ) -> GatewayUpdateResult: ...

    async def query_transaction_history(self, page_request_uid: str) -> TransactionHistory: ...

    async def query_recurring_charges(self, subscription_uid: str) -> RecurringChargeHistory: ...

    async def create_payment_page(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        user_id: str,
        more_info: Optional[Dict[str, Any]] = None,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
        billing_period: str = "monthly",
    ) -> PaymentPage: ...


class SubscriptionRepository(Protocol):
    """Persistence for plans, subscriptions, transactions, payment methods and history."""

    async def get_plan(self, db, plan_id: int): ...

    async def list_active_plans(self, db, billing_period: Optional[str] = None) -> Sequence: ...

    async def get_subscription(self, db, subscription_id: int, user_id: Optional[str] = None): ...

    async def get_subscription_for_update(self, db, subscription_id: int, user_id: Optional[str] = None): ...

    async def list_user_subscriptions(
        self, db, user_id: str, status: Optional[str] = None, limit: Optional[int] = None
    ) -> Sequence: ...

    async def find_user_subscription_by_status(self, db, user_id: str, statuses: Sequence[str]): ...

    async def list_due_scheduled_cancellations(self, db, now: datetime) -> Sequence: ...

    async def create_subscription(self, db, plan, **values): ...

    async def update_subscription(self, db, subscription, **values): ...

    async def create_transaction(self, db, **values): ...

    async def update_transaction(self, db, transaction, **values): ...

    async def get_page_transaction(self, db, subscription_id: int): ...

    async def get_transaction_by_gateway_uid(self, db, transaction_uid: str): ...

    async def record_gateway_transaction(self, db, **values) -> Tuple[Any, bool]: ...

    async def get_payment_method(self, db, payment_method_id: int, user_id: str): ...

    async def get_default_payment_method(self, db, user_id: str): ...

    async def append_history(self, db, **values): ...

    async def list_history(self, db, user_id: str, limit: int = 50) -> List: ...
