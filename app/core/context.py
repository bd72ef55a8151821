from dataclasses import dataclass
from typing import Optional

from app.core.config import Settings
from app.core.database import DatabaseManager
from app.core.uow import UnitOfWork
from app.modules.payment.payplus_service import PayPlusClient
from app.modules.subscription.payment_status_service import PaymentStatusReconciler
from app.modules.subscription.plan_change_service import PlanChangeOrchestrator
from app.modules.subscription.service import SubscriptionLifecycleService
from app.repository.ports import PaymentGatewayClient, SubscriptionRepository
from app.repository.subscription_repository import SQLAlchemySubscriptionRepository


@dataclass(slots=True)
class ApplicationContext:
    """Dependency registry shared by the API process and the Celery workers."""

    settings: Settings
    database: Optional[DatabaseManager]
    repository: SubscriptionRepository
    gateway: PaymentGatewayClient
    uow: UnitOfWork
    plan_changes: PlanChangeOrchestrator
    reconciler: PaymentStatusReconciler
    subscriptions: SubscriptionLifecycleService

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()


def build_context(
    settings: Settings,
    *,
    database: Optional[DatabaseManager] = None,
    uow: Optional[UnitOfWork] = None,
    repository: Optional[SubscriptionRepository] = None,
    gateway: Optional[PaymentGatewayClient] = None,
) -> ApplicationContext:
    """Wire the subscription services. Any collaborator can be replaced, which is how tests inject fakes."""
    if uow is None:
        database = database or DatabaseManager(settings)
        uow = database.unit_of_work()
    repository = repository or SQLAlchemySubscriptionRepository()
    gateway = gateway or PayPlusClient(
        api_url=settings.PAYPLUS_API_URL,
        api_key=settings.PAYPLUS_API_KEY,
        secret_key=settings.PAYPLUS_SECRET_KEY,
        terminal_uid=settings.PAYPLUS_TERMINAL_UID,
        payment_page_uid=settings.PAYPLUS_PAYMENT_PAGE_UID,
        timeout=settings.PAYPLUS_TIMEOUT_SECONDS,
    )

    plan_changes = PlanChangeOrchestrator(repository, gateway, uow, currency=settings.DEFAULT_CURRENCY)
    reconciler = PaymentStatusReconciler(
        repository,
        gateway,
        uow,
        polling_enabled=lambda: settings.SUBSCRIPTION_POLLING_ENABLED,
        max_attempts=settings.SUBSCRIPTION_POLL_MAX_ATTEMPTS,
        batch_limit=settings.SUBSCRIPTION_POLL_BATCH_LIMIT,
        currency=settings.DEFAULT_CURRENCY,
    )
    subscriptions = SubscriptionLifecycleService(
        repository, gateway, uow, plan_changes, reconciler, currency=settings.DEFAULT_CURRENCY
    )
    return ApplicationContext(
        settings=settings,
        database=database,
        repository=repository,
        gateway=gateway,
        uow=uow,
        plan_changes=plan_changes,
        reconciler=reconciler,
        subscriptions=subscriptions,
    )
