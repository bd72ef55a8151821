# app/tasks/subscription_tasks.py
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.context import ApplicationContext, build_context
from app.modules.subscription.payment_status_service import next_poll_delay
from app.schemas.reconciliation_schema import CheckError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_context(work: Callable[[ApplicationContext], Awaitable[T]]) -> T:
    """
    Celery workers are synchronous. Each task gets its own event loop and its
    own engine, since an asyncpg pool cannot outlive the loop that created it.
    """
    async def runner():
        context = build_context(settings)
        try:
            return await work(context)
        finally:
            await context.close()

    return asyncio.run(runner())


def schedule_payment_poll(subscription_id: int, attempt_number: int = 1) -> None:
    """Queue poll attempt ``attempt_number`` after its back-off delay."""
    countdown = next_poll_delay(attempt_number)
    poll_subscription_payment.apply_async(args=(subscription_id, attempt_number), countdown=countdown)


@celery_app.task(name="tasks.poll_subscription_payment")
def poll_subscription_payment(subscription_id: int, attempt_number: int = 1):
    """
    One reconciliation attempt for a subscription. Reschedules itself while the
    payment is still processing or the gateway could not be reached.
    """
    result = run_with_context(
        lambda context: context.reconciler.check_and_handle_subscription_payment_page_status(
            subscription_id, attempt_number
        )
    )
    logger.info(
        "Poll attempt %s for subscription %s: %s (%s)",
        attempt_number,
        subscription_id,
        result.action_taken,
        result.outcome.page_status,
    )

    transient = result.action_taken == "retry_later" or (
        isinstance(result.outcome, CheckError) and result.subscription_status == "pending"
    )
    if transient and attempt_number < settings.SUBSCRIPTION_POLL_MAX_ATTEMPTS:
        schedule_payment_poll(subscription_id, attempt_number + 1)
    return result.model_dump(mode="json")


@celery_app.task(name="tasks.check_user_pending_subscriptions")
def check_user_pending_subscriptions(user_id: str, attempt_number: int = 1):
    summary = run_with_context(
        lambda context: context.reconciler.check_user_pending_subscriptions(user_id, attempt_number)
    )
    logger.info(
        "Pending check for user %s: %s activated, %s cancelled, %s errors",
        user_id,
        summary.activated,
        summary.cancelled,
        summary.errors,
    )
    return summary.model_dump(mode="json")


@celery_app.task(name="tasks.expire_due_subscriptions")
def expire_due_subscriptions():
    """
    A periodic task to expire subscriptions whose end-of-cycle cancellation date has passed.
    """
    logger.info("Running periodic task: expiring due subscriptions")
    expired = run_with_context(lambda context: context.subscriptions.expire_due_subscriptions())
    if not expired.expired:
        logger.info("No subscriptions due for expiry.")
    return expired.model_dump(mode="json")
