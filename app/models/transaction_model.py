from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index, Numeric, JSON
from sqlalchemy import func

from app.core.exceptions import InvalidTransitionError
from app.utils.helpers import utcnow
from .base import Base

TRANSACTION_TYPES = ("subscription_payment", "subscription_renewal", "proration_upgrade")

# Allowed payment_status moves; completed and refunded are terminal.
ALLOWED_TRANSITIONS = {
    "pending": {"completed", "failed", "cancelled"},
    "failed": {"pending"},
    "cancelled": {"pending"},
    "completed": set(),
    "refunded": set(),
}


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_status_type", "user_id", "payment_status", "transaction_type"),
        Index("ix_transactions_subscription_created", "subscription_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    transaction_type = Column(String, nullable=False)  # subscription_payment|subscription_renewal|proration_upgrade
    payment_method = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="ILS")

    payment_status = Column(String, nullable=False, default="pending")  # pending|completed|failed|cancelled|refunded
    payplus_transaction_uid = Column(String, nullable=True, unique=True)
    payment_page_request_uid = Column(String, nullable=True, index=True)
    payment_page_link = Column(String, nullable=True)
    provider_response = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    status_last_checked_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def can_transition_to(self, status: str) -> bool:
        return status in ALLOWED_TRANSITIONS.get(self.payment_status, set())

    def transition_to(self, status: str, now=None) -> None:
        """
        Move payment_status along the allowed edges.
        Raises InvalidTransitionError and leaves the row untouched otherwise.
        """
        if not self.can_transition_to(status):
            raise InvalidTransitionError(self.payment_status, status)
        now = now or utcnow()
        self.payment_status = status
        self.status_last_checked_at = now
        if status == "completed":
            self.completed_at = now
