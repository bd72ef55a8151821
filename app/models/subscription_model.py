# app/models/subscription_model.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, JSON, Index, Text, func, text
from sqlalchemy.orm import relationship

from .base import Base

SUBSCRIPTION_STATUSES = ("pending", "active", "cancelled", "expired")


class Subscription(Base):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_next_billing", "next_billing_date"),
        # one active subscription per user
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    subscription_plan_id = Column(Integer, ForeignKey('subscription_plans.id'), nullable=False)

    # Payment flow: pending -> active -> cancelled | expired
    status = Column(String, default='pending', nullable=False)

    billing_price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2), nullable=True)
    start_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    payplus_subscription_uid = Column(String, nullable=True, index=True)  # recurring uid, set once
    metadata_json = Column("metadata", JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    plan = relationship("SubscriptionPlan", lazy="joined", innerjoin=True)

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def pending_plan_change(self):
        return (self.metadata_json or {}).get("pending_plan_change")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user={self.user_id} status={self.status} plan={self.subscription_plan_id}>"
