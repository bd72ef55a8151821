from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Numeric, JSON, func

from .base import Base

HISTORY_ACTIONS = (
    "started",
    "upgraded",
    "downgraded",
    "downgrade_cancelled",
    "renewed",
    "cancelled",
    "expired",
    "failed",
)


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    subscription_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    previous_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    action_type = Column(String, nullable=False)
    purchased_price = Column(Numeric(10, 2), nullable=True)
    payplus_subscription_uid = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
