# app/models/plan_model.py
from sqlalchemy import Column, Integer, String, Boolean, Index, DateTime, Numeric, Text, func
from .base import Base

BILLING_PERIODS = ("daily", "monthly", "yearly")


class SubscriptionPlan(Base):
    __tablename__ = 'subscription_plans'
    __table_args__ = (
        Index("ix_subscription_plans_is_active", "is_active"),
        Index("ix_subscription_plans_period_price", "billing_period", "price"),
    )
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ILS")
    billing_period = Column(String(20), nullable=False, default="monthly")  # daily|monthly|yearly
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<SubscriptionPlan id={self.id} name={self.name!r} price={self.price} period={self.billing_period}>"
