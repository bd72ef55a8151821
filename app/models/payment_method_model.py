from sqlalchemy import Column, Integer, String, Boolean, DateTime, func

from .base import Base


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    payplus_token = Column(String, nullable=False)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
