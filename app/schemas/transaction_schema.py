# app/schemas/transaction_schema.py
from pydantic import BaseModel
from typing import Optional
from decimal import Decimal


class ActivationRequest(BaseModel):
    """Explicit payment success callback data."""
    transaction_uid: str
    status_code: str = "000"
    approval_number: Optional[str] = None
    amount: Optional[Decimal] = None
    recurring_uid: Optional[str] = None
