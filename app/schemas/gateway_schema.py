# app/schemas/gateway_schema.py
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal

SUCCESS_STATUS_CODE = "000"


def normalize_status_code(value):
    """PayPlus status codes are three-digit strings; JSON numbers lose the padding."""
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:03d}"
    return value


class ChargeResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


class GatewayUpdateResult(BaseModel):
    success: bool
    error: Optional[str] = None


class GatewayTransaction(BaseModel):
    """One entry of the gateway's transaction history."""
    model_config = ConfigDict(extra="allow")

    uuid: str
    page_request_uid: Optional[str] = None
    status_code: Optional[str] = None
    approval_number: Optional[str] = None
    amount: Optional[Decimal] = None
    card_last4: Optional[str] = None
    transaction_at: Optional[datetime] = None
    recurring_uid: Optional[str] = None

    @field_validator("status_code", mode="before")
    @classmethod
    def _pad_status_code(cls, value):
        return normalize_status_code(value)

    @property
    def is_successful(self) -> bool:
        return self.status_code == SUCCESS_STATUS_CODE


class TransactionHistory(BaseModel):
    transactions: List[GatewayTransaction] = Field(default_factory=list)

    def find_by_page_request(self, page_request_uid: str) -> Optional[GatewayTransaction]:
        for transaction in self.transactions:
            if transaction.page_request_uid == page_request_uid:
                return transaction
        return None


class RecurringCharge(BaseModel):
    model_config = ConfigDict(extra="allow")

    charge_number: int = 0
    transaction_uid: Optional[str] = None
    status: Optional[str] = None
    status_code: Optional[str] = None
    charged_at: Optional[datetime] = None
    amount: Optional[Decimal] = None

    @field_validator("status_code", mode="before")
    @classmethod
    def _pad_status_code(cls, value):
        return normalize_status_code(value)

    @property
    def is_successful(self) -> bool:
        return self.status_code == SUCCESS_STATUS_CODE


class RecurringChargeHistory(BaseModel):
    charges: List[RecurringCharge] = Field(default_factory=list)

    def latest(self) -> Optional[RecurringCharge]:
        """Most recent charge: highest charge_number, then latest charged_at."""
        if not self.charges:
            return None
        return max(
            self.charges,
            key=lambda c: (c.charge_number, c.charged_at.timestamp() if c.charged_at else 0.0),
        )


class PaymentPage(BaseModel):
    page_request_uid: str
    payment_page_link: str
