# app/schemas/reconciliation_schema.py
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .gateway_schema import GatewayTransaction


class _Outcome(BaseModel):
    reason: Optional[str] = None
    attempt_number: int = 1
    max_attempts: int = 6
    # "page" for the payment-page lookup, "recurring" for the renewal lookup
    source: Literal["page", "recurring", "none"] = "page"

    @property
    def should_retry_later(self) -> bool:
        return False

    @property
    def should_cancel_subscription(self) -> bool:
        return False

    @property
    def should_activate_subscription(self) -> bool:
        return False


class PendingProcessing(_Outcome):
    page_status: Literal["pending_processing"] = "pending_processing"

    @property
    def should_retry_later(self) -> bool:
        return True


class Abandoned(_Outcome):
    page_status: Literal["abandoned"] = "abandoned"

    @property
    def should_cancel_subscription(self) -> bool:
        return True


class PaymentCompleted(_Outcome):
    page_status: Literal["payment_completed"] = "payment_completed"
    transaction_uid: str
    transaction: Optional[GatewayTransaction] = None
    status_code: str = "000"
    renewal: bool = False
    already_recorded: bool = False

    @property
    def should_activate_subscription(self) -> bool:
        return True


class PaymentFailed(_Outcome):
    page_status: Literal["payment_failed"] = "payment_failed"
    transaction_uid: Optional[str] = None
    status_code: Optional[str] = None
    renewal: bool = False
    already_recorded: bool = False

    @property
    def should_cancel_subscription(self) -> bool:
        return True


class CheckError(_Outcome):
    """Gateway, transport or payload failure. Never cancels or activates."""
    page_status: Literal["unknown", "error"] = "unknown"
    error: str


class PollingDisabled(_Outcome):
    page_status: Literal["disabled"] = "disabled"
    source: Literal["page", "recurring", "none"] = "none"


ReconciliationOutcome = Annotated[
    Union[PendingProcessing, Abandoned, PaymentCompleted, PaymentFailed, CheckError, PollingDisabled],
    Field(discriminator="page_status"),
]


class ReconciliationResult(BaseModel):
    success: bool = True
    error: Optional[str] = None
    subscription_id: int
    outcome: ReconciliationOutcome
    # activated|cancelled|expired|renewed|retry_later|already_processed|none
    action_taken: str = "none"
    subscription_status: Optional[str] = None
    message: Optional[str] = None


class PendingCheckSummary(BaseModel):
    user_id: str
    enabled: bool = True
    total_pending: int = 0
    activated: int = 0
    cancelled: int = 0
    errors: int = 0
    skipped: int = 0
    retry_later: int = 0
    results: List[ReconciliationResult] = Field(default_factory=list)
    error_details: List[Dict[str, Any]] = Field(default_factory=list)
