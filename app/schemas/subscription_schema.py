# app/schemas/subscription_schema.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal
from datetime import datetime
from decimal import Decimal

from .plan_schema import PlanPublic


class Subscription(BaseModel):
    id: int
    user_id: str
    subscription_plan_id: int
    status: str
    billing_price: Decimal
    original_price: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    payplus_subscription_uid: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_json")
    plan: Optional[PlanPublic] = None

    class Config:
        from_attributes = True
        populate_by_name = True


class SubscriptionHistoryEntry(BaseModel):
    id: int
    subscription_id: int
    subscription_plan_id: int
    previous_plan_id: Optional[int] = None
    action_type: str
    purchased_price: Optional[Decimal] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- proration ---

class UpgradeProration(BaseModel):
    current_plan_id: int
    current_plan_name: Optional[str] = None
    current_price: Decimal
    new_plan_id: int
    new_plan_name: str
    new_price: Decimal
    price_difference: Decimal
    remaining_days: int
    total_days: int
    remaining_ratio: Decimal
    prorated_amount: Decimal
    next_billing_date: datetime


class DowngradeScheduling(BaseModel):
    current_plan_id: int
    current_plan_name: Optional[str] = None
    current_price: Decimal
    new_plan_id: int
    new_plan_name: str
    new_price: Decimal
    price_savings: Decimal
    effective_date: datetime
    days_remaining: int


class PlanChangeValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    change_type: Optional[Literal["upgrade", "downgrade"]] = None


# --- requests ---

class PaymentRequestCreate(BaseModel):
    plan_id: int
    success_url: Optional[str] = None
    failure_url: Optional[str] = None


class PlanChangeRequest(BaseModel):
    new_plan_id: int
    payment_method_id: Optional[int] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = True
    reason: str = "user_cancelled"


# --- results ---

class ServiceResult(BaseModel):
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None


class EligibilityResult(ServiceResult):
    existing_subscription_id: Optional[int] = None
    existing_status: Optional[str] = None


class PaymentRequestResult(ServiceResult):
    subscription: Optional[Subscription] = None
    transaction_id: Optional[int] = None
    page_request_uid: Optional[str] = None
    payment_page_link: Optional[str] = None


class UpgradeResult(ServiceResult):
    subscription: Optional[Subscription] = None
    proration: Optional[UpgradeProration] = None
    charge_transaction_id: Optional[str] = None
    requires_manual_review: bool = False


class DowngradeResult(ServiceResult):
    subscription: Optional[Subscription] = None
    scheduling: Optional[DowngradeScheduling] = None


class CancelResult(ServiceResult):
    subscription: Optional[Subscription] = None


class PlanChangePreview(BaseModel):
    plan: PlanPublic
    change_type: Literal["upgrade", "downgrade"]
    proration: Optional[UpgradeProration] = None
    scheduling: Optional[DowngradeScheduling] = None


class AvailablePlanChanges(ServiceResult):
    current_plan: Optional[PlanPublic] = None
    upgrades: List[PlanChangePreview] = Field(default_factory=list)
    downgrades: List[PlanChangePreview] = Field(default_factory=list)
    pending_change: Optional[Dict[str, Any]] = None
    can_upgrade: bool = False
    can_downgrade: bool = False


class SubscriptionStatusResult(ServiceResult):
    subscription: Optional[Subscription] = None


class ExpiredSubscriptions(BaseModel):
    expired: int = 0
    subscription_ids: List[int] = Field(default_factory=list)
