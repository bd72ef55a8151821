# app/schemas/plan_change_schema.py
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

PENDING_PLAN_CHANGE_KEY = "pending_plan_change"
LAST_PLAN_CHANGE_KEY = "last_plan_change"
CANCELLED_PLAN_CHANGES_KEY = "cancelled_plan_changes"
SCHEDULED_CANCELLATION_KEY = "scheduled_cancellation"


class UpgradeChange(BaseModel):
    type: Literal["upgrade"] = "upgrade"
    from_plan_id: int
    to_plan_id: int
    proration_charged: Decimal
    proration_transaction_id: Optional[str] = None
    changed_at: datetime
    effective_immediately: bool = True


class DowngradeChange(BaseModel):
    type: Literal["downgrade"] = "downgrade"
    from_plan_id: int
    to_plan_id: int
    effective_date: datetime
    scheduled_at: datetime
    new_recurring_amount: Decimal


class CancelledPlanChange(DowngradeChange):
    cancelled_at: datetime


class AppliedDowngrade(DowngradeChange):
    applied_at: datetime


PlanChange = Annotated[Union[UpgradeChange, DowngradeChange], Field(discriminator="type")]

_plan_change_adapter = TypeAdapter(PlanChange)


class ScheduledCancellation(BaseModel):
    cancelled_at: datetime
    will_expire_at: Optional[datetime] = None
    reason: str = "user_cancelled"


def parse_plan_change(raw: Optional[dict]) -> Optional[Union[UpgradeChange, DowngradeChange]]:
    """Validate a plan change read back from the subscription metadata."""
    if not raw:
        return None
    return _plan_change_adapter.validate_python(raw)


def dump_metadata_value(value: BaseModel) -> dict:
    return value.model_dump(mode="json")


def with_metadata(metadata: Optional[dict], **changes: Any) -> dict:
    """
    Return a new metadata dict with the given keys replaced.
    Pydantic values are serialized; a value of None removes the key.
    """
    updated = dict(metadata or {})
    for key, value in changes.items():
        if value is None:
            updated.pop(key, None)
        elif isinstance(value, BaseModel):
            updated[key] = dump_metadata_value(value)
        elif isinstance(value, list):
            updated[key] = [
                dump_metadata_value(item) if isinstance(item, BaseModel) else item for item in value
            ]
        else:
            updated[key] = value
    return updated


def cancelled_plan_changes(metadata: Optional[dict]) -> List[CancelledPlanChange]:
    return [CancelledPlanChange.model_validate(item) for item in (metadata or {}).get(CANCELLED_PLAN_CHANGES_KEY, [])]
