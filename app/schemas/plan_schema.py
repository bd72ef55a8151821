# app/schemas/plan_schema.py
from pydantic import BaseModel, ConfigDict
from decimal import Decimal


class PlanPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price: Decimal
    billing_period: str
