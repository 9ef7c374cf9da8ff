"""Pydantic v2 schemas for User endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator

from app.schemas.common import enum_value


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None
    role: str
    balance: Decimal
    balance_cents: int
    payout_account_id: str | None
    payouts_enabled: bool
    created_at: datetime

    @field_validator("role", mode="before")
    @classmethod
    def serialize_role(cls, v: object) -> str:
        return enum_value(v)


class PayoutOnboardingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user: UserResponse
    account_id: str
    onboarding_url: str
