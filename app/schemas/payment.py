"""Pydantic v2 schemas for Payment endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator

from app.schemas.common import enum_value


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assignment_id: uuid.UUID
    bid_id: uuid.UUID
    payer_id: str
    payee_id: str
    amount: Decimal
    amount_cents: int
    fee_percent: Decimal
    fee: Decimal
    fee_cents: int
    payout: Decimal
    payout_cents: int
    currency: str
    authorization_ref: str
    status: str
    created_at: datetime
    authorized_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)


class PaymentVerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    authorization_state: str
    outcome: str
    detail: str
    payment: PaymentResponse | None

    @field_validator("authorization_state", "outcome", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return enum_value(v)
