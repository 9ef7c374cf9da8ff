"""Pydantic v2 schemas for Bid endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.assignment import AssignmentResponse
from app.schemas.common import enum_value
from app.schemas.payment import PaymentResponse


class BidCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    content: str = Field(..., min_length=1, max_length=10_000)


class BidUpdate(BaseModel):
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    content: str | None = Field(None, min_length=1, max_length=10_000)

    @model_validator(mode="after")
    def require_change(self) -> "BidUpdate":
        if self.amount is None and self.content is None:
            raise ValueError("Provide an amount or content to update")
        return self


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assignment_id: uuid.UUID
    bidder_id: str
    amount: Decimal
    amount_cents: int
    content: str
    status: str
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)


class AcceptedBidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    assignment: AssignmentResponse
    bid: BidResponse
    payment: PaymentResponse
    declined_bid_ids: list[uuid.UUID]
    # Handed to the poster's client to confirm the card authorization
    client_secret: str | None = None
