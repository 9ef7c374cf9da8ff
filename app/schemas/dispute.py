"""Pydantic v2 schemas for Dispute endpoints."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.assignment import AttachmentResponse
from app.schemas.common import enum_value


class DisputeCreate(BaseModel):
    """``evidence`` accepts the same shapes as submission attachments."""
    reason: str = Field(..., min_length=1, max_length=10_000)
    evidence: Any = None


class DisputeRespond(BaseModel):
    response: str = Field(..., min_length=1, max_length=10_000)
    evidence: Any = None


class DisputeResolve(BaseModel):
    outcome: Literal["resolved_release", "resolved_refund"]
    resolution: str = Field(..., min_length=1, max_length=10_000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assignment_id: uuid.UUID
    payment_id: uuid.UUID
    initiator_id: str
    reason: str
    evidence: list[AttachmentResponse]
    response: str | None
    response_evidence: list[AttachmentResponse] | None
    status: str
    resolver_id: str | None
    resolution: str | None
    created_at: datetime
    responded_at: datetime | None
    resolved_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)
