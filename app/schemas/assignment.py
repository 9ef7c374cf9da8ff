"""Pydantic v2 schemas for Assignment endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import enum_value


class AssignmentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=10_000)
    budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    poster_id: str
    doer_id: str | None
    title: str
    description: str | None
    status: str
    budget: Decimal
    budget_cents: int
    accepted_bid_id: uuid.UUID | None
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)


class WorkSubmission(BaseModel):
    """Deliverable handed in by the doer.

    ``attachments`` accepts URL strings, ``{url, name, type}`` objects, or an
    object / JSON string carrying ``fileUrls``.
    """
    content: str = Field("", max_length=20_000)
    attachments: Any = None


class AttachmentResponse(BaseModel):
    url: str
    name: str
    mime_type: str | None = None


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assignment_id: uuid.UUID
    doer_id: str
    content: str
    attachments: list[AttachmentResponse]
    status: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return enum_value(v)
