"""Dispute endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedUser, verify_request
from app.database import get_db
from app.models.dispute import DisputeStatus
from app.routers.results import respond, unwrap
from app.schemas.common import OperationResponse
from app.schemas.dispute import DisputeResolve, DisputeRespond, DisputeResponse
from app.services import disputes as dispute_service
from app.services.gateway import PaymentGateway, get_gateway
from app.services.notifier import EventNotifier, get_notifier

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("", response_model=list[DisputeResponse])
async def list_disputes(
    status: DisputeStatus | None = None,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    disputes = await dispute_service.list_disputes(db, auth.user, status)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    ok = unwrap(await dispute_service.get_dispute(db, dispute_id, auth.user))
    return DisputeResponse.model_validate(ok.value)


@router.post("/{dispute_id}/respond", response_model=OperationResponse[DisputeResponse])
async def respond_to_dispute(
    dispute_id: uuid.UUID,
    data: DisputeRespond,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """The party that did not open the dispute gives their side."""
    result = await dispute_service.respond_to_dispute(
        db, notifier, dispute_id, auth.user_id, data.response, data.evidence
    )
    return respond(result, DisputeResponse)


@router.post("/{dispute_id}/resolve", response_model=OperationResponse[DisputeResponse])
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeResolve,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Admin only. Releases the funds to the doer or refunds the poster."""
    result = await dispute_service.resolve_dispute(
        db, gateway, notifier, dispute_id, auth.user, DisputeStatus(data.outcome), data.resolution
    )
    return respond(result, DisputeResponse)
