"""Assignment lifecycle endpoints, plus the bids, payment and disputes nested under an assignment."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedUser, verify_request
from app.database import get_db
from app.models.assignment import AssignmentStatus
from app.routers.results import respond, unwrap
from app.schemas.assignment import (
    AssignmentCreate,
    AssignmentResponse,
    SubmissionResponse,
    WorkSubmission,
)
from app.schemas.bid import BidCreate, BidResponse
from app.schemas.common import OperationResponse
from app.schemas.dispute import DisputeCreate, DisputeResponse
from app.schemas.payment import PaymentResponse, PaymentVerificationResponse
from app.services import bids as bid_service
from app.services import disputes as dispute_service
from app.services import escrow as escrow_service
from app.services import reconciler
from app.services.fees import to_cents
from app.services.gateway import PaymentGateway, get_gateway
from app.services.notifier import EventNotifier, get_notifier

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.post("", response_model=OperationResponse[AssignmentResponse], status_code=201)
async def create_assignment(
    data: AssignmentCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Poster publishes a new assignment."""
    result = await escrow_service.create_assignment(
        db, notifier, auth.user_id, data.title, data.description, to_cents(data.budget)
    )
    return respond(result, AssignmentResponse)


@router.get("", response_model=list[AssignmentResponse])
async def list_assignments(
    status: AssignmentStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[AssignmentResponse]:
    assignments = await escrow_service.list_assignments(db, status, limit, offset)
    return [AssignmentResponse.model_validate(a) for a in assignments]


@router.get("/{assignment_id}", response_model=AssignmentResponse)
async def get_assignment(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> AssignmentResponse:
    ok = unwrap(await escrow_service.get_assignment(db, assignment_id))
    return AssignmentResponse.model_validate(ok.value)


@router.post("/{assignment_id}/cancel", response_model=OperationResponse[AssignmentResponse])
async def cancel_assignment(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Poster cancels an assignment that is still open. Pending bids are declined."""
    result = await escrow_service.cancel_assignment(db, notifier, assignment_id, auth.user_id)
    return respond(result, AssignmentResponse)


@router.post("/{assignment_id}/start", response_model=OperationResponse[AssignmentResponse])
async def start_work(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Doer begins work."""
    result = await escrow_service.start_work(db, notifier, assignment_id, auth.user_id)
    return respond(result, AssignmentResponse)


@router.post("/{assignment_id}/submit", response_model=OperationResponse[SubmissionResponse])
async def submit_work(
    assignment_id: uuid.UUID,
    data: WorkSubmission,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Doer submits the deliverable for review."""
    result = await escrow_service.submit_work(
        db, notifier, assignment_id, auth.user_id, data.content, data.attachments
    )
    return respond(result, SubmissionResponse)


@router.post("/{assignment_id}/revise", response_model=OperationResponse[AssignmentResponse])
async def revise_work(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Send submitted work back to in-progress."""
    result = await escrow_service.revise_work(db, notifier, assignment_id, auth.user_id)
    return respond(result, AssignmentResponse)


@router.post("/{assignment_id}/release", response_model=OperationResponse[PaymentResponse])
async def release_payment(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Poster approves the work. Captures the escrowed funds and pays the doer."""
    result = await escrow_service.release_payment(db, gateway, notifier, assignment_id, auth.user_id)
    return respond(result, PaymentResponse)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

@router.get("/{assignment_id}/payment", response_model=PaymentResponse)
async def get_payment(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    ok = unwrap(await escrow_service.get_payment(db, assignment_id, auth.user))
    return PaymentResponse.model_validate(ok.value)


@router.post(
    "/{assignment_id}/payment/verify",
    response_model=OperationResponse[PaymentVerificationResponse],
)
async def verify_payment(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Re-check the authorization with the provider and repair local state if it drifted."""
    result = await reconciler.verify_payment(db, gateway, notifier, assignment_id, auth.user)
    return respond(result, PaymentVerificationResponse)


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------

@router.post(
    "/{assignment_id}/bids", response_model=OperationResponse[BidResponse], status_code=201
)
async def submit_bid(
    assignment_id: uuid.UUID,
    data: BidCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    result = await bid_service.submit_bid(
        db, notifier, assignment_id, auth.user_id, to_cents(data.amount), data.content
    )
    return respond(result, BidResponse)


@router.get("/{assignment_id}/bids", response_model=list[BidResponse])
async def list_bids(
    assignment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[BidResponse]:
    """The poster sees every bid; bidders see their own."""
    ok = unwrap(await bid_service.list_bids(db, assignment_id, auth.user))
    return [BidResponse.model_validate(b) for b in ok.value]


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------

@router.post(
    "/{assignment_id}/disputes", response_model=OperationResponse[DisputeResponse], status_code=201
)
async def open_dispute(
    assignment_id: uuid.UUID,
    data: DisputeCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Poster or doer disputes the escrowed payment. Freezes the assignment."""
    result = await dispute_service.open_dispute(
        db, notifier, assignment_id, auth.user_id, data.reason, data.evidence
    )
    return respond(result, DisputeResponse)
