"""Bid endpoints addressed by bid id."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedUser, verify_request
from app.database import get_db
from app.routers.results import respond
from app.schemas.bid import AcceptedBidResponse, BidResponse, BidUpdate
from app.schemas.common import OperationResponse
from app.services import bids as bid_service
from app.services.fees import to_cents
from app.services.gateway import PaymentGateway, get_gateway
from app.services.notifier import EventNotifier, get_notifier

router = APIRouter(prefix="/bids", tags=["bids"])


@router.patch("/{bid_id}", response_model=OperationResponse[BidResponse])
async def update_bid(
    bid_id: uuid.UUID,
    data: BidUpdate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Bidder amends a pending bid."""
    amount_cents = to_cents(data.amount) if data.amount is not None else None
    result = await bid_service.update_bid(db, notifier, bid_id, auth.user_id, amount_cents, data.content)
    return respond(result, BidResponse)


@router.post("/{bid_id}/withdraw", response_model=OperationResponse[BidResponse])
async def withdraw_bid(
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    result = await bid_service.withdraw_bid(db, notifier, bid_id, auth.user_id)
    return respond(result, BidResponse)


@router.post("/{bid_id}/reject", response_model=OperationResponse[BidResponse])
async def reject_bid(
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    result = await bid_service.reject_bid(db, notifier, bid_id, auth.user_id)
    return respond(result, BidResponse)


@router.post("/{bid_id}/accept", response_model=OperationResponse[AcceptedBidResponse])
async def accept_bid(
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: EventNotifier = Depends(get_notifier),
) -> OperationResponse:
    """Poster hires the bidder. Declines all other bids and opens a payment authorization.

    The response carries the authorization's client secret, which the poster's
    client uses to confirm the card hold with the provider.
    """
    result = await bid_service.accept_bid(db, gateway, notifier, bid_id, auth.user_id)
    return respond(result, AcceptedBidResponse)
