"""Bid engine: submit, amend, withdraw, reject and accept bids.

Accepting a bid is the single serialization point for an assignment. It claims
the assignment (OPEN -> ASSIGNED, version-checked), accepts the bid, declines
every other pending bid, creates the provider authorization and records the
payment, all in one transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.assignment import Assignment, AssignmentStatus
from app.models.bid import Bid, BidStatus
from app.models.payment import Payment, PaymentAction, PaymentStatus
from app.models.user import User
from app.services import repository as repo
from app.services.escrow import Outbox, TransitionError, transition
from app.services.fees import calculate_platform_fee
from app.services.gateway import AuthorizationRequest, PaymentGateway
from app.services.notifier import EventNotifier, assignment_channel, user_channel
from app.services.result import (
    ConcurrentModificationError,
    Err,
    ErrorKind,
    Ok,
    ProviderError,
    Result,
)

logger = logging.getLogger(__name__)


@dataclass
class AcceptedBid:
    assignment: Assignment
    bid: Bid
    payment: Payment
    declined_bid_ids: list[uuid.UUID]
    client_secret: str | None = None


def _bid_payload(bid: Bid) -> dict:
    return {
        "bid_id": str(bid.id),
        "assignment_id": str(bid.assignment_id),
        "bidder_id": bid.bidder_id,
        "amount_cents": bid.amount_cents,
        "status": bid.status.value,
    }


async def submit_bid(
    db: AsyncSession,
    notifier: EventNotifier,
    assignment_id: uuid.UUID,
    bidder_id: str,
    amount_cents: int,
    content: str,
) -> Result[Bid]:
    if amount_cents <= 0:
        return Err(ErrorKind.VALIDATION, "Bid amount must be positive")
    assignment = await repo.get_assignment(db, assignment_id)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.status != AssignmentStatus.OPEN:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Assignment is not accepting bids, currently {assignment.status.value}",
            from_status=assignment.status.value,
        )
    if assignment.poster_id == bidder_id:
        return Err(ErrorKind.SELF_DEALING, "You cannot bid on your own assignment")

    existing = await db.execute(
        select(Bid.id).where(
            Bid.assignment_id == assignment_id,
            Bid.bidder_id == bidder_id,
            Bid.status != BidStatus.WITHDRAWN,
        )
    )
    if existing.first() is not None:
        return Err(ErrorKind.DUPLICATE_BID, "You have already bid on this assignment")

    bid = Bid(
        id=uuid.uuid4(),
        assignment_id=assignment_id,
        bidder_id=bidder_id,
        amount_cents=amount_cents,
        content=content,
        status=BidStatus.PENDING,
    )
    try:
        async with repo.transaction(db):
            db.add(bid)
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish_many(
        [assignment_channel(assignment_id), user_channel(assignment.poster_id)],
        "bid.submitted",
        _bid_payload(bid),
    )
    return Ok(bid, "Bid submitted")


async def _load_own_pending_bid(db: AsyncSession, bid_id: uuid.UUID, bidder_id: str) -> Bid | Err:
    bid = await repo.get_bid(db, bid_id, for_update=True)
    if bid is None:
        return Err(ErrorKind.NOT_FOUND, "Bid not found")
    if bid.bidder_id != bidder_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the bidder can change this bid")
    if bid.status != BidStatus.PENDING:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Only pending bids can be changed, currently {bid.status.value}",
            from_status=bid.status.value,
        )
    return bid


async def update_bid(
    db: AsyncSession,
    notifier: EventNotifier,
    bid_id: uuid.UUID,
    bidder_id: str,
    amount_cents: int | None = None,
    content: str | None = None,
) -> Result[Bid]:
    if amount_cents is not None and amount_cents <= 0:
        return Err(ErrorKind.VALIDATION, "Bid amount must be positive")
    loaded = await _load_own_pending_bid(db, bid_id, bidder_id)
    if isinstance(loaded, Err):
        return loaded
    bid = loaded

    try:
        async with repo.transaction(db):
            if amount_cents is not None:
                bid.amount_cents = amount_cents
            if content is not None:
                bid.content = content
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish(assignment_channel(bid.assignment_id), "bid.updated", _bid_payload(bid))
    return Ok(bid, "Bid updated")


async def withdraw_bid(
    db: AsyncSession, notifier: EventNotifier, bid_id: uuid.UUID, bidder_id: str
) -> Result[Bid]:
    loaded = await _load_own_pending_bid(db, bid_id, bidder_id)
    if isinstance(loaded, Err):
        return loaded
    bid = loaded

    try:
        async with repo.transaction(db):
            bid.status = BidStatus.WITHDRAWN
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish(assignment_channel(bid.assignment_id), "bid.withdrawn", _bid_payload(bid))
    return Ok(bid, "Bid withdrawn")


async def reject_bid(
    db: AsyncSession, notifier: EventNotifier, bid_id: uuid.UUID, poster_id: str
) -> Result[Bid]:
    """Poster turns down a single bid while the assignment stays open."""
    bid = await repo.get_bid(db, bid_id, for_update=True)
    if bid is None:
        return Err(ErrorKind.NOT_FOUND, "Bid not found")
    assignment = await repo.get_assignment(db, bid.assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.poster_id != poster_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster can reject bids")
    if assignment.status != AssignmentStatus.OPEN:
        return Err(ErrorKind.INVALID_STATE, "Assignment is no longer open",
                   from_status=assignment.status.value)
    if bid.status != BidStatus.PENDING:
        return Err(ErrorKind.INVALID_STATE, f"Bid is {bid.status.value}", from_status=bid.status.value)

    try:
        async with repo.transaction(db):
            bid.status = BidStatus.DECLINED
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish(user_channel(bid.bidder_id), "bid.declined", _bid_payload(bid))
    return Ok(bid, "Bid rejected")


async def list_bids(db: AsyncSession, assignment_id: uuid.UUID, caller: User) -> Result[list[Bid]]:
    """The poster (or an admin) sees every bid; anyone else sees only their own."""
    assignment = await repo.get_assignment(db, assignment_id)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    stmt = select(Bid).where(Bid.assignment_id == assignment_id).order_by(Bid.created_at)
    if assignment.poster_id != caller.id and not caller.is_admin:
        stmt = stmt.where(Bid.bidder_id == caller.id)
    result = await db.execute(stmt)
    return Ok(list(result.scalars().all()))


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------

async def apply_acceptance(
    db: AsyncSession, assignment: Assignment, bid: Bid, outbox: Outbox
) -> list[uuid.UUID]:
    """Claim the assignment for ``bid`` and decline its siblings. Caller owns the transaction."""
    transition(assignment, AssignmentStatus.ASSIGNED)
    assignment.doer_id = bid.bidder_id
    assignment.accepted_bid_id = bid.id
    bid.status = BidStatus.ACCEPTED

    result = await db.execute(
        select(Bid).where(
            Bid.assignment_id == assignment.id,
            Bid.id != bid.id,
            Bid.status == BidStatus.PENDING,
        )
    )
    declined = []
    for sibling in result.scalars():
        sibling.status = BidStatus.DECLINED
        declined.append(sibling.id)
        outbox.add([user_channel(sibling.bidder_id)], "bid.declined", _bid_payload(sibling))

    outbox.add(
        [assignment_channel(assignment.id), user_channel(bid.bidder_id)],
        "bid.accepted",
        _bid_payload(bid),
    )
    return declined


def new_payment(
    assignment: Assignment,
    bid: Bid,
    authorization_ref: str,
    status: PaymentStatus,
    fee_percent: Decimal | None = None,
) -> Payment:
    if fee_percent is None:
        fee_percent = settings.platform_fee_percent
    return Payment(
        id=uuid.uuid4(),
        assignment_id=assignment.id,
        bid_id=bid.id,
        payer_id=assignment.poster_id,
        payee_id=bid.bidder_id,
        amount_cents=bid.amount_cents,
        fee_percent=fee_percent,
        fee_cents=calculate_platform_fee(bid.amount_cents, fee_percent),
        currency=settings.currency,
        authorization_ref=authorization_ref,
        status=status,
    )


async def _void_orphan(gateway: PaymentGateway, ref: str) -> None:
    try:
        await gateway.cancel(ref)
    except ProviderError as exc:
        # The reconciler voids it when the authorization webhook arrives.
        logger.error("Could not void orphan authorization %s: %s", ref, exc.message)


async def accept_bid(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: EventNotifier,
    bid_id: uuid.UUID,
    poster_id: str,
) -> Result[AcceptedBid]:
    bid = await repo.get_bid(db, bid_id)
    if bid is None:
        return Err(ErrorKind.NOT_FOUND, "Bid not found")
    assignment = await repo.get_assignment(db, bid.assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.poster_id != poster_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster can accept bids")
    if assignment.status != AssignmentStatus.OPEN:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Assignment is not open, currently {assignment.status.value}",
            from_status=assignment.status.value,
            to_status=AssignmentStatus.ASSIGNED.value,
        )
    bid = await repo.get_bid(db, bid_id, for_update=True)
    if bid.bidder_id == poster_id:
        return Err(ErrorKind.SELF_DEALING, "You cannot accept your own bid")
    if bid.status != BidStatus.PENDING:
        return Err(ErrorKind.INVALID_STATE, f"Bid is {bid.status.value}", from_status=bid.status.value)
    payee = await repo.get_user(db, bid.bidder_id)
    if payee is None or not payee.is_payable:
        return Err(
            ErrorKind.PAYEE_NOT_PAYABLE,
            "The bidder has not finished setting up a verified payout account",
        )

    payment = new_payment(assignment, bid, authorization_ref="", status=PaymentStatus.PENDING)
    request = AuthorizationRequest(
        assignment_id=str(assignment.id),
        bid_id=str(bid.id),
        payer_id=poster_id,
        payee_id=bid.bidder_id,
        payee_account_id=payee.payout_account_id,
        amount_cents=payment.amount_cents,
        fee_cents=payment.fee_cents,
        currency=payment.currency,
        idempotency_key=f"authorize-{bid.id}-v{assignment.version}",
    )

    outbox = Outbox()
    authorization = None
    try:
        async with repo.transaction(db):
            declined = await apply_acceptance(db, assignment, bid, outbox)
            # Claim the assignment before any money is touched.
            await db.flush()
            authorization = await gateway.authorize(request)
            payment.authorization_ref = authorization.ref
            db.add(payment)
            repo.log_payment_audit(db, payment, PaymentAction.CREATED, poster_id)
    except ProviderError as exc:
        logger.warning("Authorization for bid %s failed: %s", bid_id, exc.message)
        return exc.to_err()
    except ConcurrentModificationError as exc:
        if authorization is not None:
            await _void_orphan(gateway, authorization.ref)
        return exc.to_err()
    except TransitionError as exc:
        return exc.err

    logger.info(
        "Accepted bid %s on assignment %s; authorization %s for %d cents",
        bid.id, assignment.id, payment.authorization_ref, payment.amount_cents,
    )
    await outbox.flush(notifier)
    return Ok(
        AcceptedBid(assignment, bid, payment, declined, authorization.client_secret),
        "Bid accepted; awaiting payment authorization",
    )
