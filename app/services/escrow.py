"""Escrow controller: assignment lifecycle and payment release.

Every operation validates first (returning an ``Err`` without touching
anything), then applies all of its writes inside one ``transaction``. Rows are
read with ``for_update=True`` so the validation holds until commit.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import (
    VALID_TRANSITIONS,
    Assignment,
    AssignmentStatus,
    Submission,
    SubmissionStatus,
)
from app.models.bid import Bid, BidStatus
from app.models.payment import Payment, PaymentAction, PaymentStatus
from app.models.user import User
from app.services import repository as repo
from app.services.attachments import AttachmentError, dump_attachments, normalize_attachments
from app.services.gateway import PaymentGateway
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

RELEASABLE_ASSIGNMENT_STATUSES = (AssignmentStatus.UNDER_REVIEW, AssignmentStatus.COMPLETED)


class TransitionError(Exception):
    """Raised when a write would take an assignment along an edge not in VALID_TRANSITIONS."""

    def __init__(self, err: Err) -> None:
        super().__init__(err.message)
        self.err = err


def check_transition(current: AssignmentStatus, target: AssignmentStatus) -> Err | None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        return Err(
            ErrorKind.INVALID_TRANSITION,
            f"Cannot transition from {current.value} to {target.value}",
            from_status=current.value,
            to_status=target.value,
        )
    return None


def transition(assignment: Assignment, target: AssignmentStatus) -> None:
    err = check_transition(assignment.status, target)
    if err is not None:
        raise TransitionError(err)
    logger.info("Assignment %s: %s -> %s", assignment.id, assignment.status.value, target.value)
    assignment.status = target


def frozen_err(payment: Payment | None) -> Err | None:
    """Disputed or refunded escrow freezes the normal lifecycle."""
    if payment is not None and payment.status in (PaymentStatus.DISPUTED, PaymentStatus.REFUNDED):
        return Err(
            ErrorKind.INVALID_STATE,
            f"Assignment is frozen while its payment is {payment.status.value}",
            from_status=payment.status.value,
        )
    return None


@dataclass
class Outbox:
    """Notifications to publish once the transaction has committed."""
    messages: list[tuple[list[str], str, dict]] = field(default_factory=list)

    def add(self, channels: list[str], event: str, payload: dict) -> None:
        self.messages.append((channels, event, payload))

    async def flush(self, notifier: EventNotifier) -> None:
        for channels, event, payload in self.messages:
            await notifier.publish_many(channels, event, payload)
        self.messages.clear()


def _assignment_payload(assignment: Assignment) -> dict:
    return {
        "assignment_id": str(assignment.id),
        "status": assignment.status.value,
        "doer_id": assignment.doer_id,
    }


# ---------------------------------------------------------------------------
# Creation and cancellation
# ---------------------------------------------------------------------------

async def create_assignment(
    db: AsyncSession,
    notifier: EventNotifier,
    poster_id: str,
    title: str,
    description: str | None,
    budget_cents: int,
) -> Result[Assignment]:
    if budget_cents <= 0:
        return Err(ErrorKind.VALIDATION, "Budget must be positive")
    assignment = Assignment(
        id=uuid.uuid4(),
        poster_id=poster_id,
        title=title,
        description=description,
        budget_cents=budget_cents,
        status=AssignmentStatus.OPEN,
    )
    async with repo.transaction(db):
        db.add(assignment)
    await notifier.publish(user_channel(poster_id), "assignment.created", _assignment_payload(assignment))
    return Ok(assignment, "Assignment created")


async def get_assignment(db: AsyncSession, assignment_id: uuid.UUID) -> Result[Assignment]:
    assignment = await repo.get_assignment(db, assignment_id)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    return Ok(assignment)


async def list_assignments(
    db: AsyncSession, status: AssignmentStatus | None = None, limit: int = 50, offset: int = 0
) -> list[Assignment]:
    stmt = select(Assignment).order_by(Assignment.created_at.desc()).limit(limit).offset(offset)
    if status is not None:
        stmt = stmt.where(Assignment.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def cancel_assignment(
    db: AsyncSession, notifier: EventNotifier, assignment_id: uuid.UUID, poster_id: str
) -> Result[Assignment]:
    """Poster withdraws an assignment nobody has been hired for yet."""
    assignment = await repo.get_assignment(db, assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.poster_id != poster_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster can cancel an assignment")
    err = check_transition(assignment.status, AssignmentStatus.CANCELLED)
    if err is not None:
        return err

    outbox = Outbox()
    try:
        async with repo.transaction(db):
            transition(assignment, AssignmentStatus.CANCELLED)
            result = await db.execute(
                select(Bid).where(Bid.assignment_id == assignment_id, Bid.status == BidStatus.PENDING)
            )
            for bid in result.scalars():
                bid.status = BidStatus.DECLINED
                outbox.add([user_channel(bid.bidder_id)], "bid.declined", {"bid_id": str(bid.id)})
    except ConcurrentModificationError as exc:
        return exc.to_err()

    outbox.add([assignment_channel(assignment.id)], "assignment.cancelled", _assignment_payload(assignment))
    await outbox.flush(notifier)
    return Ok(assignment, "Assignment cancelled")


# ---------------------------------------------------------------------------
# Doer workflow
# ---------------------------------------------------------------------------

async def _load_for_doer(
    db: AsyncSession, assignment_id: uuid.UUID, doer_id: str
) -> tuple[Assignment, Payment | None] | Err:
    assignment = await repo.get_assignment(db, assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.doer_id is None or assignment.doer_id != doer_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the assigned doer can perform this action")
    payment = await repo.get_payment_for_assignment(db, assignment_id, for_update=True)
    err = frozen_err(payment)
    if err is not None:
        return err
    return assignment, payment


async def start_work(
    db: AsyncSession, notifier: EventNotifier, assignment_id: uuid.UUID, doer_id: str
) -> Result[Assignment]:
    loaded = await _load_for_doer(db, assignment_id, doer_id)
    if isinstance(loaded, Err):
        return loaded
    assignment, _ = loaded
    err = check_transition(assignment.status, AssignmentStatus.IN_PROGRESS)
    if err is not None:
        return err

    try:
        async with repo.transaction(db):
            transition(assignment, AssignmentStatus.IN_PROGRESS)
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish_many(
        [assignment_channel(assignment.id), user_channel(assignment.poster_id)],
        "assignment.started",
        _assignment_payload(assignment),
    )
    return Ok(assignment, "Work started")


async def submit_work(
    db: AsyncSession,
    notifier: EventNotifier,
    assignment_id: uuid.UUID,
    doer_id: str,
    content: str,
    attachments: object = None,
) -> Result[Submission]:
    """Doer hands in a deliverable; the assignment goes under review."""
    try:
        normalized = normalize_attachments(attachments)
    except AttachmentError as exc:
        return Err(ErrorKind.VALIDATION, f"Invalid attachments: {exc}")
    if not content.strip() and not normalized:
        return Err(ErrorKind.VALIDATION, "A submission needs content or attachments")

    loaded = await _load_for_doer(db, assignment_id, doer_id)
    if isinstance(loaded, Err):
        return loaded
    assignment, _ = loaded
    err = check_transition(assignment.status, AssignmentStatus.UNDER_REVIEW)
    if err is not None:
        return err

    submission = Submission(
        id=uuid.uuid4(),
        assignment_id=assignment_id,
        doer_id=doer_id,
        content=content,
        attachments=dump_attachments(normalized),
        status=SubmissionStatus.PENDING,
    )
    try:
        async with repo.transaction(db):
            transition(assignment, AssignmentStatus.UNDER_REVIEW)
            db.add(submission)
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish_many(
        [assignment_channel(assignment.id), user_channel(assignment.poster_id)],
        "assignment.submitted",
        {**_assignment_payload(assignment), "submission_id": str(submission.id)},
    )
    return Ok(submission, "Work submitted for review")


async def revise_work(
    db: AsyncSession, notifier: EventNotifier, assignment_id: uuid.UUID, user_id: str
) -> Result[Assignment]:
    """Send a submission back for changes: the poster asks for a revision or the doer reopens it."""
    assignment = await repo.get_assignment(db, assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.doer_id is None or not assignment.is_party(user_id):
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster or the doer can request a revision")
    payment = await repo.get_payment_for_assignment(db, assignment_id, for_update=True)
    err = frozen_err(payment) or check_transition(assignment.status, AssignmentStatus.IN_PROGRESS)
    if err is not None:
        return err

    try:
        async with repo.transaction(db):
            transition(assignment, AssignmentStatus.IN_PROGRESS)
            submission = await repo.get_open_submission(db, assignment_id)
            if submission is not None:
                submission.status = SubmissionStatus.SUPERSEDED
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish_many(
        [assignment_channel(assignment.id), user_channel(assignment.doer_id)],
        "assignment.revision_requested",
        _assignment_payload(assignment),
    )
    return Ok(assignment, "Assignment reopened for revision")


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------

async def finalize_release(
    db: AsyncSession,
    assignment: Assignment,
    payment: Payment,
    actor_id: str | None,
) -> bool:
    """Record a confirmed capture: payment RELEASED, assignment COMPLETED, payee credited.

    Idempotent: a payment that is already RELEASED is left alone and nothing is
    credited twice. Returns True when it wrote anything.
    """
    if payment.status == PaymentStatus.RELEASED:
        return False
    if assignment.status != AssignmentStatus.COMPLETED:
        transition(assignment, AssignmentStatus.COMPLETED)
    payment.status = PaymentStatus.RELEASED
    payment.released_at = datetime.now(UTC)

    submission = await repo.get_open_submission(db, assignment.id)
    if submission is not None:
        submission.status = SubmissionStatus.ACCEPTED

    await repo.credit_balance(db, payment.payee_id, payment.payout_cents)
    repo.log_payment_audit(
        db, payment, PaymentAction.RELEASED, actor_id,
        {"payout_cents": payment.payout_cents, "fee_cents": payment.fee_cents},
    )
    logger.info(
        "Released payment %s: %d cents to %s (fee %d cents)",
        payment.id, payment.payout_cents, payment.payee_id, payment.fee_cents,
    )
    return True


def capture_key(payment_id: uuid.UUID) -> str:
    return f"capture-{payment_id}"


async def release_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: EventNotifier,
    assignment_id: uuid.UUID,
    poster_id: str,
) -> Result[Payment]:
    """Poster approves the work: capture the held authorization and pay the doer."""
    assignment = await repo.get_assignment(db, assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if assignment.poster_id != poster_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster can release payment")

    payment = await repo.get_payment_for_assignment(db, assignment_id, for_update=True)
    if payment is None:
        return Err(ErrorKind.NO_PAYMENT, "No payment exists for this assignment")
    if payment.status == PaymentStatus.RELEASED:
        return Err(ErrorKind.ALREADY_RELEASED, "Payment has already been released",
                   from_status=payment.status.value)
    err = frozen_err(payment)
    if err is not None:
        return err
    if assignment.status not in RELEASABLE_ASSIGNMENT_STATUSES:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Assignment must be under review to release payment, currently {assignment.status.value}",
            from_status=assignment.status.value,
            to_status=AssignmentStatus.COMPLETED.value,
        )

    ref, payment_id, payee_id = payment.authorization_ref, payment.id, payment.payee_id
    captured = False
    try:
        async with repo.transaction(db):
            await gateway.capture(ref, capture_key(payment_id))
            captured = True
            await finalize_release(db, assignment, payment, poster_id)
    except ProviderError as exc:
        logger.warning("Release of payment %s failed at the provider: %s", payment_id, exc.message)
        return exc.to_err()
    except ConcurrentModificationError as exc:
        if captured:
            # Money moved; the capture webhook or /verify will finish the bookkeeping.
            logger.error("Payment %s captured but local release lost a race", payment_id)
        return exc.to_err()
    except TransitionError as exc:
        return exc.err

    await notifier.publish_many(
        [assignment_channel(assignment_id), user_channel(payee_id)],
        "payment.released",
        {"assignment_id": str(assignment_id), "payment_id": str(payment_id),
         "payout_cents": payment.payout_cents},
    )
    return Ok(payment, "Payment released", money_moved=True)


async def get_payment(
    db: AsyncSession, assignment_id: uuid.UUID, caller: User
) -> Result[Payment]:
    assignment = await repo.get_assignment(db, assignment_id)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if not (assignment.is_party(caller.id) or caller.is_admin):
        return Err(ErrorKind.UNAUTHORIZED, "Not a party to this assignment")
    payment = await repo.get_payment_for_assignment(db, assignment_id)
    if payment is None:
        return Err(ErrorKind.NO_PAYMENT, "No payment exists for this assignment")
    return Ok(payment)
