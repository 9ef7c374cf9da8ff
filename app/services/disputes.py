"""Dispute resolver: open, answer and arbitrate disputes over escrowed payments.

Opening a dispute freezes the payment (DISPUTED) without touching the
assignment's status. An admin then forces the payment to a terminal state:
RELEASE runs the normal capture path, REFUND gives the funds back to the
poster and leaves the assignment frozen where it was.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import Assignment, AssignmentStatus
from app.models.dispute import Dispute, DisputeStatus
from app.models.payment import OUTSTANDING_STATUSES, PaymentAction, PaymentStatus
from app.models.user import User
from app.services import repository as repo
from app.services.attachments import AttachmentError, dump_attachments, normalize_attachments
from app.services.escrow import (
    TransitionError,
    capture_key,
    check_transition,
    finalize_release,
)
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

DISPUTABLE_ASSIGNMENT_STATUSES = (
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.IN_PROGRESS,
    AssignmentStatus.UNDER_REVIEW,
)
RESOLUTION_OUTCOMES = (DisputeStatus.RESOLVED_RELEASE, DisputeStatus.RESOLVED_REFUND)


def _dispute_payload(dispute: Dispute) -> dict:
    return {
        "dispute_id": str(dispute.id),
        "assignment_id": str(dispute.assignment_id),
        "status": dispute.status.value,
    }


def _parties(assignment: Assignment) -> list[str]:
    return [user_channel(u) for u in (assignment.poster_id, assignment.doer_id) if u]


async def open_dispute(
    db: AsyncSession,
    notifier: EventNotifier,
    assignment_id: uuid.UUID,
    initiator_id: str,
    reason: str,
    evidence: object = None,
) -> Result[Dispute]:
    if not reason.strip():
        return Err(ErrorKind.VALIDATION, "A dispute needs a reason")
    try:
        attachments = normalize_attachments(evidence)
    except AttachmentError as exc:
        return Err(ErrorKind.VALIDATION, f"Invalid evidence: {exc}")

    assignment = await repo.get_assignment(db, assignment_id, for_update=True)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    payment = await repo.get_payment_for_assignment(db, assignment_id, for_update=True)
    if payment is None:
        return Err(ErrorKind.NO_PAYMENT, "No payment exists for this assignment")
    if assignment.doer_id is None or not assignment.is_party(initiator_id):
        return Err(ErrorKind.UNAUTHORIZED, "Only the poster or the doer can open a dispute")
    if assignment.status not in DISPUTABLE_ASSIGNMENT_STATUSES:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Cannot dispute an assignment that is {assignment.status.value}",
            from_status=assignment.status.value,
        )
    if payment.status not in OUTSTANDING_STATUSES:
        return Err(
            ErrorKind.INVALID_STATE,
            f"Cannot dispute a payment that is {payment.status.value}",
            from_status=payment.status.value,
            to_status=PaymentStatus.DISPUTED.value,
        )

    dispute = Dispute(
        id=uuid.uuid4(),
        assignment_id=assignment_id,
        payment_id=payment.id,
        initiator_id=initiator_id,
        reason=reason,
        evidence=dump_attachments(attachments),
        status=DisputeStatus.OPEN,
    )
    try:
        async with repo.transaction(db):
            payment.status = PaymentStatus.DISPUTED
            db.add(dispute)
            repo.log_payment_audit(
                db, payment, PaymentAction.DISPUTED, initiator_id, {"dispute_id": str(dispute.id)}
            )
    except ConcurrentModificationError as exc:
        return exc.to_err()

    logger.info("Dispute %s opened on assignment %s by %s", dispute.id, assignment_id, initiator_id)
    await notifier.publish_many(
        [assignment_channel(assignment_id), *_parties(assignment)],
        "dispute.opened",
        _dispute_payload(dispute),
    )
    return Ok(dispute, "Dispute opened; the assignment is frozen until it is resolved")


async def respond_to_dispute(
    db: AsyncSession,
    notifier: EventNotifier,
    dispute_id: uuid.UUID,
    user_id: str,
    response: str,
    evidence: object = None,
) -> Result[Dispute]:
    """The other party answers the dispute, once."""
    if not response.strip():
        return Err(ErrorKind.VALIDATION, "A response cannot be empty")
    try:
        attachments = normalize_attachments(evidence)
    except AttachmentError as exc:
        return Err(ErrorKind.VALIDATION, f"Invalid evidence: {exc}")

    dispute = await repo.get_dispute(db, dispute_id, for_update=True)
    if dispute is None:
        return Err(ErrorKind.NOT_FOUND, "Dispute not found")
    assignment = await repo.get_assignment(db, dispute.assignment_id)
    if not assignment.is_party(user_id) or user_id == dispute.initiator_id:
        return Err(ErrorKind.UNAUTHORIZED, "Only the other party can respond to this dispute")
    if dispute.status != DisputeStatus.OPEN:
        return Err(ErrorKind.ALREADY_RESOLVED, "Dispute has already been resolved",
                   from_status=dispute.status.value)
    if dispute.response is not None:
        return Err(ErrorKind.INVALID_STATE, "A response has already been submitted")

    try:
        async with repo.transaction(db):
            dispute.response = response
            dispute.response_evidence = dump_attachments(attachments)
            dispute.responded_at = datetime.now(UTC)
    except ConcurrentModificationError as exc:
        return exc.to_err()

    await notifier.publish(user_channel(dispute.initiator_id), "dispute.responded", _dispute_payload(dispute))
    return Ok(dispute, "Response recorded")


async def resolve_dispute(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: EventNotifier,
    dispute_id: uuid.UUID,
    arbitrator: User,
    outcome: DisputeStatus,
    resolution: str,
) -> Result[Dispute]:
    """Admin decides the dispute: release to the doer or refund the poster."""
    if not arbitrator.is_admin:
        return Err(ErrorKind.UNAUTHORIZED, "Only an admin can resolve disputes")
    if outcome not in RESOLUTION_OUTCOMES:
        return Err(ErrorKind.VALIDATION, f"Unsupported resolution outcome {outcome.value}")

    dispute = await repo.get_dispute(db, dispute_id, for_update=True)
    if dispute is None:
        return Err(ErrorKind.NOT_FOUND, "Dispute not found")
    if dispute.status != DisputeStatus.OPEN:
        return Err(ErrorKind.ALREADY_RESOLVED, "Dispute has already been resolved",
                   from_status=dispute.status.value, to_status=outcome.value)

    assignment = await repo.get_assignment(db, dispute.assignment_id, for_update=True)
    payment = await repo.get_payment_for_assignment(db, dispute.assignment_id, for_update=True)
    if payment is None or payment.id != dispute.payment_id:
        return Err(ErrorKind.NO_PAYMENT, "The disputed payment no longer exists")
    if payment.status != PaymentStatus.DISPUTED:
        return Err(ErrorKind.INVALID_STATE, f"Payment is {payment.status.value}, not disputed",
                   from_status=payment.status.value)
    if outcome == DisputeStatus.RESOLVED_RELEASE and assignment.status != AssignmentStatus.COMPLETED:
        err = check_transition(assignment.status, AssignmentStatus.COMPLETED)
        if err is not None:
            return err

    ref, payment_id = payment.authorization_ref, payment.id
    try:
        async with repo.transaction(db):
            if outcome == DisputeStatus.RESOLVED_RELEASE:
                await gateway.capture(ref, capture_key(payment_id))
                await finalize_release(db, assignment, payment, arbitrator.id)
            else:
                await gateway.refund(ref, f"refund-{payment_id}")
                payment.status = PaymentStatus.REFUNDED
                payment.refunded_at = datetime.now(UTC)
                repo.log_payment_audit(
                    db, payment, PaymentAction.REFUNDED, arbitrator.id, {"dispute_id": str(dispute_id)}
                )
            dispute.status = outcome
            dispute.resolver_id = arbitrator.id
            dispute.resolution = resolution
            dispute.resolved_at = datetime.now(UTC)
    except ProviderError as exc:
        logger.warning("Resolving dispute %s failed at the provider: %s", dispute_id, exc.message)
        return exc.to_err()
    except ConcurrentModificationError as exc:
        return exc.to_err()
    except TransitionError as exc:
        return exc.err

    logger.info("Dispute %s resolved as %s by %s", dispute_id, outcome.value, arbitrator.id)
    await notifier.publish_many(
        [assignment_channel(assignment.id), *_parties(assignment)],
        "dispute.resolved",
        _dispute_payload(dispute),
    )
    return Ok(dispute, f"Dispute resolved: {outcome.value}", money_moved=True)


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID, caller: User) -> Result[Dispute]:
    dispute = await repo.get_dispute(db, dispute_id)
    if dispute is None:
        return Err(ErrorKind.NOT_FOUND, "Dispute not found")
    if not caller.is_admin:
        assignment = await repo.get_assignment(db, dispute.assignment_id)
        if not assignment.is_party(caller.id):
            return Err(ErrorKind.UNAUTHORIZED, "Not a party to this dispute")
    return Ok(dispute)


async def list_disputes(
    db: AsyncSession, caller: User, status: DisputeStatus | None = None
) -> list[Dispute]:
    """Admins see every dispute; everyone else sees disputes on their own assignments."""
    stmt = select(Dispute).order_by(Dispute.created_at.desc())
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    if not caller.is_admin:
        stmt = stmt.join(Assignment, Assignment.id == Dispute.assignment_id).where(
            or_(Assignment.poster_id == caller.id, Assignment.doer_id == caller.id)
        )
    result = await db.execute(stmt)
    return list(result.scalars().all())
