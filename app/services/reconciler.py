"""Webhook reconciler: apply provider-reported payment state to local records.

Webhooks and the manual verification endpoint both funnel into
``reconcile_authorization``, so one table decides what a provider state means:

==========  =============================================  ==========================================
Provider    Local state                                    Effect
==========  =============================================  ==========================================
HELD        payment PENDING                                payment COMPLETED
HELD        no payment, assignment OPEN, bid PENDING,       adopt: accept the bid, payment COMPLETED
            metadata consistent
HELD        no payment, otherwise                           void the orphan authorization
CANCELED    payment outstanding, assignment mid-flight      assignment OPEN, bid PENDING, payment voided
CAPTURED    payment outstanding, assignment mid-flight      finalize the release (once)
            or completed
anything    anything else                                   ignored
==========  =============================================  ==========================================

Webhook deliveries are deduplicated by provider event id through
``ProcessedEvent``, written in the same transaction that applies them. Only
final outcomes are recorded: an event ignored because local state was not
ready yet is applied when the provider redelivers it.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import Assignment, AssignmentStatus, SubmissionStatus
from app.models.bid import BidStatus
from app.models.payment import (
    OUTSTANDING_STATUSES,
    Payment,
    PaymentAction,
    PaymentStatus,
    ProcessedEvent,
)
from app.models.user import User
from app.services import repository as repo
from app.services.bids import apply_acceptance, new_payment
from app.services.escrow import (
    Outbox,
    TransitionError,
    finalize_release,
    transition,
)
from app.services.gateway import AuthorizationState, EventKind, GatewayEvent, PaymentGateway
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

MID_FLIGHT_STATUSES = (
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.IN_PROGRESS,
    AssignmentStatus.UNDER_REVIEW,
)
CAPTURABLE_ASSIGNMENT_STATUSES = MID_FLIGHT_STATUSES + (AssignmentStatus.COMPLETED,)

_EVENT_STATES = {
    EventKind.AUTHORIZATION_SUCCEEDED: AuthorizationState.HELD,
    EventKind.AUTHORIZATION_FAILED: AuthorizationState.CANCELED,
    EventKind.CAPTURE_SUCCEEDED: AuthorizationState.CAPTURED,
}


class ReconcileOutcome(enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class Reconciliation:
    outcome: ReconcileOutcome
    money_moved: bool = False
    detail: str = ""
    # Set when the same event could never apply later
    final: bool = False

    @property
    def recorded(self) -> bool:
        return self.final or self.outcome == ReconcileOutcome.APPLIED


@dataclass
class PaymentVerification:
    authorization_state: AuthorizationState
    outcome: ReconcileOutcome
    detail: str
    payment: Payment | None


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(value) if value else None
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Per-state handlers
# ---------------------------------------------------------------------------

async def _on_authorized(
    db: AsyncSession,
    gateway: PaymentGateway,
    assignment: Assignment | None,
    payment: Payment | None,
    ref: str,
    metadata: dict[str, str],
    amount_cents: int | None,
    outbox: Outbox,
) -> Reconciliation:
    if payment is not None:
        if payment.status != PaymentStatus.PENDING:
            return Reconciliation(ReconcileOutcome.IGNORED, detail=f"payment already {payment.status.value}")
        payment.status = PaymentStatus.COMPLETED
        payment.authorized_at = datetime.now(UTC)
        repo.log_payment_audit(db, payment, PaymentAction.AUTHORIZED)
        outbox.add(
            [assignment_channel(payment.assignment_id), user_channel(payment.payer_id),
             user_channel(payment.payee_id)],
            "payment.authorized",
            {"assignment_id": str(payment.assignment_id), "payment_id": str(payment.id)},
        )
        return Reconciliation(ReconcileOutcome.APPLIED, detail="authorization confirmed")

    # No local payment: the poster's session died between authorizing and committing,
    # or the acceptance was rolled back after the provider had already authorized.
    if assignment is not None and assignment.status == AssignmentStatus.OPEN:
        bid_id = _parse_uuid(metadata.get("bid_id"))
        bid = await repo.get_bid(db, bid_id, for_update=True) if bid_id else None
        consistent = (
            bid is not None
            and bid.assignment_id == assignment.id
            and bid.status == BidStatus.PENDING
            and bid.bidder_id == metadata.get("payee_id")
            and assignment.poster_id == metadata.get("payer_id")
            and (amount_cents is None or amount_cents == bid.amount_cents)
        )
        if consistent:
            await apply_acceptance(db, assignment, bid, outbox)
            payment = new_payment(assignment, bid, ref, PaymentStatus.COMPLETED)
            payment.authorized_at = datetime.now(UTC)
            db.add(payment)
            repo.log_payment_audit(db, payment, PaymentAction.CREATED, None, {"adopted": True})
            logger.warning("Adopted authorization %s for bid %s on assignment %s", ref, bid.id, assignment.id)
            return Reconciliation(ReconcileOutcome.APPLIED, detail="orphan authorization adopted")

    if assignment is None:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="not a marketplace authorization", final=True)
    await gateway.cancel(ref)
    logger.warning("Voided orphan authorization %s", ref)
    return Reconciliation(ReconcileOutcome.IGNORED, detail="orphan authorization voided", final=True)


async def _on_authorization_failed(
    db: AsyncSession, assignment: Assignment | None, payment: Payment | None, outbox: Outbox
) -> Reconciliation:
    if payment is None or payment.status not in OUTSTANDING_STATUSES:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="no outstanding payment")
    if assignment is None or assignment.status not in MID_FLIGHT_STATUSES:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="assignment not awaiting payment")

    doer_id = assignment.doer_id
    transition(assignment, AssignmentStatus.OPEN)
    assignment.doer_id = None
    assignment.accepted_bid_id = None

    bid = await repo.get_bid(db, payment.bid_id, for_update=True)
    if bid is not None and bid.status == BidStatus.ACCEPTED:
        bid.status = BidStatus.PENDING
    submission = await repo.get_open_submission(db, assignment.id)
    if submission is not None:
        submission.status = SubmissionStatus.SUPERSEDED

    repo.log_payment_audit(db, payment, PaymentAction.VOIDED, None, {"reason": "authorization_failed"})
    await db.delete(payment)
    logger.warning("Authorization failed for payment %s; assignment %s reopened", payment.id, assignment.id)

    outbox.add(
        [assignment_channel(assignment.id), user_channel(assignment.poster_id)]
        + ([user_channel(doer_id)] if doer_id else []),
        "payment.authorization_failed",
        {"assignment_id": str(assignment.id), "status": assignment.status.value},
    )
    return Reconciliation(ReconcileOutcome.APPLIED, detail="assignment reopened")


async def _on_captured(
    db: AsyncSession, assignment: Assignment | None, payment: Payment | None, outbox: Outbox
) -> Reconciliation:
    if payment is None:
        logger.error("Capture reported for an authorization with no local payment")
        return Reconciliation(ReconcileOutcome.IGNORED, detail="no local payment")
    if payment.status not in OUTSTANDING_STATUSES:
        return Reconciliation(ReconcileOutcome.IGNORED, detail=f"payment already {payment.status.value}")
    # The provider already moved the money, so the release stands even if the
    # assignment went back to work after the local capture call failed.
    if assignment is None or assignment.status not in CAPTURABLE_ASSIGNMENT_STATUSES:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="assignment not mid-flight")

    await finalize_release(db, assignment, payment, None)
    outbox.add(
        [assignment_channel(assignment.id), user_channel(payment.payee_id)],
        "payment.released",
        {"assignment_id": str(assignment.id), "payment_id": str(payment.id),
         "payout_cents": payment.payout_cents},
    )
    return Reconciliation(ReconcileOutcome.APPLIED, money_moved=True, detail="release finalized")


async def reconcile_authorization(
    db: AsyncSession,
    gateway: PaymentGateway,
    ref: str,
    state: AuthorizationState,
    outbox: Outbox,
    metadata: dict[str, str] | None = None,
    amount_cents: int | None = None,
) -> Reconciliation:
    """Bring local records in line with the provider's view of one authorization.

    Locks the assignment before looking at the payment, so this serializes
    with an in-flight acceptance of the same assignment. Caller owns the
    transaction.
    """
    metadata = metadata or {}
    payment = await repo.get_payment_by_authorization(db, ref)
    assignment_id = payment.assignment_id if payment is not None else _parse_uuid(metadata.get("assignment_id"))
    assignment = (
        await repo.get_assignment(db, assignment_id, for_update=True) if assignment_id else None
    )
    payment = await repo.get_payment_by_authorization(db, ref, for_update=True)

    if state == AuthorizationState.HELD:
        return await _on_authorized(db, gateway, assignment, payment, ref, metadata, amount_cents, outbox)
    if state == AuthorizationState.CANCELED:
        return await _on_authorization_failed(db, assignment, payment, outbox)
    if state == AuthorizationState.CAPTURED:
        return await _on_captured(db, assignment, payment, outbox)
    return Reconciliation(ReconcileOutcome.IGNORED, detail="authorization still pending")


async def _on_account_updated(db: AsyncSession, event: GatewayEvent) -> Reconciliation:
    user: User | None = await repo.get_user_by_payout_account(db, event.account_id)
    if user is None:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="unknown payout account")
    enabled = bool(event.payouts_enabled)
    if user.payouts_enabled == enabled:
        return Reconciliation(ReconcileOutcome.IGNORED, detail="no change")
    user.payouts_enabled = enabled
    logger.info("Payout account %s for user %s: payouts_enabled=%s", event.account_id, user.id, enabled)
    return Reconciliation(ReconcileOutcome.APPLIED, detail="payout status updated")


async def _apply(
    db: AsyncSession, gateway: PaymentGateway, event: GatewayEvent, outbox: Outbox
) -> Reconciliation:
    state = _EVENT_STATES.get(event.kind)
    if state is not None:
        return await reconcile_authorization(
            db, gateway, event.authorization_ref, state, outbox, event.metadata, event.amount_cents
        )
    if event.kind == EventKind.ACCOUNT_UPDATED:
        return await _on_account_updated(db, event)
    if event.kind == EventKind.REFUNDED:
        logger.info("Provider confirmed refund for authorization %s", event.authorization_ref)
        return Reconciliation(ReconcileOutcome.IGNORED, detail="refund acknowledged", final=True)
    return Reconciliation(ReconcileOutcome.IGNORED, detail=f"unhandled event type {event.type}", final=True)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def process_event(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: EventNotifier,
    event: GatewayEvent,
) -> Result[Reconciliation]:
    """Apply one provider event exactly once."""
    key = event.dedupe_key
    if await db.get(ProcessedEvent, key) is not None:
        logger.info("Duplicate provider event %s (%s)", event.id, key)
        return Ok(Reconciliation(ReconcileOutcome.DUPLICATE, detail="already processed"))

    outbox = Outbox()
    try:
        async with repo.transaction(db):
            reconciliation = await _apply(db, gateway, event, outbox)
            if reconciliation.recorded:
                db.add(ProcessedEvent(
                    dedupe_key=key,
                    event_id=event.id,
                    event_type=event.type,
                    outcome=reconciliation.outcome.value,
                ))
    except ProviderError as exc:
        logger.warning("Provider call failed while reconciling %s: %s", event.id, exc.message)
        return exc.to_err()
    except ConcurrentModificationError as exc:
        return exc.to_err()
    except TransitionError as exc:
        logger.error("Event %s would break the assignment lifecycle: %s", event.id, exc.err.message)
        return exc.err

    logger.info(
        "Provider event %s (%s): %s, %s",
        event.id, event.type, reconciliation.outcome.value, reconciliation.detail,
    )
    await outbox.flush(notifier)
    return Ok(reconciliation, reconciliation.detail, money_moved=reconciliation.money_moved)


async def verify_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    notifier: EventNotifier,
    assignment_id: uuid.UUID,
    caller: User,
) -> Result[PaymentVerification]:
    """Re-query the provider and repair local state through the webhook table."""
    assignment = await repo.get_assignment(db, assignment_id)
    if assignment is None:
        return Err(ErrorKind.NOT_FOUND, "Assignment not found")
    if not (assignment.is_party(caller.id) or caller.is_admin):
        return Err(ErrorKind.UNAUTHORIZED, "Not a party to this assignment")
    payment = await repo.get_payment_for_assignment(db, assignment_id)
    if payment is None:
        return Err(ErrorKind.NO_PAYMENT, "No payment exists for this assignment")

    ref, payment_id = payment.authorization_ref, payment.id
    outbox = Outbox()
    try:
        state = await gateway.retrieve_authorization(ref)
        async with repo.transaction(db):
            reconciliation = await reconcile_authorization(db, gateway, ref, state, outbox)
    except ProviderError as exc:
        return exc.to_err()
    except ConcurrentModificationError as exc:
        return exc.to_err()
    except TransitionError as exc:
        return exc.err

    await outbox.flush(notifier)
    current = await repo.get_payment_for_assignment(db, assignment_id)
    logger.info(
        "Verified payment %s: provider %s, %s",
        payment_id, state.value, reconciliation.outcome.value,
    )
    return Ok(
        PaymentVerification(state, reconciliation.outcome, reconciliation.detail, current),
        reconciliation.detail,
        money_moved=reconciliation.money_moved,
    )
