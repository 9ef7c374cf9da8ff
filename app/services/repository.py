"""Row access and the transaction scope shared by every service.

Reads taken with ``for_update=True`` lock the row (SELECT ... FOR UPDATE on
Postgres) for the rest of the session's transaction. Assignment and Payment
rows also carry a version counter, so a write that raced another writer fails
at flush time instead of silently overwriting it.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.models.assignment import Assignment, Submission, SubmissionStatus
from app.models.bid import Bid
from app.models.dispute import Dispute
from app.models.payment import Payment, PaymentAction, PaymentAuditLog
from app.models.user import User
from app.services.result import ConcurrentModificationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        await db.commit()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        logger.warning("Transaction lost a race: %s", exc)
        raise ConcurrentModificationError(str(exc)) from exc
    except BaseException:
        await db.rollback()
        raise


async def _get(db: AsyncSession, stmt, for_update: bool):  # type: ignore[no-untyped-def]
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: str, for_update: bool = False) -> User | None:
    return await _get(db, select(User).where(User.id == user_id), for_update)


async def get_user_by_payout_account(db: AsyncSession, account_id: str) -> User | None:
    return await _get(
        db, select(User).where(User.payout_account_id == account_id), for_update=True
    )


async def get_assignment(
    db: AsyncSession, assignment_id: uuid.UUID, for_update: bool = False
) -> Assignment | None:
    return await _get(db, select(Assignment).where(Assignment.id == assignment_id), for_update)


async def get_bid(db: AsyncSession, bid_id: uuid.UUID, for_update: bool = False) -> Bid | None:
    return await _get(db, select(Bid).where(Bid.id == bid_id), for_update)


async def get_payment_for_assignment(
    db: AsyncSession, assignment_id: uuid.UUID, for_update: bool = False
) -> Payment | None:
    return await _get(
        db, select(Payment).where(Payment.assignment_id == assignment_id), for_update
    )


async def get_payment_by_authorization(
    db: AsyncSession, authorization_ref: str, for_update: bool = False
) -> Payment | None:
    return await _get(
        db, select(Payment).where(Payment.authorization_ref == authorization_ref), for_update
    )


async def get_dispute(
    db: AsyncSession, dispute_id: uuid.UUID, for_update: bool = False
) -> Dispute | None:
    return await _get(db, select(Dispute).where(Dispute.id == dispute_id), for_update)


async def get_open_submission(db: AsyncSession, assignment_id: uuid.UUID) -> Submission | None:
    result = await db.execute(
        select(Submission)
        .where(
            Submission.assignment_id == assignment_id,
            Submission.status == SubmissionStatus.PENDING,
        )
        .order_by(Submission.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def credit_balance(db: AsyncSession, user_id: str, amount_cents: int) -> User:
    """Add to a user's balance under a row lock."""
    user = await get_user(db, user_id, for_update=True)
    if user is None:
        raise LookupError(f"User {user_id} not found")
    user.balance_cents = user.balance_cents + amount_cents
    return user


def log_payment_audit(
    db: AsyncSession,
    payment: Payment,
    action: PaymentAction,
    actor_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable payment audit log."""
    db.add(PaymentAuditLog(
        id=uuid.uuid4(),
        payment_id=payment.id,
        assignment_id=payment.assignment_id,
        action=action,
        actor_id=actor_id,
        amount_cents=payment.amount_cents,
        metadata_={
            "status": payment.status.value,
            "fee_percent": str(Decimal(payment.fee_percent)),
            **(metadata or {}),
        },
    ))
