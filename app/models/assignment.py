"""Assignment and Submission SQLAlchemy models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class AssignmentStatus(enum.Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    UNDER_REVIEW = "under_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Valid state transitions. Anything not listed is rejected.
VALID_TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    AssignmentStatus.OPEN: {AssignmentStatus.ASSIGNED, AssignmentStatus.CANCELLED},
    AssignmentStatus.ASSIGNED: {
        AssignmentStatus.IN_PROGRESS,
        AssignmentStatus.OPEN,  # authorization failed
        AssignmentStatus.COMPLETED,  # released by dispute or provider-confirmed capture
    },
    AssignmentStatus.IN_PROGRESS: {
        AssignmentStatus.UNDER_REVIEW,
        AssignmentStatus.OPEN,
        AssignmentStatus.COMPLETED,
    },
    AssignmentStatus.UNDER_REVIEW: {
        AssignmentStatus.IN_PROGRESS,  # revision requested
        AssignmentStatus.COMPLETED,
        AssignmentStatus.OPEN,
    },
    AssignmentStatus.COMPLETED: set(),
    AssignmentStatus.CANCELLED: set(),
}

# Statuses in which a doer is attached to the assignment
ASSIGNED_STATUSES = frozenset({
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.IN_PROGRESS,
    AssignmentStatus.UNDER_REVIEW,
    AssignmentStatus.COMPLETED,
})


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    poster_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    doer_id: Mapped[str | None] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AssignmentStatus] = mapped_column(
        Enum(AssignmentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AssignmentStatus.OPEN,
    )
    budget_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Plain column: bids reference assignments, so a FK here would be circular
    accepted_bid_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def budget(self) -> Decimal:
        return (Decimal(self.budget_cents) / 100).quantize(Decimal("0.01"))

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.poster_id, self.doer_id)


class SubmissionStatus(enum.Enum):
    PENDING = "pending"
    SUPERSEDED = "superseded"
    ACCEPTED = "accepted"


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assignments.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    doer_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=SubmissionStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
