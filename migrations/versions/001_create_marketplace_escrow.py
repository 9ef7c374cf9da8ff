"""Create users, assignments, bids, submissions, payments, disputes and webhook dedupe tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("role", sa.Enum("user", "admin", name="userrole"), nullable=False, server_default="user"),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("payout_account_id", sa.String(255), unique=True, nullable=True),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "assignments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("poster_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("doer_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "open", "assigned", "in_progress", "under_review", "completed", "cancelled",
                name="assignmentstatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("budget_cents", sa.BigInteger(), nullable=False),
        sa.Column("accepted_bid_id", sa.Uuid(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("budget_cents > 0", name="ck_assignments_budget_positive"),
    )
    op.create_index("ix_assignments_poster_id", "assignments", ["poster_id"])
    op.create_index("ix_assignments_doer_id", "assignments", ["doer_id"])

    op.create_table(
        "bids",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("assignment_id", sa.Uuid(), sa.ForeignKey("assignments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("bidder_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "declined", "withdrawn", name="bidstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_cents > 0", name="ck_bids_amount_positive"),
    )
    op.create_index("ix_bids_assignment_id", "bids", ["assignment_id"])
    op.create_index("ix_bids_bidder_id", "bids", ["bidder_id"])
    # At most one accepted bid per assignment
    op.create_index(
        "uq_bids_one_accepted_per_assignment", "bids", ["assignment_id"],
        unique=True, postgresql_where=sa.text("status = 'accepted'"),
    )

    op.create_table(
        "submissions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("assignment_id", sa.Uuid(), sa.ForeignKey("assignments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("doer_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("attachments", JSONB, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "superseded", "accepted", name="submissionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_submissions_assignment_id", "submissions", ["assignment_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("assignment_id", sa.Uuid(), sa.ForeignKey("assignments.id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("bid_id", sa.Uuid(), sa.ForeignKey("bids.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payer_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payee_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("authorization_ref", sa.String(255), unique=True, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "released", "refunded", "disputed", name="paymentstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "payment_audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("assignment_id", sa.Uuid(), nullable=False),
        sa.Column(
            "action",
            sa.Enum("created", "authorized", "released", "refunded", "disputed", "voided", name="paymentaction"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(128), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_payment_audit_log_payment_id", "payment_audit_log", ["payment_id"])
    op.create_index("ix_payment_audit_log_assignment_id", "payment_audit_log", ["assignment_id"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("assignment_id", sa.Uuid(), sa.ForeignKey("assignments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("initiator_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("evidence", JSONB, nullable=False),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("response_evidence", JSONB, nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "resolved_release", "resolved_refund", "cancelled", name="disputestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("resolver_id", sa.String(128), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_disputes_assignment_id", "disputes", ["assignment_id"])

    op.create_table(
        "processed_events",
        sa.Column("dedupe_key", sa.String(320), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("processed_events")
    op.drop_table("disputes")
    op.drop_table("payment_audit_log")
    op.drop_table("payments")
    op.drop_table("submissions")
    op.drop_table("bids")
    op.drop_table("assignments")
    op.drop_table("users")
    for enum_name in (
        "disputestatus", "paymentaction", "paymentstatus", "submissionstatus",
        "bidstatus", "assignmentstatus", "userrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
