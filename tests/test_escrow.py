"""Tests for the assignment lifecycle and payment release."""

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import Submission, SubmissionStatus
from app.models.bid import Bid, BidStatus
from app.models.payment import PaymentAction, PaymentAuditLog
from tests.conftest import (
    DOER_ID,
    OTHER_ID,
    POSTER_ID,
    FakeGateway,
    RecordingNotifier,
    api,
    assigned_assignment,
    create_assignment,
    make_marketplace,
    place_bid,
    under_review_assignment,
)


@pytest.mark.asyncio
async def test_create_assignment(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    resp = await api(client, "POST", "/assignments", POSTER_ID,
                     {"title": "Translate a page", "budget": "40.5"})
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["status"] == "open"
    assert data["budget"] == "40.50"
    assert data["budget_cents"] == 4050
    assert data["poster_id"] == POSTER_ID
    assert data["doer_id"] is None


@pytest.mark.asyncio
async def test_list_assignments_by_status(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    await create_assignment(client)
    await assigned_assignment(client)

    resp = await api(client, "GET", "/assignments?status=open", OTHER_ID)
    assert resp.status_code == 200
    assert [a["status"] for a in resp.json()] == ["open"]


@pytest.mark.asyncio
async def test_cancel_open_assignment_declines_bids(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id = await create_assignment(client)
    await place_bid(client, assignment_id, DOER_ID)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/cancel", DOER_ID)
    assert resp.status_code == 403

    resp = await api(client, "POST", f"/assignments/{assignment_id}/cancel", POSTER_ID)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"

    bids = await db_session.execute(select(Bid))
    assert {b.status for b in bids.scalars()} == {BidStatus.DECLINED}


@pytest.mark.asyncio
async def test_cannot_cancel_assigned_assignment(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/cancel", POSTER_ID)
    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["kind"] == "invalid_transition"
    assert detail["from_status"] == "assigned"
    assert detail["to_status"] == "cancelled"


@pytest.mark.asyncio
async def test_doer_workflow(client: AsyncClient, db_session: AsyncSession, notifier: RecordingNotifier) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    # Only the doer can start
    resp = await api(client, "POST", f"/assignments/{assignment_id}/start", OTHER_ID)
    assert resp.status_code == 403

    resp = await api(client, "POST", f"/assignments/{assignment_id}/start", DOER_ID)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "in_progress"

    resp = await api(client, "POST", f"/assignments/{assignment_id}/submit", DOER_ID, {
        "content": "Done",
        "attachments": {"fileUrls": '[{"url": "https://cdn.example.com/a.pdf", "mimeType": "application/pdf"}]'},
    })
    assert resp.status_code == 200
    submission = resp.json()["data"]
    assert submission["status"] == "pending"
    assert submission["attachments"] == [
        {"url": "https://cdn.example.com/a.pdf", "name": "a.pdf", "mime_type": "application/pdf"}
    ]

    resp = await api(client, "GET", f"/assignments/{assignment_id}", POSTER_ID)
    assert resp.json()["status"] == "under_review"
    assert "assignment.submitted" in notifier.names()


@pytest.mark.asyncio
async def test_submit_rejects_bad_attachments(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/submit", DOER_ID,
                     {"content": "Done", "attachments": ["ftp://files.example.com/a.zip"]})
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "validation"


@pytest.mark.asyncio
async def test_submit_directly_from_assigned(client: AsyncClient, db_session: AsyncSession) -> None:
    """ASSIGNED -> UNDER_REVIEW is not an edge; work has to start first."""
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/submit", DOER_ID, {"content": "Done"})
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "invalid_transition"


@pytest.mark.asyncio
async def test_revision_supersedes_submission(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await under_review_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/revise", OTHER_ID)
    assert resp.status_code == 403

    resp = await api(client, "POST", f"/assignments/{assignment_id}/revise", POSTER_ID)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "in_progress"

    submissions = await db_session.execute(select(Submission))
    assert [s.status for s in submissions.scalars()] == [SubmissionStatus.SUPERSEDED]

    # Resubmit and the assignment is back under review
    resp = await api(client, "POST", f"/assignments/{assignment_id}/submit", DOER_ID, {"content": "v2"})
    assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_release_pays_doer_minus_fee(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    """Bid 90.00 at 10%: payee credited 81.00, exactly once."""
    await make_marketplace(db_session)
    assignment_id, _, ref = await under_review_assignment(client, "90.00")

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 200
    body = resp.json()
    assert body["money_moved"] is True
    assert body["data"]["status"] == "released"
    assert body["data"]["released_at"] is not None
    assert gateway.captures == [ref]

    resp = await api(client, "GET", f"/assignments/{assignment_id}", POSTER_ID)
    assert resp.json()["status"] == "completed"

    resp = await api(client, "GET", "/users/me", DOER_ID)
    assert resp.json()["balance"] == "81.00"

    submissions = await db_session.execute(select(Submission))
    assert [s.status for s in submissions.scalars()] == [SubmissionStatus.ACCEPTED]

    audit = await db_session.execute(select(PaymentAuditLog.action).order_by(PaymentAuditLog.timestamp))
    assert list(audit.scalars()) == [PaymentAction.CREATED, PaymentAction.RELEASED]


@pytest.mark.asyncio
async def test_double_release_is_rejected(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await under_review_assignment(client)
    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 200

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "already_released"
    assert len(gateway.captures) == 1

    resp = await api(client, "GET", "/users/me", DOER_ID)
    assert resp.json()["balance"] == "81.00"


@pytest.mark.asyncio
async def test_release_requires_review(client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "invalid_state"
    assert gateway.captures == []


@pytest.mark.asyncio
async def test_only_poster_can_release(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await under_review_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", DOER_ID)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_release_without_payment(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id = await create_assignment(client)

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 409
    assert resp.json()["detail"]["kind"] == "no_payment"


@pytest.mark.asyncio
async def test_failed_capture_changes_nothing(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway
) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await under_review_assignment(client)
    gateway.fail_next("capture")

    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 502

    resp = await api(client, "GET", f"/assignments/{assignment_id}/payment", POSTER_ID)
    assert resp.json()["status"] == "pending"
    resp = await api(client, "GET", "/users/me", DOER_ID)
    assert resp.json()["balance"] == "0.00"

    # Retry succeeds
    resp = await api(client, "POST", f"/assignments/{assignment_id}/release", POSTER_ID)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_payment_visible_to_parties_only(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_marketplace(db_session)
    assignment_id, _, _ = await assigned_assignment(client)

    resp = await api(client, "GET", f"/assignments/{assignment_id}/payment", DOER_ID)
    assert resp.status_code == 200
    assert resp.json()["payee_id"] == DOER_ID

    resp = await api(client, "GET", f"/assignments/{assignment_id}/payment", OTHER_ID)
    assert resp.status_code == 403
