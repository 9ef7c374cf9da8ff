"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite) with the full
schema. The payment provider, Redis and the event notifier are replaced with
in-memory doubles through FastAPI dependency overrides; webhook signatures are
still checked by the real ``stripe`` library.
"""

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.user import User, UserRole
from app.redis import get_redis
from app.services.gateway import (
    Authorization,
    AuthorizationRequest,
    AuthorizationState,
    StripeGateway,
    get_gateway,
)
from app.services.notifier import EventNotifier, get_notifier
from app.services.result import ProviderError
from app.utils.crypto import generate_keypair, generate_nonce, sign_request

IDENTITY_PRIVATE_KEY, IDENTITY_PUBLIC_KEY = generate_keypair()
WEBHOOK_SECRET = "whsec_test_secret"

POSTER_ID = "user_poster"
DOER_ID = "user_doer"
OTHER_ID = "user_other"
ADMIN_ID = "user_admin"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeGateway(StripeGateway):
    """In-memory provider. Webhook verification is inherited from StripeGateway."""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.requests: dict[str, AuthorizationRequest] = {}
        self.states: dict[str, AuthorizationState] = {}
        self.captures: list[str] = []
        self.refunds: list[str] = []
        self.cancels: list[str] = []
        self.failures: dict[str, ProviderError] = {}
        self._ids = itertools.count(1)

    def fail_next(self, operation: str, retryable: bool = False) -> None:
        self.failures[operation] = ProviderError(f"{operation} declined", retryable=retryable)

    def _maybe_fail(self, operation: str) -> None:
        err = self.failures.pop(operation, None)
        if err is not None:
            raise err

    async def authorize(self, request: AuthorizationRequest) -> Authorization:
        self._maybe_fail("authorize")
        ref = f"pi_test_{next(self._ids)}"
        self.requests[ref] = request
        self.states[ref] = AuthorizationState.PENDING
        return Authorization(ref=ref, client_secret=f"{ref}_secret")

    async def capture(self, ref: str, idempotency_key: str) -> None:
        self._maybe_fail("capture")
        self.captures.append(ref)
        self.states[ref] = AuthorizationState.CAPTURED

    async def refund(self, ref: str, idempotency_key: str) -> None:
        self._maybe_fail("refund")
        self.refunds.append(ref)
        self.states[ref] = AuthorizationState.CANCELED

    async def cancel(self, ref: str) -> None:
        self._maybe_fail("cancel")
        self.cancels.append(ref)
        self.states[ref] = AuthorizationState.CANCELED

    async def retrieve_authorization(self, ref: str) -> AuthorizationState:
        self._maybe_fail("retrieve")
        return self.states[ref]

    async def create_payout_account(self, user_id: str, email: str | None) -> str:
        self._maybe_fail("create_payout_account")
        return f"acct_{user_id}"

    async def create_onboarding_link(self, account_id: str) -> str:
        return f"https://connect.stripe.test/setup/{account_id}"


class RecordingNotifier(EventNotifier):
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    async def publish(self, channel: str, event: str, payload: dict) -> None:
        self.events.append((channel, event, payload))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the nonce check."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "identity_public_key", IDENTITY_PUBLIC_KEY)
    object.__setattr__(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    object.__setattr__(settings, "admin_user_ids", [ADMIN_ID])
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: FakeGateway,
    notifier: RecordingNotifier,
    fake_redis: FakeRedis,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with DB, Redis, provider and notifier overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def make_user(
    db: AsyncSession, user_id: str, payable: bool = False, admin: bool = False
) -> User:
    user = User(
        id=user_id,
        email=f"{user_id}@example.com",
        role=UserRole.ADMIN if admin else UserRole.USER,
        payout_account_id=f"acct_{user_id}" if payable else None,
        payouts_enabled=payable,
    )
    db.add(user)
    await db.commit()
    return user


async def make_marketplace(db: AsyncSession) -> None:
    """Poster, two payable bidders and an admin."""
    await make_user(db, POSTER_ID)
    await make_user(db, DOER_ID, payable=True)
    await make_user(db, OTHER_ID, payable=True)
    await make_user(db, ADMIN_ID, admin=True)


def encode_body(data: dict | None) -> bytes:
    if data is None:
        return b""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode()


def make_auth_headers(user_id: str, method: str, path: str, body: bytes = b"") -> dict[str, str]:
    """Headers as the identity provider would attach them."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(IDENTITY_PRIVATE_KEY, timestamp, method, path, body, subject=user_id)
    return {
        "Authorization": f"Identity {user_id}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": generate_nonce(),
    }


async def api(
    client: AsyncClient, method: str, path: str, user_id: str, data: dict | None = None
) -> Response:
    """Send a signed request on behalf of ``user_id``."""
    body = encode_body(data)
    headers = make_auth_headers(user_id, method, path.split("?", 1)[0], body)
    if data is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=body, headers=headers)


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header: HMAC-SHA256 over f"{timestamp}.{payload}"."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{generate_nonce()[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def intent_event(event_type: str, ref: str, metadata: dict | None = None,
                 amount: int | None = None, event_id: str | None = None) -> dict:
    obj = {"id": ref, "object": "payment_intent", "metadata": metadata or {}}
    if amount is not None:
        obj["amount"] = amount
    return stripe_event(event_type, obj, event_id)


async def send_webhook(client: AsyncClient, event: dict, secret: str = WEBHOOK_SECRET) -> Response:
    payload = json.dumps(event).encode()
    return await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, secret), "Content-Type": "application/json"},
    )


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------

async def create_assignment(client: AsyncClient, budget: str = "100.00", poster_id: str = POSTER_ID) -> str:
    resp = await api(client, "POST", "/assignments", poster_id,
                     {"title": "Logo design", "description": "A vector logo", "budget": budget})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["id"]


async def place_bid(client: AsyncClient, assignment_id: str, bidder_id: str, amount: str = "90.00") -> str:
    resp = await api(client, "POST", f"/assignments/{assignment_id}/bids", bidder_id,
                     {"amount": amount, "content": "I can do this in two days"})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["id"]


async def accept(client: AsyncClient, bid_id: str, poster_id: str = POSTER_ID) -> dict:
    resp = await api(client, "POST", f"/bids/{bid_id}/accept", poster_id)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


async def assigned_assignment(client: AsyncClient, amount: str = "90.00") -> tuple[str, str, str]:
    """An assignment with an accepted bid from DOER_ID. Returns (assignment_id, bid_id, authorization_ref)."""
    assignment_id = await create_assignment(client)
    bid_id = await place_bid(client, assignment_id, DOER_ID, amount)
    data = await accept(client, bid_id)
    return assignment_id, bid_id, data["payment"]["authorization_ref"]


async def under_review_assignment(client: AsyncClient, amount: str = "90.00") -> tuple[str, str, str]:
    assignment_id, bid_id, ref = await assigned_assignment(client, amount)
    resp = await api(client, "POST", f"/assignments/{assignment_id}/start", DOER_ID)
    assert resp.status_code == 200, resp.text
    resp = await api(client, "POST", f"/assignments/{assignment_id}/submit", DOER_ID,
                     {"content": "Here is the logo", "attachments": ["https://cdn.example.com/logo.svg"]})
    assert resp.status_code == 200, resp.text
    return assignment_id, bid_id, ref
