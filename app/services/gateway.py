"""Payment provider gateway: manual-capture authorizations on Stripe Connect.

Accepting a bid creates a PaymentIntent with ``capture_method="manual"`` whose
funds are routed to the payee's connected account (``transfer_data``) minus an
application fee. Releasing captures it; refunding voids it (still held) or
refunds it (already captured). Every blocking Stripe call runs in a worker
thread under ``settings.provider_timeout_seconds``; a timeout means the
outcome is unknown and is reported as a retryable ``ProviderError``.
"""

import abc
import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

from app.config import settings
from app.services.result import ProviderError

logger = logging.getLogger(__name__)


class AuthorizationState(enum.Enum):
    PENDING = "pending"  # waiting on the payer (card entry, 3DS, processing)
    HELD = "held"  # authorized, capturable
    CAPTURED = "captured"
    CANCELED = "canceled"


class EventKind(enum.Enum):
    AUTHORIZATION_SUCCEEDED = "authorization_succeeded"
    AUTHORIZATION_FAILED = "authorization_failed"
    CAPTURE_SUCCEEDED = "capture_succeeded"
    REFUNDED = "refunded"
    ACCOUNT_UPDATED = "account_updated"
    UNKNOWN = "unknown"


_STRIPE_EVENT_KINDS = {
    "payment_intent.amount_capturable_updated": EventKind.AUTHORIZATION_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.AUTHORIZATION_FAILED,
    "payment_intent.canceled": EventKind.AUTHORIZATION_FAILED,
    "payment_intent.succeeded": EventKind.CAPTURE_SUCCEEDED,
    "charge.refunded": EventKind.REFUNDED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
}

_STRIPE_INTENT_STATES = {
    "requires_payment_method": AuthorizationState.PENDING,
    "requires_confirmation": AuthorizationState.PENDING,
    "requires_action": AuthorizationState.PENDING,
    "processing": AuthorizationState.PENDING,
    "requires_capture": AuthorizationState.HELD,
    "succeeded": AuthorizationState.CAPTURED,
    "canceled": AuthorizationState.CANCELED,
}


class WebhookSignatureError(Exception):
    pass


class MalformedEventError(Exception):
    """Authentic payload that could not be interpreted."""


@dataclass
class AuthorizationRequest:
    assignment_id: str
    bid_id: str
    payer_id: str
    payee_id: str
    payee_account_id: str
    amount_cents: int
    fee_cents: int
    currency: str
    idempotency_key: str

    def metadata(self) -> dict[str, str]:
        return {
            "assignment_id": self.assignment_id,
            "bid_id": self.bid_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
        }


@dataclass
class Authorization:
    ref: str
    client_secret: str | None = None


@dataclass
class GatewayEvent:
    """A provider webhook, normalized."""
    id: str
    type: str
    kind: EventKind
    authorization_ref: str | None = None
    account_id: str | None = None
    payouts_enabled: bool | None = None
    amount_cents: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        # Redeliveries reuse the event id. Distinct events that mean the same
        # thing are absorbed by the state checks in the reconciler.
        return self.id


class PaymentGateway(abc.ABC):
    @abc.abstractmethod
    async def authorize(self, request: AuthorizationRequest) -> Authorization: ...

    @abc.abstractmethod
    async def capture(self, ref: str, idempotency_key: str) -> None: ...

    @abc.abstractmethod
    async def refund(self, ref: str, idempotency_key: str) -> None: ...

    @abc.abstractmethod
    async def cancel(self, ref: str) -> None: ...

    @abc.abstractmethod
    async def retrieve_authorization(self, ref: str) -> AuthorizationState: ...

    @abc.abstractmethod
    async def create_payout_account(self, user_id: str, email: str | None) -> str: ...

    @abc.abstractmethod
    async def create_onboarding_link(self, account_id: str) -> str: ...

    @abc.abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent: ...


def parse_stripe_event(data: dict[str, Any]) -> GatewayEvent:
    """Map a Stripe event document onto a ``GatewayEvent``."""
    try:
        event_id = data["id"]
        event_type = data["type"]
        obj = data["data"]["object"]
    except (KeyError, TypeError) as exc:
        raise MalformedEventError(f"Missing field in event: {exc}") from exc

    kind = _STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
    event = GatewayEvent(id=event_id, type=event_type, kind=kind)

    if event_type.startswith("payment_intent."):
        event.authorization_ref = obj.get("id")
        event.amount_cents = obj.get("amount")
        event.metadata = {str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}
    elif event_type == "charge.refunded":
        event.authorization_ref = obj.get("payment_intent")
        event.amount_cents = obj.get("amount_refunded")
    elif event_type == "account.updated":
        event.account_id = obj.get("id")
        event.payouts_enabled = bool(obj.get("payouts_enabled")) and bool(
            obj.get("charges_enabled", True)
        )

    if kind in (
        EventKind.AUTHORIZATION_SUCCEEDED,
        EventKind.AUTHORIZATION_FAILED,
        EventKind.CAPTURE_SUCCEEDED,
    ) and not event.authorization_ref:
        raise MalformedEventError(f"{event_type} without a payment intent id")
    if kind == EventKind.ACCOUNT_UPDATED and not event.account_id:
        raise MalformedEventError("account.updated without an account id")
    return event


class StripeGateway(PaymentGateway):
    """Production gateway backed by the ``stripe`` library."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )

    async def _call(self, operation: str, fn, *args, **kwargs):  # type: ignore[no-untyped-def]
        kwargs.setdefault("api_key", self.api_key)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Stripe %s timed out after %ss", operation, settings.provider_timeout_seconds)
            raise ProviderError(f"Payment provider timed out during {operation}", retryable=True) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe %s failed transiently: %s", operation, exc)
            raise ProviderError(f"Payment provider unavailable during {operation}", retryable=True) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s rejected: %s", operation, exc)
            message = exc.user_message or str(exc) or f"Payment provider rejected {operation}"
            raise ProviderError(message, retryable=False) from exc

    async def authorize(self, request: AuthorizationRequest) -> Authorization:
        intent = await self._call(
            "authorize",
            stripe.PaymentIntent.create,
            amount=request.amount_cents,
            currency=request.currency,
            capture_method="manual",
            payment_method_types=["card"],
            application_fee_amount=request.fee_cents,
            transfer_data={"destination": request.payee_account_id},
            metadata=request.metadata(),
            idempotency_key=request.idempotency_key,
        )
        logger.info(
            "Created authorization %s for assignment %s (%d cents)",
            intent.id, request.assignment_id, request.amount_cents,
        )
        return Authorization(ref=intent.id, client_secret=intent.client_secret)

    async def capture(self, ref: str, idempotency_key: str) -> None:
        await self._call("capture", stripe.PaymentIntent.capture, ref, idempotency_key=idempotency_key)
        logger.info("Captured authorization %s", ref)

    async def refund(self, ref: str, idempotency_key: str) -> None:
        state = await self.retrieve_authorization(ref)
        if state == AuthorizationState.CANCELED:
            logger.info("Authorization %s already canceled, nothing to refund", ref)
            return
        if state == AuthorizationState.CAPTURED:
            await self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=ref,
                reverse_transfer=True,
                refund_application_fee=True,
                idempotency_key=idempotency_key,
            )
            logger.info("Refunded captured authorization %s", ref)
            return
        await self.cancel(ref)

    async def cancel(self, ref: str) -> None:
        await self._call("cancel", stripe.PaymentIntent.cancel, ref)
        logger.info("Canceled authorization %s", ref)

    async def retrieve_authorization(self, ref: str) -> AuthorizationState:
        intent = await self._call("retrieve", stripe.PaymentIntent.retrieve, ref)
        try:
            return _STRIPE_INTENT_STATES[intent.status]
        except KeyError:
            raise ProviderError(f"Unexpected payment intent status {intent.status!r}") from None

    async def create_payout_account(self, user_id: str, email: str | None) -> str:
        account = await self._call(
            "create_payout_account",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
            metadata={"user_id": user_id},
            idempotency_key=f"payout-account-{user_id}",
        )
        return account.id

    async def create_onboarding_link(self, account_id: str) -> str:
        link = await self._call(
            "create_onboarding_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=f"{settings.base_url}{settings.payout_onboarding_refresh_path}",
            return_url=f"{settings.base_url}{settings.payout_onboarding_return_path}",
            type="account_onboarding",
        )
        return link.url

    def verify_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature or not self.webhook_secret:
            raise WebhookSignatureError("Missing webhook signature")
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=settings.stripe_webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise MalformedEventError(f"Invalid JSON payload: {exc}") from exc
        return parse_stripe_event(json.loads(payload))


_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
