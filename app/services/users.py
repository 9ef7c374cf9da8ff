"""Local user records and payout account onboarding."""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.user import User, UserRole
from app.services import repository as repo
from app.services.gateway import PaymentGateway
from app.services.result import ConcurrentModificationError, Ok, ProviderError, Result

logger = logging.getLogger(__name__)


@dataclass
class PayoutOnboarding:
    user: User
    account_id: str
    onboarding_url: str


async def provision_user(db: AsyncSession, user_id: str, email: str | None = None) -> User:
    """Return the local mirror of an identity, creating it on first sight."""
    role = UserRole.ADMIN if user_id in settings.admin_user_ids else UserRole.USER
    user = await repo.get_user(db, user_id)
    if user is not None:
        if user.role != role or (email and user.email != email):
            user.role = role
            user.email = email or user.email
            await db.commit()
        return user

    user = User(id=user_id, email=email, role=role)
    try:
        async with repo.transaction(db):
            db.add(user)
    except ConcurrentModificationError:
        # Another request provisioned the same identity first.
        user = await repo.get_user(db, user_id)
        if user is None:
            raise
        return user
    logger.info("Provisioned local user %s (%s)", user_id, role.value)
    return user


async def start_payout_onboarding(
    db: AsyncSession, gateway: PaymentGateway, user: User
) -> Result[PayoutOnboarding]:
    """Create the user's connected payout account if needed and return an onboarding link."""
    user_id, account_id = user.id, user.payout_account_id
    try:
        if account_id is None:
            account_id = await gateway.create_payout_account(user_id, user.email)
            async with repo.transaction(db):
                locked = await repo.get_user(db, user_id, for_update=True)
                locked.payout_account_id = account_id
                locked.payouts_enabled = False
            logger.info("Created payout account %s for user %s", account_id, user_id)
        url = await gateway.create_onboarding_link(account_id)
    except ProviderError as exc:
        return exc.to_err()
    except ConcurrentModificationError as exc:
        return exc.to_err()
    user = await repo.get_user(db, user_id)
    return Ok(PayoutOnboarding(user, account_id, url), "Complete onboarding to receive payouts")
