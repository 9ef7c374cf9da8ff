"""Current-user endpoints: profile, balance and payout onboarding."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedUser, verify_request
from app.database import get_db
from app.routers.results import respond
from app.schemas.common import OperationResponse
from app.schemas.user import PayoutOnboardingResponse, UserResponse
from app.services import users as user_service
from app.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_me(auth: AuthenticatedUser = Depends(verify_request)) -> UserResponse:
    return UserResponse.model_validate(auth.user)


@router.post("/me/payout-account", response_model=OperationResponse[PayoutOnboardingResponse])
async def start_payout_onboarding(
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> OperationResponse:
    """Create (or resume) the caller's payout account and return the onboarding link.

    Payouts are enabled once the provider reports the account as verified.
    """
    result = await user_service.start_payout_onboarding(db, gateway, auth.user)
    return respond(result, PayoutOnboardingResponse)
