"""Fee schedule endpoint. Public, no auth required."""

from fastapi import APIRouter

from app.services.fees import fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def get_fee_schedule() -> dict:
    """Current platform fee. Bidders should price it in: it is withheld from the payout."""
    return fee_schedule()
