# transcription_quota/app/routers/v2/billing.py
"""
Top-up purchases relayed from the billing provider.
The relay authenticates with a shared secret; payment verification happens
upstream.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from transcription_quota.app.config import settings
from transcription_quota.app.deps import get_topup_service
from transcription_quota.app.domain.errors import ErrorCode
from transcription_quota.app.services.topup_service import TopupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v2/billing", tags=["Billing V2"])


class TopupRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1, description="Provider payment reference")
    minutes: int = Field(default_factory=lambda: settings.TRANSCRIPTION_TOPUP_PACKAGE_MINUTES)
    amount_paid: int = Field(default=0, ge=0, description="Amount charged in cents")


class TopupResponse(BaseModel):
    already_processed: bool
    new_balance: Optional[int] = None


def require_topup_secret(x_topup_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.TOPUP_WEBHOOK_SECRET
    if not expected:
        logger.error("TOPUP_WEBHOOK_SECRET is not configured; refusing top-up")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Top-ups disabled")
    if not x_topup_secret or not hmac.compare_digest(x_topup_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid secret")


@router.post(
    "/transcription-topups",
    response_model=TopupResponse,
    dependencies=[Depends(require_topup_secret)],
)
async def apply_transcription_topup(
    request: TopupRequest,
    topups: TopupService = Depends(get_topup_service),
):
    """Credit purchased minutes. Replays of the same payment are no-ops."""
    result = topups.apply_topup(
        user_id=request.user_id,
        external_payment_id=request.payment_id,
        minutes=request.minutes,
        amount_paid=request.amount_paid,
    )

    if result.error == ErrorCode.INVALID_AMOUNT:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid top-up amount")
    if result.error == ErrorCode.INVALID_PAYMENT_ID:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Missing payment reference")
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to apply top-up",
        )

    return TopupResponse(already_processed=result.already_processed, new_balance=result.new_balance)
