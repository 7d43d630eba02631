# transcription_quota/app/services/topup_service.py
from __future__ import annotations

import logging
import os

from transcription_quota.app.domain.errors import ErrorCode, StorageFailureError
from transcription_quota.app.domain.models import TopupResult
from transcription_quota.app.infra.db.base import CreditLedgerRepository

logger = logging.getLogger(__name__)

# Minutes granted by one purchased package
TOPUP_PACKAGE_MINUTES = int(os.getenv("TRANSCRIPTION_TOPUP_PACKAGE_MINUTES", "120"))


class TopupService:
    """Credits purchased minutes to a user's top-up balance, once per payment."""

    def __init__(self, ledger: CreditLedgerRepository):
        self._ledger = ledger

    def apply_topup(
        self,
        user_id: str,
        external_payment_id: str,
        minutes: int = TOPUP_PACKAGE_MINUTES,
        amount_paid: int = 0,
    ) -> TopupResult:
        """
        Apply a confirmed purchase.

        Args:
            user_id: Buyer
            external_payment_id: Provider payment reference, the idempotency key
            minutes: Minutes purchased
            amount_paid: Amount charged, in cents

        Returns:
            TopupResult; a replayed payment id returns ``already_processed``
            with the current balance and credits nothing.
        """
        if minutes <= 0:
            return TopupResult(success=False, error=ErrorCode.INVALID_AMOUNT)
        if not external_payment_id:
            return TopupResult(success=False, error=ErrorCode.INVALID_PAYMENT_ID)

        try:
            result = self._ledger.add_topup_credits(
                user_id=user_id,
                external_payment_id=external_payment_id,
                minutes=minutes,
                amount_paid=amount_paid,
            )
        except StorageFailureError as exc:
            logger.error("Failed to apply top-up %s: %s", external_payment_id, exc)
            return TopupResult(success=False, error=ErrorCode.STORAGE_FAILURE)

        if result.already_processed:
            logger.info("Top-up already processed: payment=%s", external_payment_id)
        else:
            logger.info(
                "Top-up applied: user=%s, minutes=%d, new_balance=%s",
                user_id,
                minutes,
                result.new_balance,
            )
        return result
