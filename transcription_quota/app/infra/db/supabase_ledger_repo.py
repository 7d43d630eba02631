from __future__ import annotations

import logging
from typing import Any

from supabase import Client

from transcription_quota.app.domain.errors import ErrorCode, StorageFailureError
from transcription_quota.app.domain.models import (
    BillingPeriod,
    ConsumptionResult,
    CreditLedgerEntry,
    Subscription,
    SubscriptionTier,
    TopupResult,
)
from transcription_quota.app.infra.db.base import CreditLedgerRepository, SubscriptionRepository
from transcription_quota.app.infra.db.supabase_jobs_repo import (
    STORAGE_ERRORS,
    _create_supabase_client,
    _parse_datetime,
    _safe_int,
)

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"


def _first_row(data: list | dict | None) -> dict[str, Any] | None:
    if not data:
        return None
    return data[0] if isinstance(data, list) else data


class SupabaseCreditLedgerRepository(CreditLedgerRepository):
    USAGE_TABLE = "transcription_usage"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()

    def get_used_minutes(self, user_id: str, period: BillingPeriod) -> int:
        try:
            result = self._client.rpc(
                "get_transcription_usage_in_period",
                {
                    "p_user_id": user_id,
                    "p_period_start": period.start.isoformat(),
                    "p_period_end": period.end.isoformat(),
                },
            ).execute()
        except STORAGE_ERRORS as error:
            logger.error("Error fetching transcription usage: %s", error)
            raise StorageFailureError("get_used_minutes", str(error)) from error

        return _safe_int(result.data)

    def get_topup_balance(self, user_id: str) -> int:
        try:
            result = (
                self._client.table(PROFILES_TABLE)
                .select("transcription_minutes_topup")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Error fetching top-up balance: %s", error)
            raise StorageFailureError("get_topup_balance", str(error)) from error

        row = _first_row(result.data)
        return _safe_int(row.get("transcription_minutes_topup")) if row else 0

    def consume_minutes(
        self,
        user_id: str,
        job_id: str,
        minutes: int,
        subscription_limit: int,
        period: BillingPeriod,
    ) -> ConsumptionResult:
        try:
            result = self._client.rpc(
                "consume_transcription_minutes_atomically",
                {
                    "p_user_id": user_id,
                    "p_job_id": job_id,
                    "p_minutes": minutes,
                    "p_subscription_limit": subscription_limit,
                    "p_period_start": period.start.isoformat(),
                    "p_period_end": period.end.isoformat(),
                },
            ).execute()
        except STORAGE_ERRORS as error:
            logger.error("Error consuming transcription minutes: %s", error)
            raise StorageFailureError("consume_minutes", str(error)) from error

        return self._parse_consumption_result(result.data)

    def _parse_consumption_result(self, data: list | dict | None) -> ConsumptionResult:
        parsed = _first_row(data)

        if not parsed or not parsed.get("allowed"):
            reason = (parsed or {}).get("reason")
            try:
                error = ErrorCode(reason)
            except ValueError:
                error = ErrorCode.INSUFFICIENT_CREDITS
            return ConsumptionResult(success=False, error=error)

        return ConsumptionResult(
            success=True,
            minutes_from_subscription=_safe_int(parsed.get("minutes_from_subscription")),
            minutes_from_topup=_safe_int(parsed.get("minutes_from_topup")),
        )

    def refund_minutes(self, job_id: str) -> int:
        try:
            result = self._client.rpc(
                "refund_transcription_minutes",
                {"p_job_id": job_id},
            ).execute()
        except STORAGE_ERRORS as error:
            logger.error("Error refunding transcription minutes: %s", error)
            raise StorageFailureError("refund_minutes", str(error)) from error

        parsed = _first_row(result.data) or {}
        return _safe_int(parsed.get("minutes_refunded"))

    def get_ledger_entry(self, job_id: str) -> CreditLedgerEntry | None:
        try:
            result = (
                self._client.table(self.USAGE_TABLE)
                .select("*")
                .eq("job_id", job_id)
                .limit(1)
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Error reading ledger entry for job %s: %s", job_id, error)
            raise StorageFailureError("get_ledger_entry", str(error)) from error

        row = _first_row(result.data)
        if not row:
            return None

        return CreditLedgerEntry(
            job_id=str(row["job_id"]),
            user_id=str(row["user_id"]),
            minutes_from_subscription=_safe_int(row.get("minutes_from_subscription")),
            minutes_from_topup=_safe_int(row.get("minutes_from_topup")),
            consumed_at=_parse_datetime(row.get("consumed_at")),
            refunded_at=_parse_datetime(row.get("refunded_at")),
        )

    def add_topup_credits(
        self,
        user_id: str,
        external_payment_id: str,
        minutes: int,
        amount_paid: int,
    ) -> TopupResult:
        try:
            result = self._client.rpc(
                "add_transcription_topup_credits",
                {
                    "p_user_id": user_id,
                    "p_stripe_payment_intent_id": external_payment_id,
                    "p_minutes": minutes,
                    "p_amount_paid": amount_paid,
                },
            ).execute()
        except STORAGE_ERRORS as error:
            logger.error("Error adding transcription top-up credits: %s", error)
            raise StorageFailureError("add_topup_credits", str(error)) from error

        parsed = _first_row(result.data) or {}
        new_balance = parsed.get("new_balance")
        return TopupResult(
            success=bool(parsed.get("success", False)),
            already_processed=bool(parsed.get("already_processed", False)),
            new_balance=int(new_balance) if new_balance is not None else None,
        )


class SupabaseSubscriptionRepository(SubscriptionRepository):
    """Reads the billing system's view of a user from ``profiles``."""

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()

    def get_subscription(self, user_id: str) -> Subscription | None:
        try:
            result = (
                self._client.table(PROFILES_TABLE)
                .select("id, subscription_tier, current_period_start, current_period_end, created_at")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except STORAGE_ERRORS as error:
            logger.error("Error fetching subscription for user %s: %s", user_id, error)
            raise StorageFailureError("get_subscription", str(error)) from error

        row = _first_row(result.data)
        if not row:
            return None

        return Subscription(
            user_id=str(row["id"]),
            tier=self._parse_tier(row.get("subscription_tier")),
            current_period_start=_parse_datetime(row.get("current_period_start")),
            current_period_end=_parse_datetime(row.get("current_period_end")),
            user_created_at=_parse_datetime(row.get("created_at")),
        )

    @staticmethod
    def _parse_tier(value: object) -> SubscriptionTier:
        try:
            return SubscriptionTier(str(value or SubscriptionTier.FREE.value).lower())
        except ValueError:
            logger.warning("Unknown subscription tier %r, treating as free", value)
            return SubscriptionTier.FREE
