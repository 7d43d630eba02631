# transcription_quota/app/deps.py (singletons exposed as FastAPI dependencies)

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from supabase import Client, create_client

from transcription_quota.app.config import settings
from transcription_quota.app.infra.db.base import (
    CreditLedgerRepository,
    JobRepository,
    SubscriptionRepository,
)
from transcription_quota.app.infra.db.memory_repo import (
    InMemoryCreditLedgerRepository,
    InMemoryJobRepository,
    InMemorySubscriptionRepository,
)
from transcription_quota.app.infra.db.supabase_jobs_repo import SupabaseJobRepository
from transcription_quota.app.infra.db.supabase_ledger_repo import (
    SupabaseCreditLedgerRepository,
    SupabaseSubscriptionRepository,
)
from transcription_quota.app.services.access_control import UnlimitedAllowance, split_csv
from transcription_quota.app.services.job_service import JobService
from transcription_quota.app.services.ledger_service import CreditLedgerService
from transcription_quota.app.services.quota_service import QuotaService
from transcription_quota.app.services.topup_service import TopupService
from transcription_quota.app.services.transcription_service import TranscriptionService
from transcription_quota.app.services.usage_service import UsageService

logger = logging.getLogger(__name__)

BACKEND_SUPABASE = "supabase"
BACKEND_MEMORY = "memory"

_client: Client | None = None


def get_supabase() -> Client:
    global _client
    if _client is None:
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
        _client = create_client(str(settings.SUPABASE_URL),
                                settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


auth_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    email: str | None = None
    name: str | None = None


async def get_current_user(
    cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    supa: Client = Depends(get_supabase),
) -> CurrentUser:
    """
    Validates `Authorization: Bearer <access_token>` against Supabase Auth
    and returns the minimal user data the routes need.
    """
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    token = cred.credentials
    try:
        res = supa.auth.get_user(token)
        user = res.user
        if not user:
            raise HTTPException(status_code=401, detail="Invalid token")

        name = None
        meta = getattr(user, "user_metadata", None) or {}
        if isinstance(meta, dict):
            name = meta.get("name")

        return CurrentUser(id=str(user.id), email=user.email, name=name)
    except HTTPException:
        raise
    except Exception as exc:
        logger.info("Token validation failed: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid/expired token")


@dataclass
class Repositories:
    jobs: JobRepository
    ledger: CreditLedgerRepository
    subscriptions: SubscriptionRepository


_repositories: Repositories | None = None


def get_repositories() -> Repositories:
    global _repositories
    if _repositories is None:
        backend = settings.STORAGE_BACKEND.lower()
        if backend == BACKEND_MEMORY:
            _repositories = Repositories(
                jobs=InMemoryJobRepository(),
                ledger=InMemoryCreditLedgerRepository(),
                subscriptions=InMemorySubscriptionRepository(),
            )
        elif backend == BACKEND_SUPABASE:
            client = get_supabase()
            _repositories = Repositories(
                jobs=SupabaseJobRepository(client),
                ledger=SupabaseCreditLedgerRepository(client),
                subscriptions=SupabaseSubscriptionRepository(client),
            )
        else:
            raise RuntimeError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
        logger.info("Storage backend: %s", backend)
    return _repositories


def get_usage_service(repos: Repositories = Depends(get_repositories)) -> UsageService:
    return UsageService(
        repos.subscriptions,
        repos.ledger,
        allowance=UnlimitedAllowance(
            user_ids=split_csv(settings.UNLIMITED_USER_IDS),
            emails=split_csv(settings.UNLIMITED_USER_EMAILS),
        ),
        pro_limit_minutes=settings.TRANSCRIPTION_PRO_LIMIT_MINUTES,
    )


def get_job_service(
    repos: Repositories = Depends(get_repositories),
    usage: UsageService = Depends(get_usage_service),
) -> JobService:
    return JobService(repos.jobs, CreditLedgerService(usage, repos.ledger))


def get_transcription_service(
    repos: Repositories = Depends(get_repositories),
    usage: UsageService = Depends(get_usage_service),
    jobs: JobService = Depends(get_job_service),
) -> TranscriptionService:
    return TranscriptionService(
        QuotaService(usage, repos.jobs),
        jobs,
        cents_per_minute=settings.TRANSCRIPTION_COST_CENTS_PER_MINUTE,
    )


def get_topup_service(repos: Repositories = Depends(get_repositories)) -> TopupService:
    return TopupService(repos.ledger)
