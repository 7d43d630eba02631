from __future__ import annotations

import os
from typing import Iterable, Optional


def split_csv(value: Optional[str]) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class UnlimitedAllowance:
    """Allowlist of accounts that bypass transcription metering entirely."""

    def __init__(
        self,
        user_ids: Optional[Iterable[str]] = None,
        emails: Optional[Iterable[str]] = None,
    ):
        if user_ids is None:
            user_ids = split_csv(os.getenv("UNLIMITED_USER_IDS"))
        if emails is None:
            emails = split_csv(os.getenv("UNLIMITED_USER_EMAILS"))
        self._user_ids = frozenset(str(user_id) for user_id in user_ids)
        self._emails = frozenset(email.lower() for email in emails)

    def is_unlimited(self, user_id: str, email: Optional[str] = None) -> bool:
        if str(user_id) in self._user_ids:
            return True
        return bool(email) and email.lower() in self._emails
