from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Protocol

from parley.logging import get_logger
from parley.storage.models import DailyUsage, User

logger = get_logger(__name__)

SHARED = "shared"
PERSONAL = "personal"


def start_of_utc_day(moment: Optional[datetime] = None) -> date:
    """Calendar day in UTC for ``moment`` (default: now)."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()


class UsageStore(Protocol):
    def get_daily_usage(self, user_id: str, day: date) -> Optional[DailyUsage]: ...

    def increment_daily_usage(self, user_id: str, day: date, source: str) -> DailyUsage: ...


@dataclass(frozen=True)
class UsageSnapshot:
    used_total: int
    used_shared: int
    used_personal: int
    limit: Optional[int]
    remaining: Optional[int]
    default_limit: int
    has_personal_key: bool

    def as_dict(self) -> dict:
        return {
            "used_total": self.used_total,
            "used_shared": self.used_shared,
            "used_personal": self.used_personal,
            "limit": self.limit,
            "remaining": self.remaining,
            "default_limit": self.default_limit,
            "has_personal_key": self.has_personal_key,
        }


class QuotaLedger:
    """Per-user, per-UTC-day response counters and the daily cap.

    Every mutation goes through the store's atomic increment-or-create; the
    ledger never reads a counter and writes it back.
    """

    def __init__(self, store: UsageStore, *, default_limit: int = 20) -> None:
        self.store = store
        self.default_limit = default_limit

    def get_usage(self, user_id: str, day: Optional[date] = None) -> DailyUsage:
        day = day or start_of_utc_day()
        usage = self.store.get_daily_usage(user_id, day)
        return usage or DailyUsage(user_id=user_id, day=day)

    def increment_and_get_total(
        self, user_id: str, source: str, day: Optional[date] = None
    ) -> int:
        day = day or start_of_utc_day()
        usage = self.store.increment_daily_usage(user_id, day, source)
        logger.info(
            "quota_incremented",
            user_id=user_id,
            day=day.isoformat(),
            source=source,
            total=usage.responses,
        )
        return usage.responses

    def is_over_limit(
        self,
        user_id: str,
        limit: Optional[int],
        day: Optional[date] = None,
        *,
        used: Optional[int] = None,
    ) -> bool:
        """``used`` skips the read when the caller already holds today's count."""
        if limit is None:
            return False
        if used is None:
            used = self.get_usage(user_id, day).responses
        return used >= limit

    def effective_limit(
        self, user: User, *, has_personal_key: Optional[bool] = None
    ) -> Optional[int]:
        """None means unbounded: personal-key holders and admins are not capped.

        ``has_personal_key`` overrides the stored flag, e.g. when the stored
        key no longer decrypts.
        """
        personal = user.has_personal_key if has_personal_key is None else has_personal_key
        if personal or user.is_admin:
            return None
        if user.daily_limit is not None:
            return user.daily_limit
        return self.default_limit

    @staticmethod
    def source_for(user: User, *, has_personal_key: Optional[bool] = None) -> str:
        personal = user.has_personal_key if has_personal_key is None else has_personal_key
        return PERSONAL if personal else SHARED

    def snapshot(
        self,
        user: User,
        day: Optional[date] = None,
        *,
        has_personal_key: Optional[bool] = None,
    ) -> UsageSnapshot:
        personal = user.has_personal_key if has_personal_key is None else has_personal_key
        usage = self.get_usage(user.id, day)
        limit = self.effective_limit(user, has_personal_key=personal)
        return UsageSnapshot(
            used_total=usage.responses,
            used_shared=usage.shared_responses,
            used_personal=usage.personal_responses,
            limit=limit,
            remaining=max(limit - usage.responses, 0) if limit is not None else None,
            default_limit=self.default_limit,
            has_personal_key=personal,
        )
