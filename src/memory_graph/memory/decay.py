from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

SECONDS_PER_DAY = 86400.0


class HasCreatedAt(Protocol):
    created_at: datetime


def age_in_days(created_at: datetime, now: Optional[datetime] = None) -> float:
    now = datetime.now(timezone.utc) if now is None else now
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (now - created_at).total_seconds() / SECONDS_PER_DAY


def freshness(memory: HasCreatedAt, retention_days: float, now: Optional[datetime] = None) -> float:
    """Linear decay from 1 at creation to 0 at the end of the retention window."""
    if retention_days <= 0:
        return 0.0
    score = 1.0 - age_in_days(memory.created_at, now) / retention_days
    return max(0.0, min(1.0, score))


def days_until_expiry(memory: HasCreatedAt, retention_days: float, now: Optional[datetime] = None) -> float:
    return max(0.0, retention_days - age_in_days(memory.created_at, now))


@dataclass(frozen=True)
class FreshnessPolicy:
    retention_days: float = 30.0

    def score(self, memory: HasCreatedAt, now: Optional[datetime] = None) -> float:
        return freshness(memory, self.retention_days, now=now)

    def days_left(self, memory: HasCreatedAt, now: Optional[datetime] = None) -> float:
        return days_until_expiry(memory, self.retention_days, now=now)

    def is_expired(self, memory: HasCreatedAt, now: Optional[datetime] = None) -> bool:
        return age_in_days(memory.created_at, now) >= self.retention_days
