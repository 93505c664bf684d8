from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    tenant_id: str = "public"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass(frozen=True)
class Session:
    """One authenticated login instance.

    Frozen so a touch produces a new value; stores swap whole records and
    can restore a snapshot on abort.
    """

    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, user_id: str) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
