from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Company:
    id: str
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, name: str) -> "Company":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass
class User:
    """Directory entry; authoritative for role once the user exists."""

    id: str
    email: Optional[str]
    role: str = "employee"
    company_id: Optional[str] = None
    is_active: bool = True
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


class TokenState(str, Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not TokenState.ISSUED


@dataclass
class RefreshTokenRecord:
    """Stored refresh token, keyed by the SHA-256 of the token value."""

    token_hash: str
    user_id: str
    expires_at: datetime
    state: TokenState = TokenState.ISSUED
    created_at: datetime = field(default_factory=_utcnow)

    def effective_state(self, now: Optional[datetime] = None) -> TokenState:
        """State as observed at ``now``; an issued record past expiry reads as expired."""
        now = now or _utcnow()
        if self.state is TokenState.ISSUED and now >= self.expires_at:
            return TokenState.EXPIRED
        return self.state
