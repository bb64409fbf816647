from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from benefitsai.logging import get_logger
from benefitsai.storage.errors import ConstraintViolation
from benefitsai.storage.models import Company, RefreshTokenRecord, TokenState, User
from benefitsai.storage.redis_cache import NEW_TOKEN_EXISTS, NOT_ISSUED, ROTATED

_WINDOW_SWEEP_INTERVAL_MS = 60_000


class MemoryStore:
    """In-memory user and company directory for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.companies: Dict[str, Company] = {}
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def create_company(self, name: str, *, company_id: Optional[str] = None) -> Company:
        with self._data_lock:
            company = Company(id=company_id or str(uuid.uuid4()), name=name)
            if company.id in self.companies:
                raise ConstraintViolation("company already exists", {"field": "id"})
            self.companies[company.id] = company
            return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            return self.companies.get(company_id)

    def create_user(
        self,
        email: Optional[str],
        *,
        user_id: Optional[str] = None,
        role: str = "employee",
        company_id: Optional[str] = None,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized_email = email.strip().lower() if email else None
        with self._data_lock:
            if normalized_email and any(
                u.email == normalized_email for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=normalized_email,
                role=role,
                company_id=company_id,
                display_name=display_name,
                is_active=is_active,
            )
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )

    def list_users(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            users = [
                u
                for u in self.users.values()
                if company_id is None or u.company_id == company_id
            ]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Not durable and not shared between workers: tokens and counters vanish on
    restart and each process sees only its own. Only wired when TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV is set.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, RefreshTokenRecord] = {}
        self._user_tokens: Dict[str, Set[str]] = {}
        self._session_cutoffs: Dict[str, Tuple[float, float]] = {}
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._next_window_sweep_ms = 0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _purge_expired(self, now: datetime) -> None:
        expired = [h for h, rec in self._tokens.items() if rec.expires_at <= now]
        for token_hash in expired:
            record = self._tokens.pop(token_hash)
            owned = self._user_tokens.get(record.user_id)
            if owned is not None:
                owned.discard(token_hash)

    def _insert(self, token_hash: str, user_id: str, ttl_seconds: int, now: datetime) -> None:
        self._tokens[token_hash] = RefreshTokenRecord(
            token_hash=token_hash,
            user_id=user_id,
            expires_at=datetime.fromtimestamp(
                now.timestamp() + max(1, ttl_seconds), tz=timezone.utc
            ),
            created_at=now,
        )
        self._user_tokens.setdefault(user_id, set()).add(token_hash)

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def store_refresh_token(
        self, token_hash: str, user_id: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            now = self._now()
            self._purge_expired(now)
            if token_hash in self._tokens:
                return False
            self._insert(token_hash, user_id, ttl_seconds, now)
            return True

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            self._purge_expired(self._now())
            record = self._tokens.get(token_hash)
            if record is None:
                return None
            return RefreshTokenRecord(
                token_hash=record.token_hash,
                user_id=record.user_id,
                expires_at=record.expires_at,
                state=record.state,
                created_at=record.created_at,
            )

    async def rotate_refresh_token(
        self, old_hash: str, new_hash: str, user_id: str, ttl_seconds: int
    ) -> int:
        with self._lock:
            now = self._now()
            self._purge_expired(now)
            record = self._tokens.get(old_hash)
            if (
                record is None
                or record.state is not TokenState.ISSUED
                or record.user_id != user_id
            ):
                return NOT_ISSUED
            if new_hash in self._tokens:
                return NEW_TOKEN_EXISTS
            record.state = TokenState.CONSUMED
            self._insert(new_hash, user_id, ttl_seconds, now)
            return ROTATED

    async def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._lock:
            record = self._tokens.get(token_hash)
            if record is None or record.state is not TokenState.ISSUED:
                return False
            record.state = TokenState.REVOKED
            return True

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._lock:
            self._purge_expired(self._now())
            revoked = 0
            for token_hash in self._user_tokens.get(user_id, set()):
                record = self._tokens.get(token_hash)
                if record is not None and record.state is TokenState.ISSUED:
                    record.state = TokenState.REVOKED
                    revoked += 1
            return revoked

    async def set_session_cutoff(
        self, user_id: str, cutoff: float, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._session_cutoffs[user_id] = (cutoff, self._clock() + max(1, ttl_seconds))

    async def get_session_cutoff(self, user_id: str) -> Optional[float]:
        with self._lock:
            entry = self._session_cutoffs.get(user_id)
            if entry is None:
                return None
            cutoff, expires = entry
            if self._clock() >= expires:
                del self._session_cutoffs[user_id]
                return None
            return cutoff

    def _purge_windows(self, now_ms: int) -> None:
        if now_ms < self._next_window_sweep_ms:
            return
        stale = [key for key, (_, reset_at) in self._windows.items() if reset_at < now_ms]
        for key in stale:
            del self._windows[key]
        self._next_window_sweep_ms = now_ms + _WINDOW_SWEEP_INTERVAL_MS

    async def hit_rate_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        with self._lock:
            now_ms = self._now_ms()
            self._purge_windows(now_ms)
            count, reset_at = self._windows.get(key, (0, 0))
            if now_ms > reset_at:
                count, reset_at = 0, now_ms + max(1, int(window_ms))
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    async def close(self) -> None:
        return None
