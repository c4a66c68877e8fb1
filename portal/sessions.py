"""Server-side sign-in sessions.

The browser only ever holds an opaque token. The server maps it to the
signed-in user's id and whether that sign-in registered the account; the
profile itself is always re-read from the store.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


@dataclass(frozen=True)
class SessionPrincipal:
    """What a session token resolves to: a user reference, never the profile."""

    user_id: str
    is_new: bool


@dataclass(frozen=True)
class _Entry:
    principal: SessionPrincipal
    expires_at: datetime


class SessionManager:
    """Token to user mapping with a sliding expiry."""

    def __init__(self, *, ttl: timedelta = timedelta(hours=24)) -> None:
        self._ttl = ttl
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def create(self, user_id: str, *, is_new: bool = False) -> str:
        return self.rotate(None, user_id, is_new=is_new)

    def rotate(self, previous: Optional[str], user_id: str, *, is_new: bool = False) -> str:
        """Issue a fresh token for ``user_id``, revoking ``previous`` if given.

        Expired entries are dropped on the way so the map stays bounded by the
        number of live sign-ins.
        """

        now = self._now()
        token = secrets.token_urlsafe(32)
        entry = _Entry(
            principal=SessionPrincipal(user_id=user_id, is_new=is_new),
            expires_at=now + self._ttl,
        )
        with self._lock:
            if previous:
                self._entries.pop(previous, None)
            self._drop_expired(now)
            self._entries[token] = entry
        return token

    def resolve(self, token: str) -> Optional[SessionPrincipal]:
        now = self._now()
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[token]
                return None
            self._entries[token] = replace(entry, expires_at=now + self._ttl)
            return entry.principal

    def destroy(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def revoke_user(self, user_id: str) -> int:
        """Drop every session that points at ``user_id``."""

        with self._lock:
            stale = [
                token
                for token, entry in self._entries.items()
                if entry.principal.user_id == user_id
            ]
            for token in stale:
                del self._entries[token]
        return len(stale)

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_expired(self._now())

    def _drop_expired(self, now: datetime) -> int:
        expired = [token for token, entry in self._entries.items() if entry.expires_at <= now]
        for token in expired:
            del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SessionManager", "SessionPrincipal"]
