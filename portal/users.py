"""Data access for the ``users`` table and the admin statistics."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .models import IdentityAssertion, User, UserStats
from .store import RecordStore, select_one

USERS_TABLE = "users"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRepository:
    """Thin wrapper translating ``users`` rows into :class:`User` objects."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(self, user_id: str) -> Optional[User]:
        row = select_one(self._store, USERS_TABLE, filters={"id": user_id})
        return User.from_row(row) if row else None

    def get_by_google_id(self, google_id: str) -> Optional[User]:
        row = select_one(self._store, USERS_TABLE, filters={"google_id": google_id})
        return User.from_row(row) if row else None

    def create(self, assertion: IdentityAssertion) -> User:
        # id, created_at and is_active come from column defaults
        row = self._store.insert(
            USERS_TABLE,
            {
                "google_id": assertion.subject_id,
                "email": assertion.email,
                "name": assertion.display_name,
                "picture": assertion.avatar_url,
            },
        )
        return User.from_row(row)

    def record_login(
        self,
        user: User,
        *,
        at: Optional[datetime] = None,
        profile: Optional[IdentityAssertion] = None,
    ) -> User:
        """Stamp ``last_login``; with ``profile`` also overwrite email/name/avatar."""

        timestamp = at or _utcnow()
        values = {"last_login": timestamp.isoformat()}
        if profile is not None:
            values.update(
                email=profile.email,
                name=profile.display_name,
                picture=profile.avatar_url,
            )
        rows = self._store.update(USERS_TABLE, values, filters={"id": user.id})
        if rows:
            return User.from_row(rows[0])
        return user

    def list_all(self) -> List[User]:
        rows = self._store.select(USERS_TABLE, order_by="created_at", descending=True)
        return [User.from_row(row) for row in rows]


def compute_user_stats(users: Iterable[User], *, now: Optional[datetime] = None) -> UserStats:
    """Count users overall, active, created since local midnight and since a week before it."""

    current = now or datetime.now().astimezone()
    if current.tzinfo is None:
        current = current.astimezone()
    today = current.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = today - timedelta(days=7)

    total = active = new_today = new_this_week = 0
    for user in users:
        total += 1
        if user.is_active:
            active += 1
        if user.created_at is None:
            continue
        if user.created_at >= today:
            new_today += 1
        if user.created_at >= week_ago:
            new_this_week += 1

    return UserStats(
        total_users=total,
        active_users=active,
        new_today=new_today,
        new_this_week=new_this_week,
    )


__all__ = ["USERS_TABLE", "UserRepository", "compute_user_stats"]
