"""Domain models for the sign-in portal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a store timestamp; naive values are taken to be UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class IdentityAssertion:
    """Verified profile data returned by the identity provider."""

    subject_id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class User:
    """Represents a row of the ``users`` table.

    ``is_new`` is computed per sign-in and is never written back to the store.
    """

    id: str
    google_id: str
    email: str
    name: Optional[str]
    picture: Optional[str]
    created_at: Optional[datetime]
    last_login: Optional[datetime] = None
    is_active: bool = True
    is_new: bool = field(default=False, compare=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        is_active = row.get("is_active")
        return cls(
            id=str(row["id"]),
            google_id=str(row["google_id"]),
            email=str(row["email"]),
            name=row.get("name"),
            picture=row.get("picture"),
            created_at=parse_timestamp(row.get("created_at")),
            last_login=parse_timestamp(row.get("last_login")),
            is_active=True if is_active is None else bool(is_active),
        )


@dataclass(frozen=True)
class UserStats:
    """Aggregate figures shown on the admin panel."""

    total_users: int
    active_users: int
    new_today: int
    new_this_week: int


__all__ = ["IdentityAssertion", "User", "UserStats", "parse_timestamp"]
