"""Find-or-create of local users from verified Google identities."""
from __future__ import annotations

import dataclasses
import logging

from .models import IdentityAssertion, User
from .users import UserRepository

logger = logging.getLogger("portal.identity")


class IdentityService:
    """Map an identity assertion onto exactly one local user.

    Store failures propagate unchanged so the caller can abort the sign-in.
    Two concurrent first sign-ins for the same subject are not serialised here;
    the loser receives the store's :class:`~portal.store.ConflictError`.
    """

    def __init__(self, users: UserRepository, *, reconcile_profile: bool = False) -> None:
        self._users = users
        self._reconcile_profile = reconcile_profile

    def upsert(self, assertion: IdentityAssertion) -> User:
        if not assertion.subject_id:
            raise ValueError("Identity assertion is missing a subject identifier")

        existing = self._users.get_by_google_id(assertion.subject_id)

        if existing is None:
            user = self._users.create(assertion)
            logger.info("Registered new user %s", user.id)
            return dataclasses.replace(user, is_new=True)

        profile = assertion if self._reconcile_profile else None
        user = self._users.record_login(existing, profile=profile)
        return dataclasses.replace(user, is_new=False)


__all__ = ["IdentityService"]
