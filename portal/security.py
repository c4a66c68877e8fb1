"""Request gates and protective middleware for the portal."""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from .models import User
from .sessions import SessionManager
from .store import run_store_call
from .users import UserRepository

logger = logging.getLogger("portal.security")

SESSION_COOKIE_NAME = "portal_session"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "img-src 'self' https: data:; "
    "style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; "
    "object-src 'none'; "
    "base-uri 'self'; "
    "frame-ancestors 'self'"
)


class LoginRequired(Exception):
    """The request carries no authenticated principal."""


class AdminRequired(Exception):
    """The request is not from the configured administrator."""


@dataclass(frozen=True)
class Principal:
    """The signed-in user as loaded for the current request."""

    user: User
    token: str
    is_new: bool


def is_admin(user: Optional[User], admin_email: Optional[str]) -> bool:
    """Exact, case-sensitive comparison against the configured admin address."""

    if user is None or not admin_email:
        return False
    return user.email == admin_email


class AuthenticationGate:
    """Resolve the session cookie to a :class:`Principal` or refuse the request."""

    def __init__(
        self,
        session_manager: SessionManager,
        users: UserRepository,
        *,
        store_timeout: float,
        cookie_name: str = SESSION_COOKIE_NAME,
    ) -> None:
        self._sessions = session_manager
        self._users = users
        self._store_timeout = store_timeout
        self._cookie_name = cookie_name

    async def resolve(self, request: Request) -> Optional[Principal]:
        cached = getattr(request.state, "principal", None)
        if isinstance(cached, Principal):
            return cached

        token = request.cookies.get(self._cookie_name)
        if not token:
            return None
        reference = self._sessions.resolve(token)
        if reference is None:
            return None

        user = await run_store_call(self._users.get, reference.user_id, timeout=self._store_timeout)
        if user is None:
            self._sessions.revoke_user(reference.user_id)
            return None

        principal = Principal(user=user, token=token, is_new=reference.is_new)
        request.state.principal = principal
        return principal

    async def __call__(self, request: Request) -> Principal:
        principal = await self.resolve(request)
        if principal is None:
            raise LoginRequired()
        return principal


class AdminGate:
    """Allow only the authenticated principal whose email is the admin email."""

    def __init__(self, authentication: AuthenticationGate, admin_email: Optional[str]) -> None:
        self._authentication = authentication
        self._admin_email = admin_email

    async def __call__(self, request: Request) -> Principal:
        principal = await self._authentication.resolve(request)
        if principal is None:
            raise AdminRequired()
        if not is_admin(principal.user, self._admin_email):
            logger.warning("User %s was denied access to the admin panel", principal.user.id)
            raise AdminRequired()
        return principal


class FixedWindowRateLimiter:
    """Count requests per client in fixed windows of ``window`` seconds."""

    def __init__(
        self,
        limit: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0 or window <= 0:
            raise ValueError("Rate limit and window must be positive")
        self._limit = limit
        self._window = window
        self._clock = clock
        self._counters: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record a request; return whether it is allowed and seconds until reset."""

        now = self._clock()
        window_start = math.floor(now / self._window) * self._window
        retry_after = max(1, math.ceil(window_start + self._window - now))

        with self._lock:
            started, count = self._counters.get(key, (window_start, 0))
            if started != window_start:
                if len(self._counters) > 1024:
                    self._counters = {
                        k: v for k, v in self._counters.items() if v[0] == window_start
                    }
                count = 0
            count += 1
            self._counters[key] = (window_start, count)

        return count <= self._limit, retry_after


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject clients that exceed the per-process fixed-window limit."""

    def __init__(self, app: ASGIApp, limiter: FixedWindowRateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        client = request.client.host if request.client else "unknown"
        allowed, retry_after = self.limiter.hit(client)
        if not allowed:
            logger.warning("Rate limit exceeded for %s", client)
            return PlainTextResponse(
                "Too many requests, please try again later.",
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach conservative browser security headers to every response."""

    def __init__(self, app: ASGIApp, *, hsts: bool = False) -> None:
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        headers.setdefault("Referrer-Policy", "no-referrer")
        headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        headers.setdefault("Content-Security-Policy", CONTENT_SECURITY_POLICY)
        if self.hsts:
            headers.setdefault("Strict-Transport-Security", "max-age=15552000; includeSubDomains")
        return response


__all__ = [
    "AdminGate",
    "AdminRequired",
    "AuthenticationGate",
    "FixedWindowRateLimiter",
    "LoginRequired",
    "Principal",
    "RateLimitMiddleware",
    "SESSION_COOKIE_NAME",
    "SecurityHeadersMiddleware",
    "is_admin",
]
