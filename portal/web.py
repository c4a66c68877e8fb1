"""Browser-facing routes: sign-in, OAuth callback, dashboard and admin panel."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from .config import Settings
from .identity import IdentityService
from .oauth import GoogleOAuthClient, OAuthError
from .security import (
    AdminGate,
    AuthenticationGate,
    Principal,
    SESSION_COOKIE_NAME,
    is_admin,
)
from .sessions import SessionManager
from .store import ConflictError, StoreError, run_store_call
from .users import UserRepository, compute_user_stats
from .views import render_admin, render_dashboard, render_signin

logger = logging.getLogger("portal.web")

OAUTH_STATE_KEY = "oauth_state"


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


def resolve_callback_url(request: Request, callback_url: str) -> str:
    """Absolute redirect URI; relative values are resolved against the request."""

    if callback_url.startswith(("http://", "https://")):
        return callback_url
    base = str(request.base_url).rstrip("/")
    return f"{base}/{callback_url.lstrip('/')}"


def clear_session_cookie(response, session_manager: SessionManager, token: Optional[str]) -> None:
    if token:
        session_manager.destroy(token)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


def register_routes(
    app: FastAPI,
    *,
    settings: Settings,
    users: UserRepository,
    identity: IdentityService,
    oauth_client: GoogleOAuthClient,
    session_manager: SessionManager,
    auth_gate: AuthenticationGate,
    admin_gate: AdminGate,
) -> None:
    """Attach the portal's page and health routes to ``app``."""

    router = APIRouter(include_in_schema=False)
    secure_cookies = settings.secure_cookies
    store_timeout = settings.store_timeout

    def _issue_session_cookie(response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=session_manager.cookie_max_age,
            secure=secure_cookies,
            httponly=True,
            samesite="lax",
            path="/",
        )

    def _redirect(request: Request, route: str, **query: str) -> RedirectResponse:
        url = request.url_for(route)
        if query:
            url = url.include_query_params(**query)
        return RedirectResponse(str(url), status_code=status.HTTP_303_SEE_OTHER)

    def _sign_in_failed(request: Request, reason: str) -> RedirectResponse:
        logger.warning("Google sign-in failed: %s", reason)
        return _redirect(request, "home")

    @router.get("/", response_class=HTMLResponse, name="home")
    async def home(request: Request):
        try:
            principal = await auth_gate.resolve(request)
        except StoreError:
            logger.warning("Session lookup failed; showing the sign-in page", exc_info=True)
            return HTMLResponse(render_signin())
        if principal is not None:
            return _redirect(request, "dashboard")
        response = HTMLResponse(render_signin())
        if request.cookies.get(SESSION_COOKIE_NAME):
            response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    @router.get("/auth/google", name="auth_google")
    async def auth_google(request: Request):
        if not oauth_client.configured:
            return _sign_in_failed(request, "Google OAuth client is not configured")
        state = secrets.token_urlsafe(24)
        request.session[OAUTH_STATE_KEY] = state
        url = oauth_client.authorization_url(
            redirect_uri=resolve_callback_url(request, settings.callback_url),
            state=state,
        )
        return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)

    @router.get("/auth/google/callback", name="auth_google_callback")
    async def auth_google_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        expected_state = request.session.pop(OAUTH_STATE_KEY, None)
        if error:
            return _sign_in_failed(request, f"provider returned {error}")
        if not code:
            return _sign_in_failed(request, "callback is missing the authorization code")
        if not state or not expected_state or not secrets.compare_digest(state, expected_state):
            return _sign_in_failed(request, "state parameter mismatch")

        try:
            assertion = await oauth_client.authenticate(
                code, redirect_uri=resolve_callback_url(request, settings.callback_url)
            )
        except OAuthError as exc:
            return _sign_in_failed(request, str(exc))

        try:
            user = await run_store_call(identity.upsert, assertion, timeout=store_timeout)
        except ConflictError:
            return _sign_in_failed(request, "a concurrent sign-in created this account first")
        except StoreError:
            logger.exception("Identity upsert failed for a Google sign-in")
            return _redirect(request, "home")

        token = session_manager.rotate(
            request.cookies.get(SESSION_COOKIE_NAME), user.id, is_new=user.is_new
        )
        logger.info("User %s signed in with Google", user.id)

        if user.is_new:
            response = _redirect(request, "dashboard", welcome="true")
        else:
            response = _redirect(request, "dashboard")
        _issue_session_cookie(response, token)
        return response

    @router.get("/dashboard", response_class=HTMLResponse, name="dashboard")
    async def dashboard(
        request: Request,
        welcome: Optional[str] = None,
        principal: Principal = Depends(auth_gate),
    ):
        show_banner = welcome == "true" and principal.is_new
        markup = render_dashboard(
            principal.user,
            show_banner,
            show_admin_link=is_admin(principal.user, settings.admin_email),
        )
        response = HTMLResponse(markup)
        _issue_session_cookie(response, principal.token)
        return response

    @router.get("/admin", response_class=HTMLResponse, name="admin")
    async def admin(request: Request, principal: Principal = Depends(admin_gate)):
        try:
            all_users = await run_store_call(users.list_all, timeout=store_timeout)
        except StoreError:
            logger.exception("Failed to load users for the admin panel")
            return PlainTextResponse(
                "Error loading admin dashboard",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        now = datetime.now(timezone.utc)
        stats = compute_user_stats(all_users, now=now.astimezone())
        response = HTMLResponse(render_admin(all_users, stats, now=now))
        _issue_session_cookie(response, principal.token)
        return response

    @router.get("/logout", name="logout")
    async def logout(request: Request):
        token = request.cookies.get(SESSION_COOKIE_NAME)
        response = _redirect(request, "home")
        clear_session_cookie(response, session_manager, token)
        return response

    @router.get("/health", response_model=HealthResponse, name="health")
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))

    app.include_router(router)


__all__ = [
    "HealthResponse",
    "OAUTH_STATE_KEY",
    "clear_session_cookie",
    "register_routes",
    "resolve_callback_url",
]
