"""Application factory wiring configuration, store, gates and routes together."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings
from .identity import IdentityService
from .oauth import GoogleOAuthClient
from .security import (
    AdminGate,
    AdminRequired,
    AuthenticationGate,
    FixedWindowRateLimiter,
    LoginRequired,
    RateLimitMiddleware,
    SESSION_COOKIE_NAME,
    SecurityHeadersMiddleware,
)
from .sessions import SessionManager
from .store import RecordStore, SupabaseRecordStore
from .users import UserRepository
from .web import register_routes

logger = logging.getLogger("portal.service")

STATE_COOKIE_NAME = "portal_oauth"


def _trusted_proxy_hosts(settings: Settings) -> List[str] | str:
    hosts = list(settings.trusted_proxies)
    return hosts or "127.0.0.1"


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    oauth_client: Optional[GoogleOAuthClient] = None,
    session_manager: Optional[SessionManager] = None,
) -> FastAPI:
    """Create the sign-in portal application.

    ``store``, ``oauth_client`` and ``session_manager`` default to the
    production implementations built from ``settings``; tests inject fakes.
    """

    settings = settings or Settings.from_env()
    if not settings.session_secret:
        raise RuntimeError("SESSION_SECRET must be configured to run the portal")

    if store is None:
        store = SupabaseRecordStore.from_settings(settings)
    if oauth_client is None:
        oauth_client = GoogleOAuthClient(
            settings.google_client_id,
            settings.google_client_secret,
            timeout=settings.store_timeout,
        )
    if not oauth_client.configured:
        logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET are not set; sign-in will fail")
    if session_manager is None:
        session_manager = SessionManager(ttl=timedelta(hours=settings.session_ttl_hours))

    if not settings.secure_cookies:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for"
            " local development."
        )
    if not settings.admin_email:
        logger.info("ADMIN_EMAIL is not set; the admin panel is unavailable")

    users = UserRepository(store)
    identity = IdentityService(users, reconcile_profile=settings.reconcile_profile)
    auth_gate = AuthenticationGate(
        session_manager, users, store_timeout=settings.store_timeout
    )
    admin_gate = AdminGate(auth_gate, settings.admin_email)

    app = FastAPI(
        title="Google Sign-In Portal",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    # Added innermost first; the proxy middleware must run before rate limiting.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=STATE_COOKIE_NAME,
        https_only=settings.secure_cookies,
        same_site="lax",
        max_age=60 * 10,
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=FixedWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window),
    )
    app.add_middleware(SecurityHeadersMiddleware, hsts=settings.is_production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts(settings))

    register_routes(
        app,
        settings=settings,
        users=users,
        identity=identity,
        oauth_client=oauth_client,
        session_manager=session_manager,
        auth_gate=auth_gate,
        admin_gate=admin_gate,
    )

    @app.exception_handler(LoginRequired)
    async def handle_login_required(request: Request, _: LoginRequired):
        response = RedirectResponse(
            request.url_for("home"), status_code=status.HTTP_303_SEE_OTHER
        )
        if request.cookies.get(SESSION_COOKIE_NAME):
            response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    @app.exception_handler(AdminRequired)
    async def handle_admin_required(_: Request, __: AdminRequired):
        return PlainTextResponse(
            "Access denied. Admin only.", status_code=status.HTTP_403_FORBIDDEN
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error while serving %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    return app


__all__ = ["create_app"]
