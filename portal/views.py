"""HTML rendering for the sign-in, dashboard and admin pages.

Pages are Jinja2 templates under ``portal/templates`` rendered with
autoescaping on. Avatar URLs go through the ``safe_url`` filter, which keeps
only http(s) links.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import urlsplit

from fastapi.templating import Jinja2Templates

from .models import User, UserStats

RECENT_WINDOW = timedelta(hours=24)


def _safe_url(value: Optional[str]) -> str:
    """Return ``value`` if it is an http(s) URL, otherwise an empty string."""

    if not value:
        return ""
    candidate = value.strip()
    if urlsplit(candidate).scheme.lower() not in {"http", "https"}:
        return ""
    return candidate


def _format_long_date(value: Optional[datetime]) -> str:
    if value is None:
        return "Unknown"
    local = value.astimezone()
    return f"{local.strftime('%B')} {local.day}, {local.year}"


def _format_short_date(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.astimezone().strftime("%Y-%m-%d")


def _template_environment() -> Jinja2Templates:
    base_dir = Path(__file__).resolve().parent
    templates = Jinja2Templates(directory=str(base_dir / "templates"))
    templates.env.filters["safe_url"] = _safe_url
    templates.env.filters["long_date"] = _format_long_date
    templates.env.filters["short_date"] = _format_short_date
    return templates


templates = _template_environment()


def _render(name: str, **context: object) -> str:
    return templates.get_template(name).render(**context)


def render_signin() -> str:
    return _render("signin.html", auth_url="/auth/google")


def render_dashboard(user: User, is_new: bool, *, show_admin_link: bool = False) -> str:
    return _render(
        "dashboard.html",
        user=user,
        show_banner=is_new,
        show_admin_link=show_admin_link,
    )


def render_admin(
    users: Sequence[User],
    stats: UserStats,
    *,
    now: Optional[datetime] = None,
) -> str:
    current = now or datetime.now(timezone.utc)
    rows = [
        {
            "user": user,
            "is_recent": user.created_at is not None and current - user.created_at < RECENT_WINDOW,
        }
        for user in users
    ]
    return _render("admin.html", rows=rows, stats=stats)


__all__ = ["render_admin", "render_dashboard", "render_signin", "templates"]
