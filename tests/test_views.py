from datetime import datetime, timedelta, timezone

from portal.models import User, UserStats
from portal.views import render_admin, render_dashboard, render_signin

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _user(**overrides) -> User:
    values = dict(
        id="0123456789abcdef",
        google_id="g-1",
        email="a@x.com",
        name="Alice",
        picture="https://example.com/alice.png",
        created_at=NOW - timedelta(days=30),
        last_login=None,
        is_active=True,
    )
    values.update(overrides)
    return User(**values)


def test_signin_page_links_to_google_flow() -> None:
    markup = render_signin()

    assert markup.startswith("<!DOCTYPE html>")
    assert 'href="/auth/google"' in markup


def test_dashboard_shows_profile_details() -> None:
    markup = render_dashboard(_user(created_at=NOW), False)

    assert "Alice" in markup
    assert "a@x.com" in markup
    assert "0123456..." not in markup
    assert "01234567..." in markup
    assert "May 15, 2024" in markup
    assert "Registration Successful!" not in markup
    assert "Admin Panel" not in markup


def test_dashboard_banner_and_admin_link() -> None:
    markup = render_dashboard(_user(), True, show_admin_link=True)

    assert "Registration Successful!" in markup
    assert 'href="/admin"' in markup


def test_inactive_user_badge() -> None:
    markup = render_dashboard(_user(is_active=False), False)

    assert "Inactive" in markup


def test_non_http_avatar_is_dropped() -> None:
    markup = render_dashboard(_user(picture="data:text/html,<b>x</b>"), False)

    assert "data:text/html" not in markup


def test_admin_table_marks_recent_users_and_missing_logins() -> None:
    users = [
        _user(id="new-user", email="new@x.com", created_at=NOW - timedelta(hours=2)),
        _user(
            id="old-user",
            email="old@x.com",
            created_at=NOW - timedelta(days=40),
            last_login=NOW - timedelta(days=1),
        ),
    ]
    stats = UserStats(total_users=2, active_users=2, new_today=1, new_this_week=1)

    markup = render_admin(users, stats, now=NOW)

    assert markup.count('class="badge badge-new"') == 1
    assert "Never" in markup
    assert markup.index("new@x.com") < markup.index("old@x.com")
    assert "No users found" not in markup


def test_admin_empty_state() -> None:
    markup = render_admin([], UserStats(0, 0, 0, 0), now=NOW)

    assert "No users found" in markup
    assert "<table>" not in markup
