"""Read-only health checks for the Gmail watch prerequisites."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Tuple

from .migrations import get_migration
from .store import RecordStore, StoreError, SupabaseRecordStore
from .users import USERS_TABLE

REQUIRED_ENV_VARS = (
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "CALLBACK_URL",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "GMAIL_PUBSUB_TOPIC",
)
# Only this value is safe to echo back.
ECHOED_ENV_VAR = "GMAIL_PUBSUB_TOPIC"

TOKEN_COLUMNS = (
    "access_token",
    "refresh_token",
    "token_expiry",
    "gmail_watch_enabled",
    "gmail_watch_expiration",
    "gmail_history_id",
)

TOPIC_PATTERN = re.compile(r"^projects/[^/]+/topics/[^/]+$")

NEXT_STEPS = (
    "Ensure all environment variables are set correctly",
    "Run the database migration SQL if columns are missing",
    "Users must LOG OUT and LOG IN AGAIN to grant Gmail permissions",
    'Check browser console for JavaScript errors when clicking "Enable Gmail Watch"',
    "Check server logs for API errors",
)


@dataclass(frozen=True)
class CheckResult:
    title: str
    ok: bool
    lines: Tuple[str, ...] = ()
    fatal: bool = True

    @property
    def halts(self) -> bool:
        return self.fatal and not self.ok


def check_environment(environ: Mapping[str, str]) -> CheckResult:
    lines: List[str] = []
    missing: List[str] = []
    for name in REQUIRED_ENV_VARS:
        value = (environ.get(name) or "").strip()
        if value:
            shown = value if name == ECHOED_ENV_VAR else "Set"
            lines.append(f"✓ {name}: {shown}")
        else:
            lines.append(f"✗ {name}: MISSING")
            missing.append(name)
    if missing:
        lines.append(f"Missing environment variables: {', '.join(missing)}")
        lines.append("Please add these to your .env file")
    return CheckResult("Checking Environment Variables", not missing, tuple(lines))


def _connection_failed(exc: Exception) -> CheckResult:
    return CheckResult(
        "Checking Supabase Connection", False, (f"✗ Supabase connection failed: {exc}",)
    )


def check_connection(store: RecordStore) -> CheckResult:
    try:
        store.select(USERS_TABLE, columns="id", limit=1)
    except StoreError as exc:
        return _connection_failed(exc)
    return CheckResult("Checking Supabase Connection", True, ("✓ Supabase connection successful",))


def check_token_columns(store: RecordStore) -> CheckResult:
    try:
        store.select(USERS_TABLE, columns=", ".join(TOKEN_COLUMNS), limit=1)
    except StoreError as exc:
        migration = get_migration("004")
        return CheckResult(
            "Checking Database Schema",
            False,
            (
                f"✗ Required columns missing: {exc}",
                "Please run this SQL in your Supabase SQL Editor:",
                *migration.statements,
            ),
        )
    return CheckResult("Checking Database Schema", True, ("✓ All required database columns exist",))


def check_user_tokens(store: RecordStore) -> CheckResult:
    try:
        rows = store.select(
            USERS_TABLE,
            columns="id, email, access_token, refresh_token, gmail_watch_enabled",
        )
    except StoreError as exc:
        return CheckResult("Checking User OAuth Tokens", False, (f"✗ User check failed: {exc}",))

    with_tokens = [row for row in rows if row.get("access_token") and row.get("refresh_token")]
    without_tokens = [row for row in rows if not (row.get("access_token") and row.get("refresh_token"))]

    lines = [
        f"Total users: {len(rows)}",
        f"✓ Users with OAuth tokens: {len(with_tokens)}",
    ]
    if without_tokens:
        lines.append(f"⚠ Users without OAuth tokens: {len(without_tokens)}")
        lines.append("  These users need to re-authenticate to grant Gmail permissions")
    if with_tokens:
        lines.append("Users with tokens:")
        for row in with_tokens:
            watch = "Enabled" if row.get("gmail_watch_enabled") else "Disabled"
            lines.append(f"  - {row.get('email')} (Watch: {watch})")
    if without_tokens:
        lines.append("Users needing re-authentication:")
        lines.extend(f"  - {row.get('email')}" for row in without_tokens)
    return CheckResult("Checking User OAuth Tokens", True, tuple(lines))


def check_topic_format(topic: Optional[str]) -> CheckResult:
    value = (topic or "").strip()
    if TOPIC_PATTERN.match(value):
        return CheckResult(
            "Checking Pub/Sub Topic Format",
            True,
            (f"✓ Topic format is correct: {value}",),
            fatal=False,
        )
    return CheckResult(
        "Checking Pub/Sub Topic Format",
        False,
        (
            f"✗ Topic format is incorrect: {value}",
            "  Expected format: projects/YOUR_PROJECT_ID/topics/TOPIC_NAME",
        ),
        fatal=False,
    )


def run_gmail_watch_diagnostics(
    environ: Optional[Mapping[str, str]] = None,
    *,
    store: Optional[RecordStore] = None,
    emit: Callable[[str], None] = print,
) -> List[CheckResult]:
    """Run every check in order, stopping at the first fatal failure.

    ``store`` defaults to a client built from ``SUPABASE_URL`` and
    ``SUPABASE_ANON_KEY`` once the environment check has passed.
    """

    env = os.environ if environ is None else environ
    results: List[CheckResult] = []

    def _report(index: int, result: CheckResult) -> bool:
        results.append(result)
        emit(f"\n{index}. {result.title}...")
        for line in result.lines:
            emit(f"   {line}")
        return not result.halts

    emit("\n=== Gmail Watch Diagnostic Tool ===")

    if not _report(1, check_environment(env)):
        return results

    if store is None:
        try:
            store = SupabaseRecordStore.connect(env["SUPABASE_URL"], env["SUPABASE_ANON_KEY"])
        except StoreError as exc:
            _report(2, _connection_failed(exc))
            return results

    for index, check in ((2, check_connection), (3, check_token_columns), (4, check_user_tokens)):
        if not _report(index, check(store)):
            return results

    _report(5, check_topic_format(env.get("GMAIL_PUBSUB_TOPIC")))

    emit("\n=== Diagnostic Complete ===\n")
    emit("Next steps:")
    for number, step in enumerate(NEXT_STEPS, start=1):
        emit(f"{number}. {step}")
    return results


__all__ = [
    "CheckResult",
    "NEXT_STEPS",
    "REQUIRED_ENV_VARS",
    "TOKEN_COLUMNS",
    "check_connection",
    "check_environment",
    "check_token_columns",
    "check_topic_format",
    "check_user_tokens",
    "run_gmail_watch_diagnostics",
]
