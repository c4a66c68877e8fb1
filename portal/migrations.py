"""Versioned, idempotent schema migrations for the hosted store.

Each migration is sent as a single call to a SQL-execution database function
(``exec_sql``) together with its ``schema_migrations`` marker, so the
statements and the marker commit in the same transaction. When that function
is missing the runner gives up and hands the operator the exact SQL to paste
into the SQL editor instead.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .store import RecordStore, RpcUnavailableError, StoreError

logger = logging.getLogger("portal.migrations")

MIGRATIONS_TABLE = "schema_migrations"
SEPARATOR = "=" * 70

MIGRATIONS_TABLE_SQL = f"""CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
  version TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);"""

EXEC_SQL_FUNCTION_SQL = """CREATE OR REPLACE FUNCTION exec_sql(sql TEXT)
RETURNS VOID
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
BEGIN
  EXECUTE sql;
END;
$$;
REVOKE ALL ON FUNCTION exec_sql(TEXT) FROM PUBLIC, anon, authenticated;
GRANT EXECUTE ON FUNCTION exec_sql(TEXT) TO service_role;"""

RELOAD_SCHEMA_SQL = "NOTIFY pgrst, 'reload schema';"

_PROJECT_REF_PATTERN = re.compile(r"https://(.+)\.supabase\.co")


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    statements: Tuple[str, ...]

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"

    def marker_sql(self) -> str:
        return (
            f"INSERT INTO {MIGRATIONS_TABLE} (version, name) "
            f"VALUES ({_sql_literal(self.version)}, {_sql_literal(self.name)}) "
            "ON CONFLICT (version) DO NOTHING;"
        )

    def script(self) -> str:
        """Statements, marker and schema-cache reload as one batch."""

        return "\n".join([*self.statements, self.marker_sql(), RELOAD_SCHEMA_SQL])


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        version="001",
        name="create_users",
        statements=(
            """CREATE TABLE IF NOT EXISTS users (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  google_id TEXT UNIQUE NOT NULL,
  email TEXT UNIQUE NOT NULL,
  name TEXT,
  picture TEXT,
  created_at TIMESTAMP DEFAULT NOW(),
  last_login TIMESTAMP,
  is_active BOOLEAN DEFAULT TRUE
);""",
        ),
    ),
    Migration(
        version="002",
        name="create_sessions",
        statements=(
            """CREATE TABLE IF NOT EXISTS sessions (
  id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id UUID REFERENCES users(id) ON DELETE CASCADE,
  token TEXT UNIQUE,
  expires_at TIMESTAMP NOT NULL,
  created_at TIMESTAMP DEFAULT NOW()
);""",
        ),
    ),
    Migration(
        version="003",
        name="create_indexes",
        statements=(
            "CREATE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id);",
            "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);",
            "CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);",
        ),
    ),
    Migration(
        version="004",
        name="oauth_token_columns",
        statements=(
            """ALTER TABLE users
ADD COLUMN IF NOT EXISTS access_token TEXT,
ADD COLUMN IF NOT EXISTS refresh_token TEXT,
ADD COLUMN IF NOT EXISTS token_expiry TIMESTAMP,
ADD COLUMN IF NOT EXISTS gmail_watch_enabled BOOLEAN DEFAULT FALSE,
ADD COLUMN IF NOT EXISTS gmail_watch_expiration BIGINT,
ADD COLUMN IF NOT EXISTS gmail_history_id TEXT;""",
        ),
    ),
)


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def get_migration(version: str) -> Migration:
    for migration in MIGRATIONS:
        if migration.version == version:
            return migration
    raise KeyError(version)


def render_manual_script(
    migrations: Iterable[Migration],
    *,
    include_bootstrap: bool = False,
) -> str:
    """Return one paste-able script applying ``migrations`` in order."""

    parts: List[str] = []
    if include_bootstrap:
        parts.append("-- SQL execution function used by the migration runner")
        parts.append(EXEC_SQL_FUNCTION_SQL)
        parts.append("")
    parts.append("-- Applied migration markers")
    parts.append(MIGRATIONS_TABLE_SQL)
    for migration in migrations:
        parts.append("")
        parts.append(f"-- {migration.label}")
        parts.extend(migration.statements)
        parts.append(migration.marker_sql())
    parts.append("")
    parts.append(RELOAD_SCHEMA_SQL)
    return "\n".join(parts)


def supabase_project_ref(url: str) -> Optional[str]:
    match = _PROJECT_REF_PATTERN.match(url.strip()) if url else None
    return match.group(1) if match else None


def manual_instructions(sql: str, supabase_url: str = "") -> str:
    """Format ``sql`` with step-by-step SQL editor instructions."""

    project_ref = supabase_project_ref(supabase_url)
    if project_ref:
        location = f"https://supabase.com/dashboard/project/{project_ref}"
    else:
        location = "your Supabase project dashboard"
    lines = [
        "Please run the following SQL manually in the Supabase SQL Editor:",
        SEPARATOR,
        sql,
        SEPARATOR,
        "",
        "Instructions:",
        f"1. Go to: {location}",
        '2. Click "SQL Editor" in the left sidebar',
        '3. Click "New Query"',
        "4. Paste the SQL above",
        '5. Click "Run" (or press Ctrl+Enter)',
    ]
    return "\n".join(lines)


class ManualMigrationRequired(RuntimeError):
    """The store cannot execute SQL remotely; ``sql`` must be run by hand."""

    def __init__(self, sql: str, pending: Sequence[str], *, reason: str = "") -> None:
        message = "Schema changes must be applied manually"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.sql = sql
        self.pending = tuple(pending)
        self.reason = reason


@dataclass
class MigrationReport:
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


class MigrationRunner:
    """Apply pending :data:`MIGRATIONS` through the store's SQL function."""

    def __init__(
        self,
        store: RecordStore,
        migrations: Sequence[Migration] = MIGRATIONS,
        *,
        rpc_function: str = "exec_sql",
        rpc_param: str = "sql",
    ) -> None:
        self._store = store
        self._migrations = tuple(migrations)
        self._rpc_function = rpc_function
        self._rpc_param = rpc_param

    @property
    def migrations(self) -> Tuple[Migration, ...]:
        return self._migrations

    def applied_versions(self) -> Set[str]:
        try:
            rows = self._store.select(MIGRATIONS_TABLE, columns="version")
        except StoreError as exc:
            # A fresh project has no marker table yet.
            logger.debug("Could not read %s: %s", MIGRATIONS_TABLE, exc)
            return set()
        return {str(row["version"]) for row in rows if row.get("version") is not None}

    def pending(self) -> List[Migration]:
        applied = self.applied_versions()
        return [migration for migration in self._migrations if migration.version not in applied]

    def _execute(self, sql: str) -> None:
        self._store.call(self._rpc_function, {self._rpc_param: sql})

    def run(self) -> MigrationReport:
        pending = self.pending()
        report = MigrationReport(
            skipped=[m.version for m in self._migrations if m not in pending],
        )
        if not pending:
            logger.info("Schema is up to date; nothing to apply")
            return report

        remaining = list(pending)
        try:
            self._execute(MIGRATIONS_TABLE_SQL)
            for migration in pending:
                logger.info("Applying migration %s", migration.label)
                self._execute(migration.script())
                report.applied.append(migration.version)
                remaining.remove(migration)
        except StoreError as exc:
            logger.warning("Remote SQL execution via %s failed: %s", self._rpc_function, exc)
            raise ManualMigrationRequired(
                render_manual_script(
                    remaining, include_bootstrap=isinstance(exc, RpcUnavailableError)
                ),
                [m.version for m in remaining],
                reason=str(exc),
            ) from exc

        logger.info("Applied %d migration(s)", len(report.applied))
        return report


__all__ = [
    "EXEC_SQL_FUNCTION_SQL",
    "MIGRATIONS",
    "MIGRATIONS_TABLE",
    "MIGRATIONS_TABLE_SQL",
    "ManualMigrationRequired",
    "Migration",
    "MigrationReport",
    "MigrationRunner",
    "get_migration",
    "manual_instructions",
    "render_manual_script",
    "supabase_project_ref",
]
