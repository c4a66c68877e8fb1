import re
import sys
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.config import Settings
from portal.models import IdentityAssertion
from portal.service import create_app
from portal.store import ConflictError, RpcUnavailableError, StoreError

ADMIN_EMAIL = "admin@x.com"

_MARKER_PATTERN = re.compile(
    r"INSERT INTO schema_migrations \(version, name\) VALUES \('([^']*)', '([^']*)'\)"
)


class FakeRecordStore:
    """In-memory stand-in for the hosted store with the same unique constraints."""

    unique_columns = {"users": ("google_id", "email")}

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.executed_sql: List[str] = []
        self.rpc_available = True
        self.missing_columns: set = set()
        self.failures: Dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def add_user(self, **values: Any) -> Dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "name": None,
            "picture": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "last_login": None,
            "is_active": True,
        }
        row.update(values)
        self.tables["users"].append(row)
        return dict(row)

    def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._maybe_fail("select")
        requested = None if columns == "*" else [c.strip() for c in columns.split(",")]
        for column in requested or ():
            if column in self.missing_columns:
                raise StoreError(f"column users.{column} does not exist", code="42703")

        rows = [
            dict(row)
            for row in self.tables[table]
            if all(row.get(key) == value for key, value in (filters or {}).items())
        ]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by) or "", reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if requested is not None:
            rows = [{column: row.get(column) for column in requested} for row in rows]
        return rows

    def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("insert")
        record = dict(row)
        if table == "users":
            record.setdefault("id", str(uuid.uuid4()))
            record.setdefault("created_at", datetime.now(timezone.utc).isoformat())
            record.setdefault("last_login", None)
            record.setdefault("is_active", True)
        for column in self.unique_columns.get(table, ()):
            if any(existing.get(column) == record.get(column) for existing in self.tables[table]):
                raise ConflictError(
                    f'duplicate key value violates unique constraint "{table}_{column}_key"',
                    code="23505",
                )
        self.tables[table].append(record)
        return dict(record)

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        self._maybe_fail("update")
        updated = []
        for row in self.tables[table]:
            if all(row.get(key) == value for key, value in filters.items()):
                row.update(values)
                updated.append(dict(row))
        return updated

    def call(self, function: str, params: Mapping[str, Any]) -> Any:
        self._maybe_fail("call")
        if not self.rpc_available or function != "exec_sql":
            raise RpcUnavailableError(
                f"Could not find the function public.{function}(sql) in the schema cache",
                code="PGRST202",
            )
        sql = params["sql"]
        self.executed_sql.append(sql)
        markers = self.tables["schema_migrations"]
        for version, name in _MARKER_PATTERN.findall(sql):
            if not any(marker["version"] == version for marker in markers):
                markers.append({"version": version, "name": name})
        return None


class StubOAuthClient:
    """Skips the provider round trip and returns a configurable identity."""

    configured = True

    def __init__(self) -> None:
        self.assertion = IdentityAssertion(
            subject_id="g-1",
            email="a@x.com",
            display_name="Alice",
            avatar_url="https://example.com/alice.png",
        )
        self.error: Optional[Exception] = None
        self.codes: List[str] = []
        self.redirect_uris: List[str] = []

    def authorization_url(self, *, redirect_uri: str, state: str) -> str:
        self.redirect_uris.append(redirect_uri)
        return f"https://accounts.example.test/o/oauth2/auth?state={state}"

    async def authenticate(self, code: str, *, redirect_uri: str) -> IdentityAssertion:
        self.codes.append(code)
        self.redirect_uris.append(redirect_uri)
        if self.error is not None:
            raise self.error
        return self.assertion


def sign_in(
    client: TestClient,
    oauth: StubOAuthClient,
    *,
    subject: str = "g-1",
    email: str = "a@x.com",
    name: Optional[str] = "Alice",
    picture: Optional[str] = "https://example.com/alice.png",
):
    """Walk the redirect and callback steps and return the callback response."""

    oauth.assertion = IdentityAssertion(
        subject_id=subject, email=email, display_name=name, avatar_url=picture
    )
    start = client.get("/auth/google", follow_redirects=False)
    state = parse_qs(urlsplit(start.headers["location"]).query)["state"][0]
    return client.get(
        "/auth/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        google_client_id="client-id",
        google_client_secret="client-secret",
        supabase_url="https://abcd1234.supabase.co",
        supabase_anon_key="anon-key",
        session_secret="tests-secret-key",
        admin_email=ADMIN_EMAIL,
    )


@pytest.fixture()
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture()
def oauth() -> StubOAuthClient:
    return StubOAuthClient()


@pytest.fixture()
def app(settings, store, oauth):
    return create_app(settings, store=store, oauth_client=oauth)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
