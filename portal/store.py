"""Client for the hosted relational store (Supabase / PostgREST)."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, TypeVar

import anyio
import anyio.to_thread
import httpx
from postgrest.exceptions import APIError
from supabase import Client as SupabaseClient, ClientOptions, create_client

from .config import Settings

logger = logging.getLogger("portal.store")

UNIQUE_VIOLATION = "23505"
_MISSING_FUNCTION_CODES = {"PGRST202", "42883", "404"}

T = TypeVar("T")


class StoreError(RuntimeError):
    """Raised when the record store cannot complete a request."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ConflictError(StoreError):
    """A unique constraint rejected the write."""


class RpcUnavailableError(StoreError):
    """The requested database function does not exist on this store."""


class StoreTimeoutError(StoreError):
    """The store did not answer within the configured timeout."""


class RecordStore(Protocol):
    """Filtered select/insert/update by table name and column predicates."""

    def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]: ...

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]: ...

    def call(self, function: str, params: Mapping[str, Any]) -> Any: ...


def select_one(
    store: RecordStore,
    table: str,
    *,
    filters: Mapping[str, Any],
    columns: str = "*",
) -> Optional[Dict[str, Any]]:
    """Return the single matching row, ``None`` when nothing matches."""

    rows = store.select(table, columns=columns, filters=filters, limit=2)
    if not rows:
        return None
    if len(rows) > 1:
        raise StoreError(f"Expected at most one row from {table}, received {len(rows)}")
    return rows[0]


def _translate_api_error(exc: APIError) -> StoreError:
    code = str(exc.code) if exc.code is not None else None
    message = exc.message or str(exc)
    if code == UNIQUE_VIOLATION:
        return ConflictError(message, code=code)
    if code in _MISSING_FUNCTION_CODES:
        return RpcUnavailableError(message, code=code)
    return StoreError(message, code=code)


class SupabaseRecordStore:
    """:class:`RecordStore` backed by the Supabase PostgREST API."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    @classmethod
    def connect(cls, url: str, key: str, *, timeout: float = 10.0) -> "SupabaseRecordStore":
        if not url or not key:
            raise StoreError("SUPABASE_URL and an API key must be configured")
        options = ClientOptions(
            postgrest_client_timeout=timeout,
            auto_refresh_token=False,
            persist_session=False,
        )
        try:
            client = create_client(url, key, options=options)
        except Exception as exc:  # supabase raises bare exceptions for malformed URLs and keys
            raise StoreError(f"Unable to create store client: {exc}") from exc
        return cls(client)

    @classmethod
    def from_settings(cls, settings: Settings, *, privileged: bool = False) -> "SupabaseRecordStore":
        key = settings.privileged_key if privileged else settings.supabase_anon_key
        return cls.connect(settings.supabase_url, key, timeout=settings.store_timeout)

    def _execute(self, description: str, build: Callable[[], Any]) -> Any:
        try:
            return build().execute()
        except APIError as exc:
            raise _translate_api_error(exc) from exc
        except httpx.HTTPError as exc:
            logger.warning("Store request %s failed: %s", description, exc)
            raise StoreError(f"{description} failed: {exc}") from exc

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
        def build():
            query = self._client.table(table).select(columns)
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            if order_by:
                query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.limit(limit)
            return query

        response = self._execute(f"select from {table}", build)
        return list(response.data or [])

    def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        response = self._execute(
            f"insert into {table}",
            lambda: self._client.table(table).insert(dict(row)),
        )
        if not response.data:
            raise StoreError(f"Insert into {table} returned no row")
        return dict(response.data[0])

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to update without filters")

        def build():
            query = self._client.table(table).update(dict(values))
            for column, value in filters.items():
                query = query.eq(column, value)
            return query

        response = self._execute(f"update {table}", build)
        return list(response.data or [])

    def call(self, function: str, params: Mapping[str, Any]) -> Any:
        response = self._execute(
            f"rpc {function}",
            lambda: self._client.rpc(function, dict(params)),
        )
        return response.data


async def run_store_call(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking store call off the event loop, bounded by ``timeout``."""

    try:
        with anyio.fail_after(timeout):
            return await anyio.to_thread.run_sync(
                lambda: func(*args), abandon_on_cancel=True
            )
    except TimeoutError as exc:
        name = getattr(func, "__name__", repr(func))
        logger.warning("Store call %s exceeded %gs", name, timeout)
        raise StoreTimeoutError(f"Store call {name} timed out after {timeout:g}s") from exc


__all__ = [
    "ConflictError",
    "RecordStore",
    "RpcUnavailableError",
    "StoreError",
    "StoreTimeoutError",
    "SupabaseRecordStore",
    "run_store_call",
    "select_one",
]
