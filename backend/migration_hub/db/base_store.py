"""
Base store — shared Supabase client access for all stores.

Base Supabase store with shared CRUD helpers.

All domain-specific stores inherit from this class to get standardised
insert / upsert / select / update / delete / rpc primitives. Rejected rows
surface as PersistenceError (an item-level failure); an unreachable
database surfaces as DatabaseTransientError (fatal for the running job).
Version: 1.0.0
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from migration_hub.core.config import settings
from migration_hub.clients.supabase_client import SupabaseClient
from migration_hub.core.exceptions import DatabaseTransientError, PersistenceError

logger = logging.getLogger("base_store")


class BaseStore:
    """Base class for all Supabase stores providing shared CRUD operations."""

    def __init__(self, supabase_client: SupabaseClient | None = None) -> None:
        self._supabase_client = supabase_client or SupabaseClient(settings)

    @property
    def _client(self):
        """Get the Supabase client instance."""
        return self._supabase_client.client

    @property
    def _storage_url(self) -> str:
        return settings.supabase_url.rstrip("/") + "/storage/v1"

    @property
    def _bucket(self) -> str:
        return settings.supabase_storage_bucket

    def _execute(self, table: str, query) -> Any:
        """Run a built query, translating client errors."""
        try:
            return query.execute()
        except APIError as e:
            logger.info("supabase error table=%s detail=%s", table, str(e))
            raise PersistenceError(table, str(e)) from e
        except httpx.TransportError as e:
            logger.warning("supabase unreachable table=%s detail=%r", table, e)
            raise DatabaseTransientError(f"Supabase unreachable while accessing {table}: {e!r}") from e

    async def _insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows into a table and return the stored rows."""
        if not rows:
            return []
        response = self._execute(table, self._client.table(table).insert(rows))
        return response.data or []

    async def _insert_one(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a single row and return it (with generated id)."""
        rows = await self._insert(table, [row])
        if not rows:
            raise PersistenceError(table, "insert returned no row")
        return rows[0]

    async def _upsert(
        self, table: str, rows: List[Dict[str, Any]], on_conflict: str | None = None
    ) -> List[Dict[str, Any]]:
        """Upsert rows into a table (insert or update on conflict)."""
        if not rows:
            return []
        if on_conflict:
            query = self._client.table(table).upsert(rows, on_conflict=on_conflict)
        else:
            query = self._client.table(table).upsert(rows)
        response = self._execute(table, query)
        return response.data or []

    async def _select(
        self,
        table: str,
        columns: str = "*",
        filters: Dict[str, Any] | None = None,
        in_filters: Dict[str, List[Any]] | None = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows from a table with optional equality / membership filters."""
        query = self._client.table(table).select(columns)
        for key, value in (filters or {}).items():
            query = query.eq(key, value)
        for key, values in (in_filters or {}).items():
            query = query.in_(key, values)
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit:
            query = query.limit(limit)
        response = self._execute(table, query)
        return response.data or []

    async def _update(
        self,
        table: str,
        filters: Dict[str, Any],
        payload: Dict[str, Any],
        in_filters: Dict[str, List[Any]] | None = None,
    ) -> List[Dict[str, Any]]:
        """Update rows matching the filters; returns the updated rows."""
        query = self._client.table(table).update(payload)
        for key, value in filters.items():
            query = query.eq(key, value)
        for key, values in (in_filters or {}).items():
            query = query.in_(key, values)
        response = self._execute(table, query)
        return response.data or []

    async def _delete(
        self,
        table: str,
        filters: Dict[str, Any] | None = None,
        in_filters: Dict[str, List[Any]] | None = None,
    ) -> None:
        """Delete rows matching the filters."""
        if not filters and not in_filters:
            raise ValueError(f"Refusing unfiltered delete on {table}")
        query = self._client.table(table).delete()
        for key, value in (filters or {}).items():
            query = query.eq(key, value)
        for key, values in (in_filters or {}).items():
            query = query.in_(key, values)
        self._execute(table, query)

    async def _rpc(self, function: str, params: Dict[str, Any]) -> Any:
        """Call a Postgres function exposed through PostgREST."""
        response = self._execute(function, self._client.rpc(function, params))
        return response.data
