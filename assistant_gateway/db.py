"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and thin typed
helpers for the row operations the Supabase-backed stores need. Every
helper logs failures and re-raises them as ``UpstreamError`` so callers
see one error type regardless of what the client library raised.
"""

from __future__ import annotations

from typing import Any, Optional

from supabase import Client, create_client

from assistant_gateway.config import get_settings
from assistant_gateway.errors import UpstreamError
from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Client

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            instance = super().__new__(cls)
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Database operations will fail.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )

            try:
                instance._client = create_client(
                    settings.supabase_url,
                    settings.supabase_service_key,
                )
                logger.info("Supabase client initialized", url=settings.supabase_url)
            except Exception as e:
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise
            cls._instance = instance

        return cls._instance

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    def fetch_one(self, table: str, **filters: Any) -> dict[str, Any] | None:
        """Return the first row matching all equality filters, or None."""
        try:
            query = self.client.table(table).select("*")
            for column, value in filters.items():
                query = query.eq(column, value)
            response = query.limit(1).execute()
        except Exception as e:
            logger.error("db_fetch_error", table=table, filters=filters, error=str(e))
            raise UpstreamError(f"Failed to read {table}") from e
        return response.data[0] if response.data else None

    def fetch_many(
        self,
        table: str,
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        try:
            query = self.client.table(table).select("*")
            for column, value in filters.items():
                query = query.eq(column, value)
            if order_by:
                query = query.order(order_by, desc=desc)
            if limit:
                query = query.limit(limit)
            response = query.execute()
        except Exception as e:
            logger.error("db_fetch_error", table=table, filters=filters, error=str(e))
            raise UpstreamError(f"Failed to read {table}") from e
        return response.data or []

    def insert_row(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.table(table).insert(payload).execute()
        except Exception as e:
            logger.error("db_insert_error", table=table, error=str(e))
            raise UpstreamError(f"Failed to write {table}") from e
        if not response.data:
            raise UpstreamError(f"Insert into {table} returned no row")
        return response.data[0]

    def update_row(self, table: str, row_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        try:
            response = (
                self.client.table(table)
                .update(updates)
                .eq("id", row_id)
                .execute()
            )
        except Exception as e:
            logger.error("db_update_error", table=table, id=row_id, error=str(e))
            raise UpstreamError(f"Failed to update {table}") from e
        # Supabase update returns a list, usually with 1 item
        return response.data[0] if response.data else None


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
