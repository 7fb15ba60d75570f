"""
Merchant store lookups.

Handles ownership checks against the stores table in Supabase.
"""

import logging
from typing import Optional

from migration_hub.core.exceptions import StoreNotFoundError
from migration_hub.db.base_store import BaseStore

logger = logging.getLogger(__name__)


class MerchantStore(BaseStore):
    """Database operations for merchant stores."""

    async def get_store(self, store_id: str) -> Optional[dict]:
        """
        Fetch store by ID.

        Returns store dict or None if not found.
        """
        rows = await self._select("stores", columns="id, owner_id, name", filters={"id": store_id}, limit=1)
        return rows[0] if rows else None

    async def assert_owner(self, store_id: str, user_id: str) -> dict:
        """
        Ensure the user owns the store.

        Raises:
            StoreNotFoundError: store missing or owned by someone else
        """
        store = await self.get_store(store_id)
        if not store or str(store.get("owner_id")) != str(user_id):
            logger.info(f"Store access denied store={store_id} user={user_id}")
            raise StoreNotFoundError(f"Store {store_id} not found")
        return store
