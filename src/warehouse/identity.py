"""Device-to-user identity backfill.

When a device is linked to a user, every stored row of that device that has
no user yet gets the user id. Rows that already carry a user id are never
touched. The update is not ordered against concurrent appends: an anonymous
row landing after the update stays anonymous until the next link event.
"""

import duckdb
from loguru import logger

from src.core.errors import BackfillError
from src.warehouse.db import Warehouse
from src.warehouse.tenants import TenantStoreManager


class IdentityResolver:
    def __init__(self, warehouse: Warehouse, tenants: TenantStoreManager) -> None:
        self.warehouse = warehouse
        self.tenants = tenants

    async def backfill(self, tenant_id: str, device_id: str, user_id: str) -> int:
        """Attach `user_id` to the anonymous rows of `device_id`; return rows updated."""
        store = self.tenants.store_name(tenant_id)
        if not await self.tenants.table_exists(store):
            logger.info("No events table for tenant {} yet, nothing to backfill", tenant_id)
            return 0

        table = f"{store}.{self.tenants.table}"
        try:
            rows = await self.warehouse.execute(
                f"UPDATE {table} SET user_id = ? WHERE device_id = ? AND user_id IS NULL",
                [user_id, device_id],
            )
        except duckdb.Error as exc:
            raise BackfillError(f"backfill of device {device_id} in {table} failed: {exc}") from exc

        updated = rows[0][0] if rows else 0
        logger.info("Linked {} row(s) of device {} to user {} in {}", updated, device_id, user_id, table)
        return updated
