"""Per-tenant store provisioning.

A tenant store is a schema named <prefix><tenant_id> holding one events
table. It is created lazily on first write, check-then-create against the
DuckDB catalog, with IF NOT EXISTS so concurrent writers racing on a new
tenant cannot fail each other. There is no lock: a create that still errors
(catalog write conflict, already exists) is logged and treated as success.
"""

import re
from dataclasses import dataclass

import duckdb
from loguru import logger

from src.core.errors import InvalidIdentifierError, ProvisioningError
from src.warehouse.db import Warehouse

SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")

_CREATE_EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS {store}.{table} (
    id          VARCHAR NOT NULL,
    tenant_id   VARCHAR NOT NULL,
    event_name  VARCHAR NOT NULL,
    user_id     VARCHAR,
    device_id   VARCHAR,
    session_id  VARCHAR NOT NULL DEFAULT '',
    timestamp   TIMESTAMP NOT NULL,
    event_month INTEGER NOT NULL,
    properties  JSON,
    platform    VARCHAR NOT NULL,
    version     VARCHAR NOT NULL DEFAULT '',
    ingested_at TIMESTAMP NOT NULL
);
"""

# Stands in for the (tenant_id, event_name, timestamp) sort order.
_CREATE_ORDER_INDEX = (
    "CREATE INDEX IF NOT EXISTS {table}_order_idx ON {store}.{table} (tenant_id, event_name, timestamp)"
)


def validate_identifier(value: str, what: str = "identifier") -> str:
    if not value or not SAFE_IDENTIFIER.match(value):
        raise InvalidIdentifierError(
            f"invalid {what} {value!r}: only letters, digits and underscores are allowed"
        )
    return value


@dataclass
class StoreInfo:
    tenant_id: str
    store: str
    table: str
    database_exists: bool
    table_exists: bool
    row_count: int = 0


class TenantStoreManager:
    def __init__(self, warehouse: Warehouse, prefix: str = "tenant_", table: str = "events") -> None:
        self.warehouse = warehouse
        self.prefix = prefix
        self.table = validate_identifier(table, "table name")
        self._ready: set[str] = set()

    def store_name(self, tenant_id: str) -> str:
        """Derive the tenant's schema name. Same input, same name, no lookup."""
        validate_identifier(tenant_id, "tenant id")
        return validate_identifier(f"{self.prefix}{tenant_id}", "store name")

    def qualified_table(self, tenant_id: str) -> str:
        return f"{self.store_name(tenant_id)}.{self.table}"

    async def _catalog_count(self, sql: str, params: list[str]) -> int:
        try:
            rows = await self.warehouse.execute(sql, params)
        except duckdb.Error as exc:
            raise ProvisioningError(f"catalog lookup failed: {exc}") from exc
        return rows[0][0]

    async def database_exists(self, store: str) -> bool:
        count = await self._catalog_count(
            "SELECT count(*) FROM information_schema.schemata WHERE schema_name = ?",
            [store],
        )
        return count > 0

    async def table_exists(self, store: str, table: str | None = None) -> bool:
        count = await self._catalog_count(
            "SELECT count(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
            [store, table or self.table],
        )
        return count > 0

    async def ensure(self, tenant_id: str) -> str:
        """Make sure the tenant's schema and events table exist; return the schema name."""
        store = self.store_name(tenant_id)
        if store in self._ready:
            return store

        if not await self.database_exists(store):
            await self._create(f"CREATE SCHEMA IF NOT EXISTS {store}", f"database {store}")
        if not await self.table_exists(store):
            await self._create(
                _CREATE_EVENTS_TABLE.format(store=store, table=self.table),
                f"events table {store}.{self.table}",
            )
            await self._create(
                _CREATE_ORDER_INDEX.format(store=store, table=self.table),
                f"order index on {store}.{self.table}",
            )

        if await self.table_exists(store):
            self._ready.add(store)
        return store

    async def _create(self, sql: str, what: str) -> None:
        try:
            await self.warehouse.execute(sql)
            logger.info("Created {}", what)
        except duckdb.Error as exc:
            logger.warning("Creating {} failed, it might already exist: {}", what, exc)

    async def describe(self, tenant_id: str) -> StoreInfo:
        store = self.store_name(tenant_id)
        info = StoreInfo(
            tenant_id=tenant_id,
            store=store,
            table=self.table,
            database_exists=await self.database_exists(store),
            table_exists=await self.table_exists(store),
        )
        if info.table_exists:
            rows = await self.warehouse.execute(f"SELECT count(*) FROM {store}.{self.table}")
            info.row_count = rows[0][0]
        return info
