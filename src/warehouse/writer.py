"""Append canonical events to their tenant's events table."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import duckdb
from loguru import logger

from src.collector.identity import UsageCounter
from src.collector.schemas import CanonicalEvent
from src.core.errors import WriteError
from src.warehouse.db import Warehouse
from src.warehouse.tenants import TenantStoreManager

_INSERT_COLUMNS = (
    "id",
    "tenant_id",
    "event_name",
    "user_id",
    "device_id",
    "session_id",
    "timestamp",
    "event_month",
    "properties",
    "platform",
    "version",
    "ingested_at",
)


def _utc_naive(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_row(event: CanonicalEvent, ingested_at: datetime) -> dict[str, Any]:
    """Flatten an event into an EventRow. `metadata` is transport-only and dropped."""
    ts = _utc_naive(event.timestamp)
    return {
        "id": event.id,
        "tenant_id": event.tenant_id,
        "event_name": event.event_name,
        "user_id": event.user_id,
        "device_id": event.device_id,
        "session_id": event.session_id or "",
        "timestamp": ts,
        "event_month": ts.year * 100 + ts.month,
        "properties": json.dumps(event.properties),
        "platform": event.platform,
        "version": event.version or "",
        "ingested_at": _utc_naive(ingested_at),
    }


@dataclass
class WriteResult:
    written: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class EventWriter:
    """Single-row appends; a batch can partly succeed."""

    def __init__(
        self,
        warehouse: Warehouse,
        tenants: TenantStoreManager,
        usage: UsageCounter,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.warehouse = warehouse
        self.tenants = tenants
        self.usage = usage
        self._clock = clock

    async def write(self, event: CanonicalEvent) -> None:
        """Append one row, then bump the tenant's usage counter.

        The tenant store must already exist (TenantStoreManager.ensure).
        """
        table = self.tenants.qualified_table(event.tenant_id)
        row = to_row(event, self._clock())
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        try:
            await self.warehouse.execute(
                f"INSERT INTO {table} ({', '.join(_INSERT_COLUMNS)}) VALUES ({placeholders})",
                [row[c] for c in _INSERT_COLUMNS],
            )
        except duckdb.Error as exc:
            raise WriteError(f"failed to write event {event.id} to {table}: {exc}") from exc

        await self.usage.increment_event_count(event.tenant_id)
        logger.debug("Wrote event {} to {}", event.id, table)

    async def write_many(self, events: list[CanonicalEvent]) -> WriteResult:
        result = WriteResult()
        for event in events:
            try:
                await self.write(event)
                result.written.append(event.id)
            except WriteError as exc:
                logger.error("{}", exc)
                result.failed[event.id] = str(exc)
        return result
