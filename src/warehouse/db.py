"""DuckDB warehouse connection management.

Each tenant's events live in their own schema of one DuckDB file. Statements
run on a fresh cursor in a worker thread so the event loop never blocks, and
each one is bounded by the configured request timeout.
"""

import asyncio
from pathlib import Path
from typing import Any, Sequence

import duckdb
from loguru import logger

from src.core.errors import StoreTimeoutError

DEFAULT_DB_PATH = Path("data/analytics.duckdb")


# Ad-hoc queries run on this connection; tenant SQL must not reach local files.
_CONNECTION_CONFIG = {"enable_external_access": False}


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection, creating the database file if needed.

    Pass ":memory:" for an in-memory database (useful for testing).
    External file access (read_csv, read_text, COPY ...) is disabled.
    """
    if str(db_path) == ":memory:":
        return duckdb.connect(":memory:", config=_CONNECTION_CONFIG)
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(db_path), config=_CONNECTION_CONFIG)


def _run(
    cursor: duckdb.DuckDBPyConnection,
    sql: str,
    params: Sequence[Any] | None,
    setup: Sequence[str],
) -> tuple[list[str], list[tuple]]:
    try:
        for statement in setup:
            cursor.execute(statement)
        cursor.execute(sql, params)
        if cursor.description is None:
            return [], []
        columns = [col[0] for col in cursor.description]
        return columns, cursor.fetchall()
    finally:
        cursor.close()


class Warehouse:
    def __init__(self, conn: duckdb.DuckDBPyConnection, request_timeout_s: float = 30.0) -> None:
        self.conn = conn
        self.request_timeout_s = request_timeout_s

    async def query(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        setup: Sequence[str] = (),
    ) -> tuple[list[str], list[tuple]]:
        """Run one statement; return (column names, rows).

        `setup` statements run first on the same cursor (e.g. SET search_path).
        Exceeding the request timeout interrupts the statement and raises
        StoreTimeoutError.
        """
        cursor = self.conn.cursor()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(_run, cursor, sql, params, setup),
                timeout=self.request_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            cursor.interrupt()
            logger.error("Warehouse statement timed out after {}s", self.request_timeout_s)
            raise StoreTimeoutError(
                f"warehouse statement exceeded {self.request_timeout_s}s"
            ) from exc

    async def execute(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        _, rows = await self.query(sql, params)
        return rows

    async def ping(self) -> bool:
        try:
            rows = await self.execute("SELECT 1")
        except (duckdb.Error, StoreTimeoutError) as exc:
            logger.error("Warehouse ping failed: {}", exc)
            return False
        return rows == [(1,)]

    def close(self) -> None:
        self.conn.close()
