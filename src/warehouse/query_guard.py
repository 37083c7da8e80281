"""Guard and runner for tenant-submitted ad-hoc SQL.

The checks are textual, not parsed: a forbidden word anywhere in the text,
even inside an identifier, a string literal or a comment, rejects the query.
Every check raises QueryRejectedError with its own reason. The warehouse
connection itself has external file access disabled.
"""

import re
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger

from src.core.errors import QueryRejectedError, RejectionReason
from src.warehouse.db import Warehouse
from src.warehouse.tenants import TenantStoreManager

READ_ONLY_PREFIXES = ("select", "with")

FORBIDDEN_KEYWORDS = (
    "create",
    "update",
    "delete",
    "insert",
    "drop",
    "alter",
    "truncate",
    "replace",
    "attach",
    "detach",
    "copy",
    "export",
    "import",
    "install",
    "load",
    "pragma",
)

# Substring match: created_at or updated_at are rejected too.
_FORBIDDEN_RE = re.compile("|".join(FORBIDDEN_KEYWORDS))

_SYSTEM_CATALOG_RE = re.compile(r"information_schema|pg_catalog|\bduckdb_\w+|\bsqlite_\w+")

_EXTERNAL_ACCESS_RE = re.compile(r"\b(?:read_\w+|glob|parquet_\w+|getenv)\s*\(")


@dataclass
class QueryResult:
    columns: list[str]
    rows: list[dict[str, Any]]
    total_count: int
    execution_time_ms: float


def check_query(sql: str, tenant_id: str, store_prefix: str = "tenant_") -> str:
    """Return the query (trailing `;` removed) if it passes every check."""
    normalized = sql.strip().lower()

    if not normalized.startswith(READ_ONLY_PREFIXES):
        raise QueryRejectedError(
            RejectionReason.NOT_READ_ONLY,
            "Only SELECT queries are allowed for analytics.",
        )

    match = _FORBIDDEN_RE.search(normalized)
    if match:
        raise QueryRejectedError(
            RejectionReason.FORBIDDEN_KEYWORD,
            f"Query contains the forbidden keyword {match.group(0).upper()!r}.",
        )

    tenant_filter = re.compile(r"\btenant_id\s*=\s*'" + re.escape(tenant_id.lower()) + r"'")
    if not tenant_filter.search(normalized):
        raise QueryRejectedError(
            RejectionReason.MISSING_TENANT_FILTER,
            f"Query must filter on tenant_id = '{tenant_id}'.",
        )

    body = sql.strip().rstrip(";").rstrip()
    if ";" in body:
        raise QueryRejectedError(
            RejectionReason.MULTIPLE_STATEMENTS,
            "Only a single statement is allowed.",
        )

    # "tenant_x".events and memory."tenant_x".events name the same schema
    unquoted = normalized.replace('"', "")

    own_store = f"{store_prefix}{tenant_id}".lower()
    for schema in re.findall(r"\b(" + re.escape(store_prefix.lower()) + r"\w+)\s*\.", unquoted):
        if schema != own_store:
            raise QueryRejectedError(
                RejectionReason.FOREIGN_NAMESPACE,
                "Query may only read the caller's own store.",
            )

    if _SYSTEM_CATALOG_RE.search(unquoted):
        raise QueryRejectedError(
            RejectionReason.SYSTEM_CATALOG,
            "Query may not read the system catalog.",
        )

    if _EXTERNAL_ACCESS_RE.search(unquoted):
        raise QueryRejectedError(
            RejectionReason.EXTERNAL_ACCESS,
            "Query may not read files or the environment.",
        )

    return body


async def run_adhoc_query(
    warehouse: Warehouse,
    tenants: TenantStoreManager,
    tenant_id: str,
    sql: str,
) -> QueryResult:
    """Check `sql` and run it with the tenant's schema as search path."""
    statement = check_query(sql, tenant_id, tenants.prefix)
    store = tenants.store_name(tenant_id)

    started = time.perf_counter()
    columns, rows = await warehouse.query(statement, setup=[f"SET search_path = '{store}'"])
    elapsed_ms = (time.perf_counter() - started) * 1000.0

    logger.debug("Ad-hoc query for tenant {} returned {} row(s) in {:.1f}ms", tenant_id, len(rows), elapsed_ms)
    return QueryResult(
        columns=columns,
        rows=[dict(zip(columns, row)) for row in rows],
        total_count=len(rows),
        execution_time_ms=round(elapsed_ms, 3),
    )
