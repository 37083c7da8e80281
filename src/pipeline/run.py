"""CLI entrypoint for the collector.

Usage:
    python -m src.pipeline.run serve --port 8000
    python -m src.pipeline.run worker
    python -m src.pipeline.run provision --tenant acme
"""

import argparse
import asyncio

from loguru import logger

from src.core.config import Settings, get_settings
from src.core.logging import setup_logging
from src.pipeline.service import Pipeline


async def run_worker(settings: Settings) -> None:
    """Consume the events topic until cancelled (no HTTP)."""
    pipeline = Pipeline.from_settings(settings)
    await pipeline.start(consume=True)
    try:
        await pipeline.wait()
    finally:
        await pipeline.stop()
        pipeline.close()


async def provision(settings: Settings, tenants: list[str]) -> None:
    """Create tenant stores up front instead of on first write."""
    pipeline = Pipeline.from_settings(settings)
    try:
        for tenant_id in tenants:
            await pipeline.tenants.ensure(tenant_id)
            info = await pipeline.tenants.describe(tenant_id)
            print(
                f"{info.store}.{info.table}: database={info.database_exists} "
                f"table={info.table_exists} rows={info.row_count}"
            )
    finally:
        pipeline.close()


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Event collector")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP collector with an in-process consumer")
    serve.add_argument("--host", type=str, default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("worker", help="Run a consumer-only worker")

    prov = sub.add_parser("provision", help="Create tenant stores")
    prov.add_argument("--tenant", action="append", required=True, help="Tenant id (repeatable)")

    opts = parser.parse_args(args)
    settings = get_settings()
    setup_logging(settings)

    if opts.command == "serve":
        import uvicorn

        uvicorn.run("src.collector.app:app", host=opts.host, port=opts.port)
    elif opts.command == "worker":
        try:
            asyncio.run(run_worker(settings))
        except KeyboardInterrupt:
            logger.info("Worker interrupted")
    else:
        asyncio.run(provision(settings, opts.tenant))


if __name__ == "__main__":
    main()
