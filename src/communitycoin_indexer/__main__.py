"""Command-line entry point: `python -m communitycoin_indexer <command>`."""

from __future__ import annotations

import asyncio
import json
import logging

import typer

from communitycoin_indexer.config import Settings, get_settings

logger = logging.getLogger(__name__)

app = typer.Typer(help="CommunityCoin bonding-curve indexer")


def _load_settings(command: str | None = None) -> Settings:
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if command in ("serve", "index"):
        settings.validate_requirements(command=command)  # type: ignore[arg-type]
    logger.info("Loaded settings: %s", settings.redacted_summary())
    return settings


@app.command("serve")
def serve() -> None:
    """Run the webhook / cron HTTP server."""
    import uvicorn

    from communitycoin_indexer.api.app import create_app

    settings = _load_settings("serve")
    uvicorn.run(
        create_app(settings),
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )


@app.command("index")
def index() -> None:
    """Run one catch-up batch and print the summary as JSON."""
    from communitycoin_indexer.api.app import AppContext

    settings = _load_settings("index")

    async def run() -> dict[str, object]:
        context = AppContext.build(settings)
        try:
            result = await context.batch_indexer().run()
        finally:
            await context.aclose()
        return result.to_dict()

    typer.echo(json.dumps(asyncio.run(run()), indent=2))


@app.command("replay")
def replay(
    limit: int = typer.Option(100, min=1, help="Maximum number of recorded failures to replay"),
    stage: str = typer.Option("apply", help="Failure stage to replay (\"all\" for every stage)"),
) -> None:
    """Re-fetch recorded failed events from the chain and apply them again."""
    from communitycoin_indexer.api.app import AppContext

    settings = _load_settings("index")

    async def run() -> dict[str, object]:
        context = AppContext.build(settings)
        try:
            result = await context.failure_replayer().run(limit=limit, stage=None if stage == "all" else stage)
        finally:
            await context.aclose()
        return result.to_dict()

    typer.echo(json.dumps(asyncio.run(run()), indent=2))


@app.command("init-db")
def init_db() -> None:
    """Create all tables directly from the models (development databases)."""
    from communitycoin_indexer.storage.database import DatabaseManager

    settings = _load_settings()

    async def run() -> None:
        database = DatabaseManager(settings.database.url)
        try:
            await database.init_schema_async()
        finally:
            await database.dispose_async()

    asyncio.run(run())
    typer.echo("Database schema initialized")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
