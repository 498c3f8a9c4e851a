# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Command-line entry point for ingesting files and inspecting outliers."""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import httpx
import typer

from .analysis import TrialSummarizer, collect_statistics
from .broadcaster import EventBroadcaster
from .config import Settings, load_config
from .exceptions import IngestionError
from .gateway.postgres import PostgresGateway
from .models import IngestionResult
from .pipeline import IngestionPipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Ingest clinical trial data files and monitor outliers.")

ConfigOption = typer.Option(None, "--config", help="Path to YAML config file.")


def get_settings(config_file: Optional[str]) -> Settings:
    settings = Settings(**load_config(config_file))
    logging.getLogger().setLevel(settings.log_level.upper())
    return settings


def gateway_for(settings: Settings) -> PostgresGateway:
    return PostgresGateway(settings.db_connection_string, schema=settings.db_schema)


async def ingest_file(
    path: Path, settings: Settings, broadcaster: EventBroadcaster
) -> IngestionResult:
    """Run one file through its own pipeline and database connection."""
    content = path.read_text(encoding="utf-8")
    async with gateway_for(settings) as gateway:
        pipeline = IngestionPipeline(
            gateway,
            broadcaster,
            default_trial_id=settings.default_trial_id,
            default_trial_name=settings.default_trial_name,
        )
        return await pipeline.process(content)


async def aingest(paths: List[Path], settings: Settings, show_events: bool) -> int:
    """Ingest files concurrently. Returns the number of failed uploads."""
    broadcaster = EventBroadcaster(settings.max_subscribers, settings.subscriber_queue_size)
    subscription = broadcaster.subscribe() if show_events else None

    results = await asyncio.gather(
        *(ingest_file(path, settings, broadcaster) for path in paths),
        return_exceptions=True,
    )

    failures = 0
    for path, result in zip(paths, results):
        if isinstance(result, IngestionResult):
            typer.echo(f"{path}: Processed {result.count} {result.type.value}")
        elif isinstance(result, (IngestionError, OSError, UnicodeDecodeError)):
            failures += 1
            typer.echo(f"{path}: {result}", err=True)
        else:
            raise result

    if subscription:
        for payload in subscription.drain():
            typer.echo(payload)
        subscription.close()
    return failures


@app.command("init-db")
def init_db(config_file: Optional[str] = ConfigOption) -> None:
    """Create the schema and tables."""
    settings = get_settings(config_file)

    async def run() -> None:
        async with gateway_for(settings) as gateway:
            await gateway.prepare_schema()

    asyncio.run(run())
    logger.info("Schema '%s' is ready.", settings.db_schema)


@app.command("reset-db")
def reset_db(
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
    config_file: Optional[str] = ConfigOption,
) -> None:
    """Drop every table and its data."""
    settings = get_settings(config_file)
    if not yes:
        typer.confirm(
            f"Drop all tables in schema '{settings.db_schema}'?", abort=True
        )

    async def run() -> None:
        async with gateway_for(settings) as gateway:
            await gateway.drop_tables()

    asyncio.run(run())
    logger.info("Dropped all tables in schema '%s'.", settings.db_schema)


@app.command()
def ingest(
    files: List[Path] = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    show_events: bool = typer.Option(
        False, "--show-events", help="Print the events broadcast while ingesting."
    ),
    config_file: Optional[str] = ConfigOption,
) -> None:
    """Ingest CSV, JSON or XML files concurrently."""
    settings = get_settings(config_file)
    failures = asyncio.run(aingest(files, settings, show_events))
    if failures:
        raise typer.Exit(code=1)


@app.command()
def stats(config_file: Optional[str] = ConfigOption) -> None:
    """Print trial statistics and a summary."""
    settings = get_settings(config_file)

    async def run() -> str:
        async with gateway_for(settings) as gateway:
            statistics = await collect_statistics(gateway)
        async with httpx.AsyncClient(timeout=settings.summary_timeout_s) as client:
            summary = await TrialSummarizer(settings, client=client).summarize(statistics)
        return json.dumps(
            {
                "stats": statistics.model_dump(by_alias=True),
                "summary": summary.model_dump(by_alias=True),
            },
            indent=2,
        )

    typer.echo(asyncio.run(run()))


@app.command()
def outliers(
    limit: int = typer.Option(50, help="Maximum number of outliers to print."),
    config_file: Optional[str] = ConfigOption,
) -> None:
    """Print the latest outliers as JSON."""
    settings = get_settings(config_file)

    async def run() -> str:
        async with gateway_for(settings) as gateway:
            logs = await gateway.list_outliers(limit)
        return json.dumps([log.model_dump(mode="json", by_alias=True) for log in logs], indent=2)

    typer.echo(asyncio.run(run()))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
