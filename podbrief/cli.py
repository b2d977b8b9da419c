"""CLI for podbrief."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from . import __version__
from .config import Config, ConfigError, config_summary, load_config

app = typer.Typer(
    name="podbrief",
    help="Acquire transcripts for recently published podcast episodes.",
    add_completion=False,
)

ConfigOption = Annotated[
    Optional[Path], typer.Option("--config", "-c", help="Path to config file")
]
VerboseOption = Annotated[
    bool, typer.Option("--verbose", "-v", help="Enable debug logging")
]


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(config_path: Optional[Path]) -> Config:
    try:
        return load_config(str(config_path) if config_path else None)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def run(
    config_path: ConfigOption = None,
    recheck: Annotated[
        Optional[bool],
        typer.Option("--recheck/--no-recheck", help="Re-process recent episodes that already have transcripts"),
    ] = None,
    verbose: VerboseOption = False,
) -> None:
    """Run the transcript worker once and print the summary as JSON."""
    configure_logging(verbose)
    config = _load(config_path)

    from worker.transcript_worker import create_worker

    try:
        worker = create_worker(config)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    async def _run():
        try:
            return await worker.run(recheck_mode=recheck)
        finally:
            await worker.aclose()

    try:
        summary = asyncio.run(_run())
    except Exception as e:
        typer.echo(f"Error: transcript run failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(summary.model_dump_json(indent=2))


@app.command()
def daemon(
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run the transcript worker on a schedule (interval plus random jitter)."""
    configure_logging(verbose)
    config = _load(config_path)

    from worker.scheduler import create_scheduler

    scheduler = create_scheduler(config)
    if scheduler is None:
        typer.echo("Transcript worker is disabled (TRANSCRIPT_WORKER_ENABLED=false)")
        raise typer.Exit(0)

    async def _serve():
        scheduler.start()
        try:
            await scheduler.wait()
        finally:
            await scheduler.stop()

    typer.echo(
        f"Starting transcript daemon (interval: {config.worker.interval_seconds}s, "
        f"jitter: {config.worker.jitter_seconds}s)"
    )
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        typer.echo("\nShutting down...")


@app.command("init-db")
def init_db_command(config_path: ConfigOption = None) -> None:
    """Create the database tables."""
    config = _load(config_path)

    from db.database import get_database_url, get_engine, init_db

    init_db(get_engine(config.database_url))
    typer.echo(f"Database initialized: {get_database_url(config.database_url)}")


@app.command("show-config")
def show_config(config_path: ConfigOption = None) -> None:
    """Print the resolved configuration (secrets omitted)."""
    config = _load(config_path)
    typer.echo(json.dumps(config_summary(config), indent=2))


@app.command()
def status(config_path: ConfigOption = None) -> None:
    """Show transcript counts per status."""
    config = _load(config_path)

    from db.database import get_engine, get_session_factory
    from db.transcripts import TranscriptMetadataStore

    store = TranscriptMetadataStore(get_session_factory(get_engine(config.database_url)))
    counts = store.status_counts()

    total = sum(counts.values())
    typer.echo(f"Transcripts: {total}")
    for name, count in counts.items():
        typer.echo(f"  {name:<20} {count}")


@app.command("show-transcript")
def show_transcript(
    episode_id: Annotated[str, typer.Argument(help="Episode ID")],
    config_path: ConfigOption = None,
) -> None:
    """Print the stored transcript text for an episode."""
    config = _load(config_path)

    from db.database import get_engine, get_session_factory
    from db.transcripts import TranscriptMetadataStore
    from worker.storage import StorageError, TranscriptBlobStore

    store = TranscriptMetadataStore(get_session_factory(get_engine(config.database_url)))
    row = store.get_active(episode_id)
    if row is None:
        typer.echo(f"Error: No transcript found for episode {episode_id}", err=True)
        raise typer.Exit(1)
    if not row.storage_path:
        typer.echo(f"Transcript for episode {episode_id} has no text (status: {row.current_status})")
        if row.error_details:
            typer.echo(f"  {row.error_details}")
        raise typer.Exit(0)

    storage = config.storage
    blob_store = TranscriptBlobStore(
        access_key=storage.access_key,
        secret_key=storage.secret_key,
        bucket=storage.bucket,
        endpoint=storage.endpoint,
    )
    try:
        if not blob_store.exists(row.storage_path):
            typer.echo(f"Error: Transcript blob {row.storage_path} is missing from storage", err=True)
            raise typer.Exit(1)
        data = blob_store.read(row.storage_path)
    except StorageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(data["transcript"])


@app.command("reset-transcript")
def reset_transcript(
    episode_id: Annotated[str, typer.Argument(help="Episode ID")],
    config_path: ConfigOption = None,
) -> None:
    """Soft-delete an episode's transcript row so the next run fetches it again."""
    config = _load(config_path)

    from db.database import get_engine, get_session_factory
    from db.transcripts import TranscriptMetadataStore

    store = TranscriptMetadataStore(get_session_factory(get_engine(config.database_url)))
    if not store.soft_delete(episode_id):
        typer.echo(f"Error: No transcript found for episode {episode_id}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Transcript for episode {episode_id} reset")


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"podbrief v{__version__}")


if __name__ == "__main__":
    app()
