"""Command line entry point for the Audio Articles service."""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console

from app.bootstrap import cleanup_temp_files, initialize_app
from app.logging_utils import build_default_handlers, configure_logging
from app.player import ArticleApiClient, ArticleApiError, Player
from app.services.durations import format_duration
from app.services.live_duration import FfprobeMediaDecoder, LiveDurationMeasurer, PlaybackError
from app.services.repair import bulk_fix_durations
from app.services.storage import ArticleRepository
from app.ui.durations import DurationReportUI
from app.web import create_app
from app.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("audio_articles.cli")


cli = typer.Typer(add_completion=False, help="Audio Articles management commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_default_handlers(storage_root))


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="AUDIO_ARTICLES_ROOT_PATH",
    ),
) -> None:
    """Run the articles API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = ArticleRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    server.run()


@cli.command()
def durations(
    suspicious: bool = typer.Option(
        False,
        "--suspicious",
        help="Only list articles whose stored duration looks like a fallback value.",
    ),
) -> None:
    """Show stored article durations and how they were obtained."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = ArticleRepository(config)
    DurationReportUI(repository).run(suspicious_only=suspicious)


@cli.command("bulk-fix")
def bulk_fix(
    timeout: float = typer.Option(30.0, help="Seconds to wait for each stream probe"),
) -> None:
    """Re-measure every article with a suspicious stored duration."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = ArticleRepository(config)
    measurer = LiveDurationMeasurer(FfprobeMediaDecoder(timeout=timeout))
    summary = bulk_fix_durations(repository, measurer)
    DurationReportUI(repository).render_sweep(summary)


@cli.command("cleanup-temp")
def cleanup_temp(
    max_age: float = typer.Option(3600.0, help="Remove temp files older than this many seconds"),
) -> None:
    """Delete stale temporary upload files."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    removed = cleanup_temp_files(config.temp_root, max_age_seconds=max_age)
    typer.echo(f"Removed {removed} temp file(s) from {config.temp_root}")


@cli.command()
def play(
    article_id: str = typer.Argument(..., help="Identifier of the article to load"),
    api_url: str = typer.Option(
        "http://127.0.0.1:8000",
        help="Base URL of the articles API",
        envvar="AUDIO_ARTICLES_API_URL",
    ),
    token: Optional[str] = typer.Option(
        None,
        help="Admin token used for duration backfills",
        envvar="AUDIO_ARTICLES_ADMIN_TOKEN",
    ),
) -> None:
    """Load an article like a player would and report its reconciled duration."""

    configure_logging()
    console = Console()
    with ArticleApiClient(api_url, token=token) as client:
        try:
            article = client.get_article(article_id)
        except ArticleApiError as error:
            typer.echo(f"Could not fetch article: {error}", err=True)
            raise typer.Exit(code=1) from error

        player = Player(LiveDurationMeasurer(FfprobeMediaDecoder()), client)
        try:
            loaded = player.load(article)
        except PlaybackError as error:
            typer.echo(f"Playback failed ({error.kind}): {error}", err=True)
            raise typer.Exit(code=1) from error
        finally:
            player.reconciler.wait()
            player.close()

    decision = loaded.decision
    console.print(f"[bold]{article.get('title', article_id)}[/bold]")
    console.print(f"Stored duration: {format_duration(loaded.session.stored_seconds)}")
    console.print(f"Displayed duration: {format_duration(loaded.display_seconds)}")
    if decision is not None and decision.backfill:
        console.print("[yellow]Stored duration was corrected from the live stream.[/yellow]")


if __name__ == "__main__":
    cli()
