"""CLI entrypoint for feed-importer."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from feed_importer import __version__
from feed_importer.importing.controllers import (
    FeedActivationCommand,
    FeedAddCommand,
    FeedImportCommand,
    FeedListCommand,
    ImportAllCommand,
    ImportCliController,
    ImportJobsCommand,
    ImportRunCommand,
    ImportShowCommand,
    ImportStatusCommand,
    ImportStopCommand,
    ProductHistoryCommand,
    ProductListCommand,
)
from feed_importer.importing.errors import FeedImportError
from feed_importer.importing.models import HistoryTimeframe, JobStatus

IMPORT_CONTROLLER = ImportCliController()

C = TypeVar("C")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="feed-importer")
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr.")
def feed_importer(verbose: bool) -> None:
    """Product feed import CLI."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@feed_importer.group()
def feeds() -> None:
    """Feed registration commands."""


@feeds.command("add")
@_db_path_option
@click.option("--name", required=True, help="Display name of the feed.")
@click.option("--url", required=True, help="CSV feed URL.")
@click.option(
    "--inactive",
    is_flag=True,
    help="Register the feed without enabling imports.",
)
def feeds_add(db_path: Path | None, name: str, url: str, inactive: bool) -> None:
    """Register a new CSV feed."""

    _run(
        IMPORT_CONTROLLER.add_feed,
        FeedAddCommand(db_path=db_path, name=name, url=url, activate=not inactive),
    )


@feeds.command("import")
@_db_path_option
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def feeds_import(db_path: Path | None, path: Path) -> None:
    """Register every feed listed in a CSV file with name, url and optional active columns."""

    _run(IMPORT_CONTROLLER.import_feeds, FeedImportCommand(db_path=db_path, path=path))


@feeds.command("list")
@_db_path_option
@click.option("--active-only", is_flag=True, help="Show only active feeds.")
def feeds_list(db_path: Path | None, active_only: bool) -> None:
    """List registered feeds."""

    _run(IMPORT_CONTROLLER.list_feeds, FeedListCommand(db_path=db_path, active_only=active_only))


@feeds.command("activate")
@_db_path_option
@click.argument("feed_id")
def feeds_activate(db_path: Path | None, feed_id: str) -> None:
    """Enable imports for a feed."""

    _run(
        IMPORT_CONTROLLER.set_feed_active,
        FeedActivationCommand(db_path=db_path, feed_id=feed_id, active=True),
    )


@feeds.command("deactivate")
@_db_path_option
@click.argument("feed_id")
def feeds_deactivate(db_path: Path | None, feed_id: str) -> None:
    """Disable imports for a feed."""

    _run(
        IMPORT_CONTROLLER.set_feed_active,
        FeedActivationCommand(db_path=db_path, feed_id=feed_id, active=False),
    )


@feed_importer.group()
def imports() -> None:
    """Import job commands."""


@imports.command("run")
@_db_path_option
@click.argument("feed_id")
def imports_run(db_path: Path | None, feed_id: str) -> None:
    """Import one feed in the foreground. Ctrl+C stops the import."""

    _run(IMPORT_CONTROLLER.run_import, ImportRunCommand(db_path=db_path, feed_id=feed_id))


@imports.command("all")
@_db_path_option
def imports_all(db_path: Path | None) -> None:
    """Import every active feed, least recently imported first."""

    _run(IMPORT_CONTROLLER.run_all, ImportAllCommand(db_path=db_path))


@imports.command("status")
@_db_path_option
def imports_status(db_path: Path | None) -> None:
    """Show current import activity and today's totals."""

    _run(IMPORT_CONTROLLER.status, ImportStatusCommand(db_path=db_path))


@imports.command("stop")
@_db_path_option
def imports_stop(db_path: Path | None) -> None:
    """Stop running and queued imports, including ones started by other processes."""

    _run(IMPORT_CONTROLLER.stop_imports, ImportStopCommand(db_path=db_path))


@imports.command("jobs")
@_db_path_option
@click.option("--feed-id", default=None, help="Only jobs of this feed.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs in this status.",
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=200), default=20, show_default=True)
def imports_jobs(  # noqa: PLR0913
    db_path: Path | None,
    feed_id: str | None,
    status: str | None,
    page: int,
    limit: int,
) -> None:
    """List import jobs, newest first."""

    _run(
        IMPORT_CONTROLLER.list_jobs,
        ImportJobsCommand(
            db_path=db_path,
            feed_id=feed_id,
            status=JobStatus(status) if status else None,
            page=page,
            limit=limit,
        ),
    )


@imports.command("show")
@_db_path_option
@click.argument("job_id")
def imports_show(db_path: Path | None, job_id: str) -> None:
    """Show one import job with its error details."""

    _run(IMPORT_CONTROLLER.show_job, ImportShowCommand(db_path=db_path, job_id=job_id))


@feed_importer.group()
def products() -> None:
    """Catalog commands."""


@products.command("list")
@_db_path_option
@click.argument("feed_id")
@click.option(
    "--active/--inactive",
    "active",
    default=None,
    help="Filter by active flag; both when omitted.",
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def products_list(
    db_path: Path | None,
    feed_id: str,
    active: bool | None,
    page: int,
    limit: int,
) -> None:
    """List catalog products of a feed."""

    _run(
        IMPORT_CONTROLLER.list_products,
        ProductListCommand(
            db_path=db_path,
            feed_id=feed_id,
            active=active,
            page=page,
            limit=limit,
        ),
    )


@products.command("history")
@_db_path_option
@click.argument("product_id")
@click.option(
    "--timeframe",
    type=click.Choice([timeframe.value for timeframe in HistoryTimeframe]),
    default=HistoryTimeframe.ALL.value,
    show_default=True,
)
def products_history(db_path: Path | None, product_id: str, timeframe: str) -> None:
    """Show the price history of a product."""

    _run(
        IMPORT_CONTROLLER.price_history,
        ProductHistoryCommand(
            db_path=db_path,
            product_id=product_id,
            timeframe=HistoryTimeframe(timeframe),
        ),
    )


def _run(handler: Callable[[C], list[str]], command: C) -> None:
    try:
        lines = handler(command)
    except (FeedImportError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    feed_importer()
