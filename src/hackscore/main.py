"""CLI entrypoint for hackscore."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from hackscore import __version__
from hackscore.orchestrator.controllers import (
    BatchCreateCommand,
    BatchListCommand,
    BatchShowCommand,
    OrchestratorCliController,
    QueueArchivedCommand,
    QueueStatsCommand,
    RepositoryCommand,
    SecretSetCommand,
    WorkerPollCommand,
    WorkerProcessCommand,
    WorkerRunCommand,
)
from hackscore.orchestrator.errors import OrchestrationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_owner_option = click.option("--owner", "owner_id", required=True, help="Owner id of the batch.")
_batch_option = click.option("--batch-id", required=True, help="Batch id.")


@click.group()
@click.version_option(version=__version__, prog_name="hackscore")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv("HACKSCORE_LOG_LEVEL", "INFO"),
    show_default="INFO",
    help="Logging level, also read from HACKSCORE_LOG_LEVEL.",
)
def hackscore(log_level: str) -> None:
    """Repository evaluation queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@hackscore.group()
def batch() -> None:
    """Batch commands."""


@batch.command("create")
@_db_path_option
@_owner_option
@click.option("--name", required=True, help="Batch name, unique per owner.")
@click.option(
    "--repo",
    "repositories",
    multiple=True,
    required=True,
    help="Repository identifier such as `owner/name`. Can be repeated.",
)
@click.option(
    "--rubric-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON rubric with a `criteria` list. Defaults to the four-criterion rubric.",
)
@click.option(
    "--trigger/--no-trigger",
    default=None,
    help="Start a detached worker after enqueueing. Defaults to HACKSCORE_TRIGGER_ON_ENQUEUE.",
)
def batch_create(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    name: str,
    repositories: tuple[str, ...],
    rubric_file: Path | None,
    trigger: bool | None,
) -> None:
    """Create a batch and enqueue one job per repository."""

    _run(
        lambda: CONTROLLER.create_batch(
            BatchCreateCommand(
                db_path=db_path,
                owner_id=owner_id,
                name=name,
                repositories=repositories,
                rubric_path=rubric_file,
                trigger=trigger,
            ),
        ),
    )


@batch.command("list")
@_db_path_option
@_owner_option
def batch_list(db_path: Path | None, owner_id: str) -> None:
    """List batches of an owner with their rollups."""

    _run(lambda: CONTROLLER.list_batches(BatchListCommand(db_path=db_path, owner_id=owner_id)))


@batch.command("show")
@_db_path_option
@_owner_option
@_batch_option
def batch_show(db_path: Path | None, owner_id: str, batch_id: str) -> None:
    """Show a batch with its jobs and per-criterion results."""

    _run(
        lambda: CONTROLLER.show_batch(
            BatchShowCommand(db_path=db_path, owner_id=owner_id, batch_id=batch_id),
        ),
    )


@batch.command("add-repo")
@_db_path_option
@_owner_option
@_batch_option
@click.option("--repo", "repository", required=True, help="Repository to add.")
def batch_add_repo(db_path: Path | None, owner_id: str, batch_id: str, repository: str) -> None:
    """Add a new repository to an existing batch."""

    _run(
        lambda: CONTROLLER.add_repository(
            RepositoryCommand(
                db_path=db_path,
                owner_id=owner_id,
                batch_id=batch_id,
                repository=repository,
            ),
        ),
    )


@batch.command("retry-repo")
@_db_path_option
@_owner_option
@_batch_option
@click.option("--repo", "repository", required=True, help="Repository to evaluate again.")
def batch_retry_repo(db_path: Path | None, owner_id: str, batch_id: str, repository: str) -> None:
    """Queue a fresh evaluation of a repository already in the batch."""

    _run(
        lambda: CONTROLLER.retry_repository(
            RepositoryCommand(
                db_path=db_path,
                owner_id=owner_id,
                batch_id=batch_id,
                repository=repository,
            ),
        ),
    )


@batch.command("remove-repo")
@_db_path_option
@_owner_option
@_batch_option
@click.option("--repo", "repository", required=True, help="Repository to remove.")
def batch_remove_repo(db_path: Path | None, owner_id: str, batch_id: str, repository: str) -> None:
    """Delete a repository's jobs and results from the batch."""

    _run(
        lambda: CONTROLLER.remove_repository(
            RepositoryCommand(
                db_path=db_path,
                owner_id=owner_id,
                batch_id=batch_id,
                repository=repository,
            ),
        ),
    )


@batch.command("delete")
@_db_path_option
@_owner_option
@_batch_option
def batch_delete(db_path: Path | None, owner_id: str, batch_id: str) -> None:
    """Delete a batch with its jobs, results and queued messages."""

    _run(
        lambda: CONTROLLER.delete_batch(
            BatchShowCommand(db_path=db_path, owner_id=owner_id, batch_id=batch_id),
        ),
    )


@hackscore.group()
def worker() -> None:
    """Worker commands."""


@worker.command("poll")
@_db_path_option
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many messages even if the queue is not empty.",
)
def worker_poll(db_path: Path | None, max_messages: int | None) -> None:
    """Drain the queue once and print the summary."""

    _run(
        lambda: CONTROLLER.poll(WorkerPollCommand(db_path=db_path, max_messages=max_messages)),
    )


@worker.command("run")
@_db_path_option
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=60.0,
    show_default=True,
    help="Seconds to wait between drain cycles.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many drain cycles.",
)
def worker_run(db_path: Path | None, interval_seconds: float, max_cycles: int | None) -> None:
    """Drain the queue periodically until interrupted."""

    _run(
        lambda: CONTROLLER.run(
            WorkerRunCommand(
                db_path=db_path,
                interval_seconds=interval_seconds,
                max_cycles=max_cycles,
            ),
        ),
    )


@worker.command("process")
@_db_path_option
@click.option("--job-id", required=True, help="Job id to evaluate now, bypassing the queue.")
def worker_process(db_path: Path | None, job_id: str) -> None:
    """Evaluate one job directly."""

    _run(lambda: CONTROLLER.process_job(WorkerProcessCommand(db_path=db_path, job_id=job_id)))


@hackscore.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
@_db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show queue length, lease split and message ages."""

    _run(lambda: CONTROLLER.queue_stats(QueueStatsCommand(db_path=db_path)))


@queue.command("archived")
@_db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="How many archived messages to print.",
)
def queue_archived(db_path: Path | None, limit: int) -> None:
    """List recently archived messages."""

    _run(lambda: CONTROLLER.queue_archived(QueueArchivedCommand(db_path=db_path, limit=limit)))


@hackscore.group()
def secrets() -> None:
    """Credential commands."""


@secrets.command("set")
@_db_path_option
@_owner_option
@click.option(
    "--type",
    "secret_type",
    type=click.Choice(["anthropic_key", "github_token"]),
    required=True,
    help="Secret kind.",
)
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
def secrets_set(db_path: Path | None, owner_id: str, secret_type: str, value: str) -> None:
    """Save a credential used when evaluating the owner's repositories."""

    _run(
        lambda: CONTROLLER.set_secret(
            SecretSetCommand(
                db_path=db_path,
                owner_id=owner_id,
                secret_type=secret_type,
                value=value,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    hackscore()
