"""CLI entrypoint for draftsman."""

import logging
import os
from pathlib import Path

import rich_click as click

from draftsman import __version__
from draftsman.orchestrator.controllers import (
    DbCommand,
    DraftsmanCliController,
    JobAnswerCommand,
    JobListCommand,
    JobMutateCommand,
    JobSubmitCommand,
    QueueListCommand,
    WorkerRunCommand,
    WorkerServeCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DraftsmanCliController()
LANES = ("orchestration", "notifications")


@click.group()
@click.version_option(version=__version__, prog_name="draftsman")
def draftsman() -> None:
    """Durable orchestration of `@draftsman` ticket invocations."""

    logging.basicConfig(
        level=os.getenv("DRAFTSMAN_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@draftsman.group()
def jobs() -> None:
    """Submit, inspect and steer jobs."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--source", required=True, help="Originating channel, for example trello.")
@click.option("--event-id", required=True, help="Channel-native id of the triggering event.")
@click.option("--repo", required=True, help="Target repository, for example org/app.")
@click.option(
    "--text",
    required=True,
    help="Invocation text: `@draftsman investigate` or `@draftsman fix`.",
)
@click.option("--workspace-ref", default=None, help="Optional workspace reference.")
@click.option("--ticket-ref", default=None, help="Optional ticket reference.")
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    source: str,
    event_id: str,
    repo: str,
    text: str,
    workspace_ref: str | None,
    ticket_ref: str | None,
) -> None:
    """Accept one invocation; replays of the same event return the existing job."""

    _emit_lines(
        CONTROLLER.submit(
            JobSubmitCommand(
                db_path=db_path,
                source=source,
                event_id=event_id,
                repo=repo,
                text=text,
                workspace_ref=workspace_ref,
                ticket_ref=ticket_ref,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", default=None, help="Optional status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows to show.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(CONTROLLER.list_jobs(JobListCommand(db_path=db_path, status=status, limit=limit)))


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its questions and audit trail."""

    _emit_lines(CONTROLLER.inspect_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job; running jobs get a grace period to stop."""

    _emit_lines(CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("answer")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("question_id")
@click.option("--source", required=True, help="Channel the answer arrived on.")
@click.option("--responder", "responder_id", required=True, help="Responder id on that channel.")
@click.option("--event-id", required=True, help="Channel-native id of the answer event.")
@click.option("--text", required=True, help="Answer text.")
def jobs_answer(  # noqa: PLR0913
    db_path: Path | None,
    question_id: str,
    source: str,
    responder_id: str,
    event_id: str,
    text: str,
) -> None:
    """Answer an open question and resume its job."""

    _emit_lines(
        CONTROLLER.answer(
            JobAnswerCommand(
                db_path=db_path,
                question_id=question_id,
                source=source,
                responder_id=responder_id,
                event_id=event_id,
                text=text,
            ),
        ),
    )


@draftsman.group()
def worker() -> None:
    """Queue workers."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--lane",
    type=click.Choice(LANES),
    default="orchestration",
    show_default=True,
    help="Queue lane to consume.",
)
@click.option("--once/--loop", default=False, show_default=True, help="Process one message.")
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many messages.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    lane: str,
    once: bool,
    max_messages: int | None,
    max_idle_polls: int,
) -> None:
    """Run a single worker on one lane."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                lane=lane,
                once=once,
                max_messages=max_messages,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@worker.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--duration",
    "duration_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds (default: until SIGINT/SIGTERM).",
)
def worker_serve(db_path: Path | None, duration_seconds: float | None) -> None:
    """Run both lanes with their configured concurrency."""

    _emit_lines(
        CONTROLLER.serve(WorkerServeCommand(db_path=db_path, duration_seconds=duration_seconds)),
    )


@draftsman.group()
def queue() -> None:
    """Queue inspection."""


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--lane",
    type=click.Choice(LANES),
    default="orchestration",
    show_default=True,
    help="Queue lane to show.",
)
@click.option("--status", default=None, help="pending, leased, done or dead.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows to show.",
)
def queue_list(db_path: Path | None, lane: str, status: str | None, limit: int) -> None:
    """List queue messages of one lane."""

    _emit_lines(
        CONTROLLER.list_queue(
            QueueListCommand(db_path=db_path, lane=lane, status=status, limit=limit),
        ),
    )


@draftsman.group()
def expiry() -> None:
    """Question expiry timers."""


@expiry.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def expiry_reconcile(db_path: Path | None) -> None:
    """Re-create missing expiry timers for open questions."""

    _emit_lines(CONTROLLER.reconcile_expiry(DbCommand(db_path=db_path)))


@draftsman.command("modes")
def modes() -> None:
    """Show supported invocation modes."""

    _emit_lines(CONTROLLER.modes())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    draftsman()
