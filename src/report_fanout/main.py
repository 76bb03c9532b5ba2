"""CLI entrypoint for report-fanout."""

import logging
from pathlib import Path

import rich_click as click

from report_fanout import __version__
from report_fanout.orchestrator.controllers import (
    MonitorsCommand,
    ReportFanoutCliController,
    ShowCommand,
    StatusCommand,
    SubmitCommand,
    TokenCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ReportFanoutCliController()


@click.group()
@click.version_option(version=__version__, prog_name="report-fanout")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def report_fanout(log_level: str) -> None:
    """Batch report fan-out orchestrator.

    Splits a CSV batch into per-row jobs on a **private queue**, runs them on an
    ephemeral worker and delivers one zip bundle.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@report_fanout.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["xlsx", "pdf"], case_sensitive=False),
    default="pdf",
    show_default=True,
    help="Output document format.",
)
def submit(db_path: Path | None, csv_path: Path, output_format: str) -> None:
    """Submit a CSV batch; returns at once with the report id."""

    _emit_lines(
        CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                csv_path=csv_path,
                output_format=output_format,
            ),
        ),
    )


@report_fanout.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max workloads and reports to print.",
)
@click.option(
    "--report-status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Only list reports in this status.",
)
def status(db_path: Path | None, limit: int, report_status: str | None) -> None:
    """List the most recently updated workloads and the most recent reports."""

    _emit_lines(
        CONTROLLER.status(
            StatusCommand(db_path=db_path, limit=limit, report_status=report_status),
        ),
    )


@report_fanout.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("token")
def show(db_path: Path | None, token: str) -> None:
    """Show one workload with its report, dead jobs and event history."""

    _emit_lines(CONTROLLER.show(ShowCommand(db_path=db_path, token=token)))


@report_fanout.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queue",
    "queue_names",
    multiple=True,
    help="Queue to drain. Can be repeated; omit to drain every queue.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Exit after this many consecutive empty polls (0 = run until signalled).",
)
def worker(
    db_path: Path | None,
    queue_names: tuple[str, ...],
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run a queue worker."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                queue_names=queue_names,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls or None,
            ),
        ),
    )


@report_fanout.group()
def monitors() -> None:
    """Recovery monitors."""


@monitors.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--loop/--once",
    default=False,
    show_default=True,
    help="Sweep once or keep sweeping every interval.",
)
@click.option(
    "--interval",
    "interval_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds between sweeps in loop mode (default from settings).",
)
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for sweeps in loop mode.",
)
def monitors_run(
    db_path: Path | None,
    loop: bool,
    interval_seconds: int | None,
    max_sweeps: int | None,
) -> None:
    """Run the dead-letter, idle and force-shutdown monitors."""

    _emit_lines(
        CONTROLLER.run_monitors(
            MonitorsCommand(
                db_path=db_path,
                loop=loop,
                interval_seconds=interval_seconds,
                max_sweeps=max_sweeps,
            ),
        ),
    )


@report_fanout.command("launch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("token")
def launch(db_path: Path | None, token: str) -> None:
    """Ensure a worker runs for TOKEN (no-op when one is already recorded)."""

    _emit_lines(CONTROLLER.launch(TokenCommand(db_path=db_path, token=token)))


@report_fanout.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="operator request", show_default=True, help="Stop reason.")
@click.option("--force", is_flag=True, help="Terminate when a plain stop does not confirm.")
@click.argument("token")
def stop(db_path: Path | None, reason: str, force: bool, token: str) -> None:
    """Stop the worker recorded for TOKEN."""

    _emit_lines(
        CONTROLLER.stop(TokenCommand(db_path=db_path, token=token, reason=reason, force=force)),
    )


@report_fanout.command("teardown")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="operator request", show_default=True, help="Teardown reason.")
@click.option("--force", is_flag=True, help="Terminate when a plain stop does not confirm.")
@click.argument("token")
def teardown(db_path: Path | None, reason: str, force: bool, token: str) -> None:
    """Release every resource held by TOKEN and fail its report."""

    _emit_lines(
        CONTROLLER.teardown(
            TokenCommand(db_path=db_path, token=token, reason=reason, force=force),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    report_fanout()
