"""CLI entrypoint for batchpool."""

import logging
from pathlib import Path

import rich_click as click

from batchpool import __version__
from batchpool.dispatch.computation import SUPPORTED_COMPUTATIONS
from batchpool.dispatch.controllers import BatchCliController, HostsCommand, RunBatchCommand
from batchpool.dispatch.filesystem import DirectoryNotFound

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="batchpool")
@click.option("--verbose/--quiet", default=False, help="Enable debug logging.")
def batchpool(verbose: bool) -> None:
    """Run one batch of file-processing jobs over local and remote workers."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@batchpool.command("run")
@click.argument("input_dir", type=click.Path(path_type=Path))
@click.argument("output_dir", type=click.Path(path_type=Path))
@click.option(
    "--workers",
    type=click.IntRange(min=0),
    default=None,
    help="Local worker slots. Defaults to BATCHPOOL_WORKERS or the CPU count.",
)
@click.option(
    "--host",
    "hosts",
    multiple=True,
    help="Remote worker host, `host` or `host:N`. Can be repeated.",
)
@click.option(
    "--hosts-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Node file with one host per line (repeat a host for more slots).",
)
@click.option(
    "--computation",
    type=click.Choice(list(SUPPORTED_COMPUTATIONS), case_sensitive=False),
    default=None,
    help="Per-file computation. Defaults to BATCHPOOL_COMPUTATION or random-column.",
)
@click.option("--column", default=None, help="Column appended by random-column.")
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Extra per-job delay emulating a long computation.",
)
@click.option("--seed", type=int, default=None, help="Seed for reproducible random columns.")
@click.option(
    "--job-timeout-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Fail a job as `worker unreachable` after this long in flight (0 disables).",
)
@click.option(
    "--retry-attempts",
    type=click.IntRange(min=0, max=10),
    default=None,
    help="Re-run transient or unreachable-worker failures up to N more times.",
)
@click.option(
    "--report-path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the JSON batch report to this file.",
)
@click.option(
    "--progress-every",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Log progress after every N finished jobs.",
)
def run_batch(  # noqa: PLR0913
    input_dir: Path,
    output_dir: Path,
    workers: int | None,
    hosts: tuple[str, ...],
    hosts_file: Path | None,
    computation: str | None,
    column: str | None,
    delay_seconds: float | None,
    seed: int | None,
    job_timeout_seconds: float | None,
    retry_attempts: int | None,
    report_path: Path | None,
    progress_every: int,
) -> None:
    """Process every file of INPUT_DIR into OUTPUT_DIR; exit non-zero if any job failed."""

    try:
        result = BATCH_CONTROLLER.run_batch(
            RunBatchCommand(
                input_dir=input_dir,
                output_dir=output_dir,
                workers=workers,
                hosts=hosts,
                hosts_file=hosts_file,
                computation=computation,
                column=column,
                delay_seconds=delay_seconds,
                seed=seed,
                job_timeout_seconds=job_timeout_seconds,
                retry_attempts=retry_attempts,
                report_path=report_path,
                progress_every=progress_every,
            ),
        )
    except (DirectoryNotFound, ValueError) as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Batch finished with failed jobs.")


@batchpool.command("hosts")
@click.option("--workers", type=click.IntRange(min=0), default=None, help="Local worker slots.")
@click.option("--host", "hosts", multiple=True, help="Remote worker host. Can be repeated.")
@click.option(
    "--hosts-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Node file with one host per line.",
)
def show_hosts(workers: int | None, hosts: tuple[str, ...], hosts_file: Path | None) -> None:
    """Show the worker pool a run would use."""

    try:
        lines = BATCH_CONTROLLER.list_hosts(
            HostsCommand(workers=workers, hosts=hosts, hosts_file=hosts_file),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batchpool()
