"""Controllers for batch CLI commands."""

from __future__ import annotations

import signal
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from batchpool.config import Settings
from batchpool.dispatch.coordinator import BatchCoordinator, LoggingProgressSink, build_workers
from batchpool.dispatch.models import WorkerHandle, WorkerLocation
from batchpool.dispatch.placement import build_worker_pool, get_worker_hosts
from batchpool.dispatch.report import render_report_lines, write_report


@dataclass(slots=True)
class RunBatchCommand:
    """CLI input for one batch run; ``None`` keeps the environment value."""

    input_dir: Path
    output_dir: Path
    workers: int | None = None
    hosts: tuple[str, ...] = ()
    hosts_file: Path | None = None
    computation: str | None = None
    column: str | None = None
    delay_seconds: float | None = None
    seed: int | None = None
    job_timeout_seconds: float | None = None
    retry_attempts: int | None = None
    report_path: Path | None = None
    progress_every: int = 1


@dataclass(slots=True)
class HostsCommand:
    """CLI input for worker pool inspection."""

    workers: int | None = None
    hosts: tuple[str, ...] = ()
    hosts_file: Path | None = None


@dataclass(slots=True)
class BatchRunResult:
    """Batch outcome to render in CLI."""

    lines: list[str]
    success: bool


class BatchCliController:
    """Coordinates settings, worker pool construction, and batch execution."""

    def run_batch(self, command: RunBatchCommand) -> BatchRunResult:
        settings = _settings_for(
            command.workers,
            command.hosts,
            command.hosts_file,
        )
        settings = _apply_run_overrides(settings, command)
        settings.validate()
        handles = _resolve_pool(settings)

        workers = build_workers(
            handles,
            computation_spec=settings.computation.to_spec(),
            ssh_command=settings.remote.ssh_command,
            remote_python=settings.remote.remote_python,
            job_timeout_seconds=settings.dispatch.job_timeout_seconds or None,
            connect_timeout_seconds=settings.remote.connect_timeout_seconds,
            heartbeat_seconds=settings.remote.heartbeat_seconds,
            heartbeat_timeout_seconds=settings.remote.heartbeat_timeout_seconds,
            init_config={"output_dir": str(command.output_dir)},
            initializer=_ensure_output_dir,
        )
        coordinator = BatchCoordinator(
            workers=workers,
            sink=LoggingProgressSink(every=command.progress_every),
            job_timeout_seconds=settings.dispatch.job_timeout_seconds or None,
            join_timeout_seconds=settings.dispatch.join_timeout_seconds,
            retry_attempts=settings.dispatch.retry_attempts,
            poll_interval_seconds=settings.dispatch.poll_interval_seconds,
        )
        with _signal_handlers(coordinator.cancel):
            report = coordinator.run(command.input_dir, command.output_dir)

        lines = [_pool_line(handles), *render_report_lines(report)]
        if command.report_path is not None:
            write_report(command.report_path, report)
            lines.append(f"Report: {command.report_path}")
        return BatchRunResult(lines=lines, success=report.ok)

    def list_hosts(self, command: HostsCommand) -> list[str]:
        settings = _settings_for(command.workers, command.hosts, command.hosts_file)
        settings.validate()
        handles = _resolve_pool(settings)
        return [_pool_line(handles), *(f"  {handle.label}" for handle in handles)]


def _settings_for(
    workers: int | None,
    hosts: tuple[str, ...],
    hosts_file: Path | None,
) -> Settings:
    settings = Settings.from_env()
    dispatch = settings.dispatch
    remote = settings.remote
    if workers is not None:
        dispatch = replace(dispatch, local_workers=workers)
    if hosts:
        remote = replace(remote, hosts=hosts, hosts_file=None)
    elif hosts_file is not None:
        remote = replace(remote, hosts=(), hosts_file=hosts_file)
    return replace(settings, dispatch=dispatch, remote=remote)


def _apply_run_overrides(settings: Settings, command: RunBatchCommand) -> Settings:
    dispatch = settings.dispatch
    computation = settings.computation
    if command.job_timeout_seconds is not None:
        dispatch = replace(dispatch, job_timeout_seconds=command.job_timeout_seconds)
    if command.retry_attempts is not None:
        dispatch = replace(dispatch, retry_attempts=command.retry_attempts)
    if command.computation is not None:
        computation = replace(computation, name=command.computation.lower())
    if command.column is not None:
        computation = replace(computation, column=command.column)
    if command.delay_seconds is not None:
        computation = replace(computation, delay_seconds=command.delay_seconds)
    if command.seed is not None:
        computation = replace(computation, seed=command.seed)
    return replace(settings, dispatch=dispatch, computation=computation)


def _resolve_pool(settings: Settings) -> list[WorkerHandle]:
    hosts = get_worker_hosts(settings.remote.hosts, hosts_file=settings.remote.hosts_file)
    handles = build_worker_pool(hosts, local_workers=settings.dispatch.local_workers)
    if not handles:
        raise ValueError(
            "No workers configured. Use --workers N, --host, --hosts-file, "
            "BATCHPOOL_WORKERS or BATCHPOOL_HOSTS.",
        )
    return handles


def _pool_line(handles: list[WorkerHandle]) -> str:
    local = sum(1 for handle in handles if handle.location is WorkerLocation.LOCAL)
    return f"Worker pool: {len(handles)} slot(s) ({local} local, {len(handles) - local} remote)"


def _ensure_output_dir(handle: WorkerHandle, config: Mapping[str, object]) -> None:
    if handle.location is WorkerLocation.LOCAL:
        Path(str(config["output_dir"])).mkdir(parents=True, exist_ok=True)


@contextmanager
def _signal_handlers(on_stop: Callable[[], None]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _: object | None) -> None:
        on_stop()

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
