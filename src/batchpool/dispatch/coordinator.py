"""Batch coordinator: enumerate jobs, drive the dispatcher, aggregate a report."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

from batchpool.dispatch.computation import ComputationSpec
from batchpool.dispatch.dispatcher import Dispatcher
from batchpool.dispatch.filesystem import FileSystem, enumerate_jobs
from batchpool.dispatch.models import BatchReport, Job, JobResult, WorkerHandle, WorkerLocation
from batchpool.dispatch.worker import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    DEFAULT_SSH_COMMAND,
    LocalWorker,
    RemoteWorker,
    Worker,
    WorkerInitializer,
)

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Write-only receiver of batch progress and the final report."""

    def update(self, done: int, total: int) -> None:
        """Record that ``done`` of ``total`` jobs reached a terminal result."""

    def finish(self, report: BatchReport) -> None:
        """Receive the finalized report."""


class NullProgressSink:
    """Discards progress updates."""

    def update(self, done: int, total: int) -> None:
        return None

    def finish(self, report: BatchReport) -> None:
        return None


class LoggingProgressSink:
    """Logs progress every ``every`` jobs and a summary line at the end."""

    def __init__(self, *, every: int = 1, log: logging.Logger | None = None) -> None:
        if every <= 0:
            raise ValueError("every must be > 0.")
        self.every = every
        self._log = log or logger

    def update(self, done: int, total: int) -> None:
        if done == total or done % self.every == 0:
            self._log.info("Progress: %d/%d job(s) done", done, total)

    def finish(self, report: BatchReport) -> None:
        self._log.info(
            "Batch finished: %d succeeded, %d failed, %d total in %.1fs",
            len(report.succeeded),
            len(report.failed),
            report.total,
            report.elapsed_seconds,
        )


def build_workers(  # noqa: PLR0913
    handles: Sequence[WorkerHandle],
    *,
    computation_spec: ComputationSpec,
    filesystem: FileSystem | None = None,
    ssh_command: str = DEFAULT_SSH_COMMAND,
    remote_python: str = "python3",
    job_timeout_seconds: float | None = None,
    connect_timeout_seconds: float = 30.0,
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    initializer: WorkerInitializer | None = None,
    init_config: Mapping[str, Any] | None = None,
) -> list[Worker]:
    """Create one worker per handle, sharing the pool-wide init config."""

    has_local = any(handle.location is WorkerLocation.LOCAL for handle in handles)
    computation = computation_spec.build() if has_local else None
    workers: list[Worker] = []
    for handle in handles:
        if handle.location is WorkerLocation.REMOTE:
            workers.append(
                RemoteWorker(
                    handle,
                    computation_spec=computation_spec,
                    ssh_command=ssh_command,
                    remote_python=remote_python,
                    job_timeout_seconds=job_timeout_seconds,
                    connect_timeout_seconds=connect_timeout_seconds,
                    heartbeat_seconds=heartbeat_seconds,
                    heartbeat_timeout_seconds=heartbeat_timeout_seconds,
                    initializer=initializer,
                    init_config=init_config,
                ),
            )
            continue
        if computation is None:  # pragma: no cover
            raise RuntimeError("Local worker requested without a computation.")
        workers.append(
            LocalWorker(
                handle,
                computation=computation,
                filesystem=filesystem,
                initializer=initializer,
                init_config=init_config,
            ),
        )
    return workers


class BatchCoordinator:
    """Runs exactly one batch over a fixed worker pool.

    ``cancel`` may be called from any thread (or a signal handler): nothing
    new is dispatched, in-flight jobs finish, and never-dispatched jobs are
    reported as ``cancelled``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        workers: Sequence[Worker],
        sink: ProgressSink | None = None,
        filesystem: FileSystem | None = None,
        job_timeout_seconds: float | None = None,
        join_timeout_seconds: float | None = 60.0,
        retry_attempts: int = 0,
        poll_interval_seconds: float = 0.2,
    ) -> None:
        self.workers = list(workers)
        self.sink = sink or NullProgressSink()
        self.filesystem = filesystem
        self.job_timeout_seconds = job_timeout_seconds
        self.join_timeout_seconds = join_timeout_seconds
        self.retry_attempts = retry_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Request a graceful stop of the running batch."""

        if not self._cancel.is_set():
            logger.warning("Cancellation requested; draining in-flight jobs")
        self._cancel.set()

    def run(self, input_dir: Path, output_dir: Path) -> BatchReport:
        """Process every file of ``input_dir`` into ``output_dir``.

        Raises:
            DirectoryNotFound: before any job is dispatched.
        """

        jobs = enumerate_jobs(input_dir, output_dir, filesystem=self.filesystem)
        return self.run_jobs(jobs)

    def run_jobs(self, jobs: Sequence[Job]) -> BatchReport:
        """Drive ``jobs`` to completion and build the report."""

        report = BatchReport(total=len(jobs), jobs={job.job_id: job for job in jobs})

        def _on_result(result: JobResult) -> None:
            report.record(result)
            if not result.succeeded:
                logger.debug("Job %d failed: %s", result.job_id, result.reason)

        dispatcher = Dispatcher(
            self.workers,
            job_timeout_seconds=self.job_timeout_seconds,
            join_timeout_seconds=self.join_timeout_seconds,
            retry_attempts=self.retry_attempts,
            poll_interval_seconds=self.poll_interval_seconds,
            on_result=_on_result,
            on_progress=self.sink.update,
        )
        started = time.monotonic()
        dispatcher.run(jobs, cancel_event=self._cancel)
        report.elapsed_seconds = time.monotonic() - started
        report.cancelled = self._cancel.is_set()

        if len(report.succeeded) + len(report.failed) != report.total:
            raise RuntimeError(
                f"Batch report is incomplete: {len(report.results)} of {report.total} results.",
            )
        for input_path, reason in report.failed_inputs():
            logger.warning("Failed to process %s: %s", input_path, reason)
        self.sink.finish(report)
        return report
