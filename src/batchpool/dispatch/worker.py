"""Workers execute one job at a time and always answer with a JobResult."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable, Mapping
from typing import IO, Any, Protocol

from batchpool.dispatch.computation import Computation, ComputationError, ComputationSpec
from batchpool.dispatch.failure_classifier import classify_transport_failure
from batchpool.dispatch.filesystem import FileSystem, LocalFileSystem
from batchpool.dispatch.models import (
    FailureClass,
    Job,
    JobResult,
    WorkerHandle,
    WorkerLocation,
)

logger = logging.getLogger(__name__)

AGENT_MODULE = "batchpool.dispatch.agent"
DEFAULT_SSH_COMMAND = (
    "ssh -o BatchMode=yes -o ConnectTimeout=15 -o ServerAliveInterval=15 -o ServerAliveCountMax=3"
)
DEFAULT_HEARTBEAT_SECONDS = 1.0
DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 10.0
_STDERR_TAIL_CHARS = 400

WorkerInitializer = Callable[[WorkerHandle, Mapping[str, Any]], None]


class WorkerUnreachable(RuntimeError):
    """Transport-level failure: the worker could not run or answer for a job."""

    def __init__(self, message: str, *, host: str | None = None, transient: bool = True) -> None:
        super().__init__(message)
        self.host = host
        self.transient = transient


class Worker(Protocol):
    """One execution slot."""

    handle: WorkerHandle

    def prepare(self) -> None:
        """Run the one-time initialization when the worker joins the pool."""

    def execute(self, job: Job) -> JobResult:
        """Run one job; job-level errors come back as a failure result."""


class LocalWorker:
    """Runs jobs in-process: read input, apply the computation, write output."""

    def __init__(
        self,
        handle: WorkerHandle,
        *,
        computation: Computation,
        filesystem: FileSystem | None = None,
        initializer: WorkerInitializer | None = None,
        init_config: Mapping[str, Any] | None = None,
    ) -> None:
        self.handle = handle
        self.computation = computation
        self.filesystem = filesystem or LocalFileSystem()
        self.initializer = initializer
        self.init_config = dict(init_config or {})

    def prepare(self) -> None:
        if self.initializer is not None:
            self.initializer(self.handle, self.init_config)

    def execute(self, job: Job) -> JobResult:
        started = time.monotonic()

        def _failed(reason: str, failure_class: FailureClass) -> JobResult:
            return JobResult.failure(
                job.job_id,
                reason,
                failure_class=failure_class,
                worker_id=self.handle.worker_id,
                duration_seconds=time.monotonic() - started,
            )

        try:
            data = self.filesystem.read(job.input_path)
        except FileNotFoundError:
            return _failed(f"input file not found: {job.input_path}", FailureClass.INPUT_ERROR)
        except OSError as error:
            return _failed(f"cannot read input: {error}", FailureClass.INPUT_ERROR)
        except Exception as error:  # noqa: BLE001
            return _failed(f"cannot read input: {_describe(error)}", FailureClass.INPUT_ERROR)

        try:
            output = self.computation(data)
        except ComputationError as error:
            return _failed(f"computation failed: {error}", FailureClass.COMPUTATION_ERROR)
        except Exception as error:  # noqa: BLE001
            return _failed(
                f"computation failed: {_describe(error)}",
                FailureClass.COMPUTATION_ERROR,
            )

        try:
            self.filesystem.write(job.output_path, output)
        except Exception as error:  # noqa: BLE001
            return _failed(f"cannot write output: {_describe(error)}", FailureClass.OUTPUT_ERROR)

        return JobResult.success(
            job.job_id,
            worker_id=self.handle.worker_id,
            duration_seconds=time.monotonic() - started,
        )


class RemoteWorker:
    """Runs jobs on a remote host by spawning the agent module over ssh.

    The remote side must see the same input/output paths (shared filesystem)
    and have ``batchpool`` importable by ``remote_python``.

    The agent prints a heartbeat line every ``heartbeat_seconds`` while a job
    runs; a transport that stays silent for ``heartbeat_timeout_seconds`` is
    killed and the host reported unreachable. ``0`` disables the heartbeat.
    """

    def __init__(  # noqa: PLR0913
        self,
        handle: WorkerHandle,
        *,
        computation_spec: ComputationSpec,
        ssh_command: str = DEFAULT_SSH_COMMAND,
        remote_python: str = "python3",
        job_timeout_seconds: float | None = None,
        connect_timeout_seconds: float = 30.0,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        initializer: WorkerInitializer | None = None,
        init_config: Mapping[str, Any] | None = None,
        run: Callable[..., subprocess.CompletedProcess[str]] | None = None,
    ) -> None:
        if handle.location is not WorkerLocation.REMOTE or not handle.host:
            raise ValueError(f"RemoteWorker requires a remote handle with a host: {handle!r}")
        if heartbeat_timeout_seconds > 0 and not 0 < heartbeat_seconds < heartbeat_timeout_seconds:
            raise ValueError("heartbeat_seconds must be > 0 and below heartbeat_timeout_seconds.")
        self.handle = handle
        self.host = handle.host
        self.computation_spec = computation_spec
        self.ssh_command = ssh_command
        self.remote_python = remote_python
        self.job_timeout_seconds = job_timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self.initializer = initializer
        self.init_config = dict(init_config or {})
        self._run = run or run_agent

    def prepare(self) -> None:
        """Check the agent is runnable on the host, then run the initializer."""

        completed = self._invoke(["--check"], timeout=self.connect_timeout_seconds)
        if completed.returncode != 0:
            classified = classify_transport_failure(
                exit_code=completed.returncode,
                stderr=completed.stderr,
            )
            logger.warning(
                "Remote agent check failed on %s: %s",
                self.host,
                classified.to_log_details(host=self.host),
            )
            raise WorkerUnreachable(
                f"agent check failed on {self.host}: {_tail(completed.stderr)}",
                host=self.host,
                transient=False,
            )
        if self.initializer is not None:
            self.initializer(self.handle, self.init_config)

    def execute(self, job: Job) -> JobResult:
        started = time.monotonic()
        completed = self._invoke(
            [
                "--job-id",
                str(job.job_id),
                "--input",
                str(job.input_path),
                "--output",
                str(job.output_path),
                *self.computation_spec.to_args(),
                *self._heartbeat_args(),
            ],
            timeout=self.job_timeout_seconds,
            idle_timeout=self.heartbeat_timeout_seconds or None,
        )
        duration = time.monotonic() - started

        payload = _parse_result_line(completed.stdout)
        if payload is not None:
            try:
                result = JobResult.from_payload(payload)
            except (TypeError, ValueError) as error:
                return JobResult.failure(
                    job.job_id,
                    f"malformed agent result from {self.host}: {error}",
                    failure_class=FailureClass.WORKER_ERROR,
                    worker_id=self.handle.worker_id,
                    duration_seconds=duration,
                )
            if result.job_id != job.job_id:
                return JobResult.failure(
                    job.job_id,
                    f"agent on {self.host} answered for job {result.job_id}",
                    failure_class=FailureClass.WORKER_ERROR,
                    worker_id=self.handle.worker_id,
                    duration_seconds=duration,
                )
            if result.succeeded:
                return JobResult.success(
                    job.job_id,
                    worker_id=self.handle.worker_id,
                    duration_seconds=duration,
                )
            return JobResult.failure(
                job.job_id,
                result.reason or "remote job failed",
                failure_class=result.failure_class or FailureClass.WORKER_ERROR,
                worker_id=self.handle.worker_id,
                duration_seconds=duration,
            )

        classified = classify_transport_failure(
            exit_code=completed.returncode,
            stderr=completed.stderr,
        )
        if classified.unreachable:
            logger.warning(
                "Remote worker %s unreachable: %s",
                self.handle.label,
                classified.to_log_details(host=self.host),
            )
            raise WorkerUnreachable(
                f"{self.host}: {_tail(completed.stderr) or classified.reason_code}",
                host=self.host,
            )
        return JobResult.failure(
            job.job_id,
            f"remote agent exited with code {completed.returncode}: "
            f"{_tail(completed.stderr) or 'no output'}",
            failure_class=classified.failure_class,
            worker_id=self.handle.worker_id,
            duration_seconds=duration,
        )

    def command_for(self, agent_args: list[str]) -> list[str]:
        """Full local argv that runs the agent on the host with ``agent_args``."""

        remote_argv = [*shlex.split(self.remote_python), "-m", AGENT_MODULE, *agent_args]
        return [*shlex.split(self.ssh_command), self.host, shlex.join(remote_argv)]

    def _heartbeat_args(self) -> list[str]:
        if not self.heartbeat_timeout_seconds:
            return []
        return ["--heartbeat-seconds", str(self.heartbeat_seconds)]

    def _invoke(
        self,
        agent_args: list[str],
        *,
        timeout: float | None,
        idle_timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        argv = self.command_for(agent_args)
        try:
            return self._run(argv, timeout=timeout, idle_timeout=idle_timeout)
        except FileNotFoundError as error:
            raise WorkerUnreachable(
                f"transport command not found: {argv[0]}",
                host=self.host,
                transient=False,
            ) from error
        except subprocess.TimeoutExpired as error:
            raise WorkerUnreachable(
                f"{self.host}: no answer within {error.timeout}s",
                host=self.host,
            ) from error
        except OSError as error:
            raise WorkerUnreachable(
                f"transport failed to start: {error}",
                host=self.host,
            ) from error


def run_agent(
    argv: list[str],
    *,
    timeout: float | None = None,
    idle_timeout: float | None = None,
    poll_seconds: float = 0.1,
) -> subprocess.CompletedProcess[str]:
    """Run a transport command and collect its output.

    The process is terminated once it runs longer than ``timeout`` or writes
    nothing to stdout for ``idle_timeout`` seconds; both raise
    :class:`subprocess.TimeoutExpired` carrying the limit that fired.
    """

    with (
        tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stdout_handle,
        tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stderr_handle,
    ):
        process = subprocess.Popen(  # noqa: S603
            argv,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        started = last_output = time.monotonic()
        seen = 0
        while True:
            returncode = process.poll()
            if returncode is not None:
                return subprocess.CompletedProcess(
                    argv,
                    returncode,
                    stdout=_read_back(stdout_handle),
                    stderr=_read_back(stderr_handle),
                )

            now = time.monotonic()
            size = os.fstat(stdout_handle.fileno()).st_size
            if size != seen:
                seen, last_output = size, now

            expired: float | None = None
            if timeout is not None and now - started >= timeout:
                expired = timeout
            elif idle_timeout is not None and now - last_output >= idle_timeout:
                expired = idle_timeout
            if expired is not None:
                _terminate_process(process)
                raise subprocess.TimeoutExpired(
                    argv,
                    expired,
                    output=_read_back(stdout_handle),
                    stderr=_read_back(stderr_handle),
                )

            time.sleep(poll_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_back(handle: IO[str]) -> str:
    handle.seek(0)
    return handle.read()


def _parse_result_line(stdout: str) -> dict[str, object] | None:
    for line in reversed(stdout.splitlines()):
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None
    return None


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _tail(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _STDERR_TAIL_CHARS:
        return stripped
    return "..." + stripped[-_STDERR_TAIL_CHARS:]
