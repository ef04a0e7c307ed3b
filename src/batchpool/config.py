"""Runtime configuration for batch dispatch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from batchpool.dispatch.computation import SUPPORTED_COMPUTATIONS, ComputationSpec
from batchpool.dispatch.worker import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    DEFAULT_SSH_COMMAND,
)


def _default_local_workers() -> int:
    return os.cpu_count() or 1


@dataclass(slots=True)
class DispatchSettings:
    """Worker pool and scheduling settings."""

    local_workers: int = field(default_factory=_default_local_workers)
    job_timeout_seconds: float = 0.0
    join_timeout_seconds: float = 60.0
    retry_attempts: int = 0
    poll_interval_seconds: float = 0.2


@dataclass(slots=True)
class RemoteSettings:
    """Remote worker transport settings."""

    hosts: tuple[str, ...] = ()
    hosts_file: Path | None = None
    ssh_command: str = DEFAULT_SSH_COMMAND
    remote_python: str = "python3"
    connect_timeout_seconds: float = 30.0
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS


@dataclass(slots=True)
class ComputationSettings:
    """Per-job computation settings."""

    name: str = "random-column"
    column: str = "new"
    delay_seconds: float = 0.0
    seed: int | None = None

    def to_spec(self) -> ComputationSpec:
        return ComputationSpec(
            name=self.name,
            column=self.column,
            delay_seconds=self.delay_seconds,
            seed=self.seed,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    computation: ComputationSettings = field(default_factory=ComputationSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``BATCHPOOL_*`` environment variables."""

        hosts_file = os.getenv("BATCHPOOL_HOSTS_FILE", "").strip()
        return cls(
            dispatch=DispatchSettings(
                local_workers=_env_int("BATCHPOOL_WORKERS", _default_local_workers()),
                job_timeout_seconds=_env_float("BATCHPOOL_JOB_TIMEOUT_SECONDS", 0.0),
                join_timeout_seconds=_env_float("BATCHPOOL_JOIN_TIMEOUT_SECONDS", 60.0),
                retry_attempts=_env_int("BATCHPOOL_RETRY_ATTEMPTS", 0),
                poll_interval_seconds=_env_float("BATCHPOOL_POLL_INTERVAL_SECONDS", 0.2),
            ),
            remote=RemoteSettings(
                hosts=_collect_hosts(),
                hosts_file=Path(hosts_file) if hosts_file else None,
                ssh_command=os.getenv("BATCHPOOL_SSH_COMMAND", DEFAULT_SSH_COMMAND),
                remote_python=os.getenv("BATCHPOOL_REMOTE_PYTHON", "python3"),
                connect_timeout_seconds=_env_float("BATCHPOOL_CONNECT_TIMEOUT_SECONDS", 30.0),
                heartbeat_seconds=_env_float(
                    "BATCHPOOL_HEARTBEAT_SECONDS",
                    DEFAULT_HEARTBEAT_SECONDS,
                ),
                heartbeat_timeout_seconds=_env_float(
                    "BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS",
                    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
                ),
            ),
            computation=ComputationSettings(
                name=os.getenv("BATCHPOOL_COMPUTATION", "random-column").strip().lower(),
                column=os.getenv("BATCHPOOL_COLUMN", "new"),
                delay_seconds=_env_float("BATCHPOOL_DELAY_SECONDS", 0.0),
                seed=_env_optional_int("BATCHPOOL_SEED"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the dispatcher cannot honor."""

        if self.dispatch.local_workers < 0:
            raise ValueError("BATCHPOOL_WORKERS must be >= 0.")
        if self.dispatch.job_timeout_seconds < 0:
            raise ValueError("BATCHPOOL_JOB_TIMEOUT_SECONDS must be >= 0.")
        if self.dispatch.join_timeout_seconds <= 0:
            raise ValueError("BATCHPOOL_JOIN_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.retry_attempts < 0:
            raise ValueError("BATCHPOOL_RETRY_ATTEMPTS must be >= 0.")
        if self.dispatch.poll_interval_seconds <= 0:
            raise ValueError("BATCHPOOL_POLL_INTERVAL_SECONDS must be > 0.")
        if not self.remote.ssh_command.strip():
            raise ValueError("BATCHPOOL_SSH_COMMAND must not be empty.")
        if not self.remote.remote_python.strip():
            raise ValueError("BATCHPOOL_REMOTE_PYTHON must not be empty.")
        if self.remote.connect_timeout_seconds <= 0:
            raise ValueError("BATCHPOOL_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if self.remote.heartbeat_timeout_seconds < 0:
            raise ValueError("BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS must be >= 0.")
        if self.remote.heartbeat_timeout_seconds and not (
            0 < self.remote.heartbeat_seconds < self.remote.heartbeat_timeout_seconds
        ):
            raise ValueError(
                "BATCHPOOL_HEARTBEAT_SECONDS must be > 0 and below "
                "BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS.",
            )
        if self.computation.name not in SUPPORTED_COMPUTATIONS:
            raise ValueError(
                f"Unsupported BATCHPOOL_COMPUTATION: {self.computation.name!r}. "
                f"Expected one of: {', '.join(SUPPORTED_COMPUTATIONS)}.",
            )
        if not self.computation.column.strip():
            raise ValueError("BATCHPOOL_COLUMN must not be empty.")
        if self.computation.delay_seconds < 0:
            raise ValueError("BATCHPOOL_DELAY_SECONDS must be >= 0.")


def _collect_hosts() -> tuple[str, ...]:
    raw = os.getenv("BATCHPOOL_HOSTS", "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return _env_int(name, 0)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
