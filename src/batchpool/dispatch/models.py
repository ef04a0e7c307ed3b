"""Domain models for batch jobs, worker handles, and batch reports."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

CANCELLED_REASON = "cancelled"
WORKER_UNREACHABLE_REASON = "worker unreachable"
NO_WORKERS_REASON = "no reachable workers"


class JobOutcome(str, Enum):
    """Terminal outcome of one job."""

    SUCCESS = "success"
    FAILURE = "failure"


class JobState(str, Enum):
    """Per-job lifecycle states tracked by the dispatcher."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {JobState.SUCCEEDED, JobState.FAILED}


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry option and the report."""

    INPUT_ERROR = "input_error"
    OUTPUT_ERROR = "output_error"
    COMPUTATION_ERROR = "computation_error"
    WORKER_UNREACHABLE = "worker_unreachable"
    TRANSIENT = "transient"
    WORKER_ERROR = "worker_error"
    CANCELLED = "cancelled"
    NO_WORKERS = "no_workers"


RETRYABLE_FAILURES = frozenset({FailureClass.TRANSIENT, FailureClass.WORKER_UNREACHABLE})


class WorkerLocation(str, Enum):
    """Where a worker slot executes its jobs."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True, slots=True)
class Job:
    """One unit of work: read ``input_path``, write ``output_path``."""

    job_id: int
    input_path: Path
    output_path: Path


@dataclass(frozen=True, slots=True)
class WorkerHandle:
    """Dispatcher reference to one execution slot."""

    worker_id: int
    location: WorkerLocation = WorkerLocation.LOCAL
    host: str | None = None

    @property
    def label(self) -> str:
        if self.location is WorkerLocation.REMOTE:
            return f"{self.host}#{self.worker_id}"
        return f"local#{self.worker_id}"


@dataclass(frozen=True, slots=True)
class JobResult:
    """Terminal result produced exactly once per job."""

    job_id: int
    outcome: JobOutcome
    reason: str | None = None
    failure_class: FailureClass | None = None
    worker_id: int | None = None
    attempts: int = 1
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is JobOutcome.SUCCESS

    @classmethod
    def success(
        cls,
        job_id: int,
        *,
        worker_id: int | None = None,
        duration_seconds: float = 0.0,
    ) -> JobResult:
        return cls(
            job_id=job_id,
            outcome=JobOutcome.SUCCESS,
            worker_id=worker_id,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failure(  # noqa: PLR0913
        cls,
        job_id: int,
        reason: str,
        *,
        failure_class: FailureClass,
        worker_id: int | None = None,
        attempts: int = 1,
        duration_seconds: float = 0.0,
    ) -> JobResult:
        return cls(
            job_id=job_id,
            outcome=JobOutcome.FAILURE,
            reason=reason,
            failure_class=failure_class,
            worker_id=worker_id,
            attempts=attempts,
            duration_seconds=duration_seconds,
        )

    def with_attempts(self, attempts: int) -> JobResult:
        return replace(self, attempts=attempts)

    def to_payload(self) -> dict[str, object]:
        """Serialize for the remote agent wire format and JSON reports."""

        return {
            "job_id": self.job_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "worker_id": self.worker_id,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 6),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> JobResult:
        """Deserialize and validate a result payload."""

        job_id = payload.get("job_id")
        outcome = payload.get("outcome")
        if not isinstance(job_id, int):
            raise TypeError("result.job_id must be an integer")
        if outcome not in {item.value for item in JobOutcome}:
            raise ValueError(f"result.outcome is invalid: {outcome!r}")
        reason = payload.get("reason")
        failure_class = payload.get("failure_class")
        duration = payload.get("duration_seconds", 0.0)
        return cls(
            job_id=job_id,
            outcome=JobOutcome(outcome),
            reason=str(reason) if reason is not None else None,
            failure_class=FailureClass(failure_class) if failure_class else None,
            worker_id=None,
            duration_seconds=float(duration) if isinstance(duration, int | float) else 0.0,
        )


@dataclass(slots=True)
class BatchReport:
    """Partition of a batch's jobs into succeeded and failed ids.

    ``succeeded`` and ``failed`` keep the order in which results were
    reported to the coordinator; :meth:`sorted` gives the id-ordered form.
    """

    total: int
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    results: dict[int, JobResult] = field(default_factory=dict)
    jobs: dict[int, Job] = field(default_factory=dict)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed

    def record(self, result: JobResult) -> None:
        """Add one terminal result; a job id is accepted only once."""

        if result.job_id in self.results:
            raise ValueError(f"Job {result.job_id} already has a terminal result.")
        self.results[result.job_id] = result
        if result.succeeded:
            self.succeeded.append(result.job_id)
        else:
            self.failed.append(result.job_id)

    def failed_inputs(self) -> list[tuple[Path, str]]:
        """Failed jobs mapped back to their input paths, in report order."""

        return [
            (self.jobs[job_id].input_path, self.results[job_id].reason or "unknown error")
            for job_id in self.failed
        ]

    def sorted(self) -> BatchReport:
        return replace(
            self,
            succeeded=sorted(self.succeeded),
            failed=sorted(self.failed),
            results=dict(self.results),
            jobs=dict(self.jobs),
        )
