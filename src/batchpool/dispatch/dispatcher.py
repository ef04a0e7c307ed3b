"""Greedy dispatch of pending jobs onto a fixed pool of worker slots."""

from __future__ import annotations

import heapq
import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from batchpool.dispatch.models import (
    CANCELLED_REASON,
    NO_WORKERS_REASON,
    RETRYABLE_FAILURES,
    WORKER_UNREACHABLE_REASON,
    FailureClass,
    Job,
    JobResult,
    JobState,
)
from batchpool.dispatch.worker import Worker, WorkerUnreachable

logger = logging.getLogger(__name__)

ResultCallback = Callable[[JobResult], None]
ProgressCallback = Callable[[int, int], None]
SLOT_JOIN_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class _WorkerJoined:
    worker_id: int
    error: Exception | None


@dataclass(frozen=True, slots=True)
class _JobFinished:
    worker_id: int
    job_id: int
    attempt: int
    result: JobResult | None
    unreachable: WorkerUnreachable | None


@dataclass(slots=True)
class _InFlight:
    job: Job
    worker_id: int
    attempt: int
    deadline: float | None


@dataclass(frozen=True, slots=True)
class _Assignment:
    job: Job
    attempt: int


class _WorkerSlot:
    """Thread owning one worker; receives assignments through its inbox."""

    def __init__(self, worker: Worker, outbox: queue.Queue[_WorkerJoined | _JobFinished]) -> None:
        self.worker = worker
        self.worker_id = worker.handle.worker_id
        self._outbox = outbox
        self._inbox: queue.Queue[_Assignment | None] = queue.Queue()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"batchpool-{worker.handle.label}",
        )

    def start(self) -> None:
        self._thread.start()

    def submit(self, assignment: _Assignment) -> None:
        self._inbox.put(assignment)

    def stop(self) -> None:
        self._inbox.put(None)

    def join(self, timeout: float) -> bool:
        """Wait for the slot thread to exit; ``False`` if it is still running."""

        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _loop(self) -> None:
        try:
            self.worker.prepare()
        except Exception as error:  # noqa: BLE001
            self._outbox.put(_WorkerJoined(worker_id=self.worker_id, error=error))
            return
        self._outbox.put(_WorkerJoined(worker_id=self.worker_id, error=None))

        while True:
            assignment = self._inbox.get()
            if assignment is None:
                return
            self._outbox.put(self._run(assignment))

    def _run(self, assignment: _Assignment) -> _JobFinished:
        job = assignment.job
        try:
            result = self.worker.execute(job)
        except WorkerUnreachable as error:
            return _JobFinished(
                worker_id=self.worker_id,
                job_id=job.job_id,
                attempt=assignment.attempt,
                result=None,
                unreachable=error,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker %s raised while executing job %d", self.worker_id, job.job_id)
            result = JobResult.failure(
                job.job_id,
                f"worker error: {type(error).__name__}: {error}",
                failure_class=FailureClass.WORKER_ERROR,
                worker_id=self.worker_id,
            )
        return _JobFinished(
            worker_id=self.worker_id,
            job_id=job.job_id,
            attempt=assignment.attempt,
            result=result,
            unreachable=None,
        )


class Dispatcher:
    """Maps an ordered job sequence onto a fixed worker pool.

    At most one job is in flight per worker, pending jobs are handed out
    first-come-first-served, and an idle worker is immediately eligible for
    the next job. When several workers are idle the lowest job id goes to the
    lowest-numbered worker.

    ``job_timeout_seconds`` bounds how long a job may stay in flight; an
    overdue job fails with ``worker unreachable`` and its worker is excluded
    from further assignment, as happens when a worker raises
    :class:`WorkerUnreachable`. ``retry_attempts`` re-queues jobs whose failure
    is transient or caused by an unreachable worker, except jobs that hit
    the deadline: their execution may still be alive on the excluded worker.
    """

    def __init__(  # noqa: PLR0913
        self,
        workers: Sequence[Worker],
        *,
        job_timeout_seconds: float | None = None,
        join_timeout_seconds: float | None = 60.0,
        retry_attempts: int = 0,
        poll_interval_seconds: float = 0.2,
        on_result: ResultCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        worker_ids = [worker.handle.worker_id for worker in workers]
        if len(set(worker_ids)) != len(worker_ids):
            raise ValueError(f"Worker ids must be unique: {worker_ids}")
        if retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0.")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0.")
        self.workers = list(workers)
        self.job_timeout_seconds = job_timeout_seconds or None
        self.join_timeout_seconds = join_timeout_seconds
        self.retry_attempts = retry_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self._on_result = on_result or (lambda _result: None)
        self._on_progress = on_progress or (lambda _done, _total: None)

        self._lock = threading.Lock()
        self._outbox: queue.Queue[_WorkerJoined | _JobFinished] = queue.Queue()
        self._pending: deque[Job] = deque()
        self._idle: list[int] = []
        self._joining: set[int] = set()
        self._excluded: set[int] = set()
        self._in_flight: dict[int, _InFlight] = {}
        self._attempts: dict[int, int] = {}
        self._states: dict[int, JobState] = {}
        self._results: dict[int, JobResult] = {}
        self.completion_order: list[int] = []

    def job_states(self) -> dict[int, JobState]:
        """Snapshot of per-job lifecycle states."""

        with self._lock:
            return dict(self._states)

    @property
    def excluded_workers(self) -> set[int]:
        with self._lock:
            return set(self._excluded)

    def run(
        self,
        jobs: Sequence[Job],
        *,
        cancel_event: threading.Event | None = None,
    ) -> dict[int, JobResult]:
        """Drive every job to a terminal result and return results by job id."""

        job_ids = [job.job_id for job in jobs]
        if len(set(job_ids)) != len(job_ids):
            raise ValueError("Job ids must be unique within a batch.")
        cancel = cancel_event or threading.Event()
        total = len(jobs)
        with self._lock:
            self._pending = deque(jobs)
            self._states = {job.job_id: JobState.PENDING for job in jobs}
            self._attempts = {job.job_id: 0 for job in jobs}
            self._results = {}
            self._in_flight = {}
            self._idle = []
            self._excluded = set()
            self.completion_order = []
            self._outbox = queue.Queue()
        if not jobs:
            return {}

        slots = {
            worker.handle.worker_id: _WorkerSlot(worker, self._outbox) for worker in self.workers
        }
        with self._lock:
            self._joining = set(slots)
        join_deadline = (
            time.monotonic() + self.join_timeout_seconds
            if self.join_timeout_seconds is not None
            else None
        )
        for slot in slots.values():
            slot.start()
        logger.info("Dispatching %d job(s) to %d worker(s)", total, len(slots))

        try:
            while len(self._results) < total:
                now = time.monotonic()
                if join_deadline is not None and self._joining and now >= join_deadline:
                    self._give_up_joining()

                if cancel.is_set():
                    self._cancel_pending(total)
                elif not self._joining:
                    # First assignment waits for the whole pool so the initial
                    # job-to-worker mapping is deterministic.
                    self._dispatch(slots)
                    if not self._has_capacity() and self._pending:
                        self._fail_pending_without_workers(total)

                if len(self._results) >= total:
                    break

                try:
                    message = self._outbox.get(timeout=self.poll_interval_seconds)
                except queue.Empty:
                    message = None
                if message is not None:
                    self._handle(message, total, cancel)
                self._expire_overdue(total, cancel)
        finally:
            for slot in slots.values():
                slot.stop()
            self._join_slots(slots)

        return dict(self._results)

    def _join_slots(self, slots: dict[int, _WorkerSlot]) -> None:
        excluded = self.excluded_workers
        deadline = time.monotonic() + SLOT_JOIN_TIMEOUT_SECONDS
        for worker_id, slot in slots.items():
            # Excluded slots may still be stuck inside a hung job.
            if worker_id in excluded:
                continue
            if not slot.join(max(0.0, deadline - time.monotonic())):
                logger.warning(
                    "Worker %d did not shut down within %ss",
                    worker_id,
                    SLOT_JOIN_TIMEOUT_SECONDS,
                )

    def _has_capacity(self) -> bool:
        with self._lock:
            return bool(self._idle or self._in_flight or self._joining)

    def _give_up_joining(self) -> None:
        with self._lock:
            late = sorted(self._joining)
            self._excluded.update(late)
            self._joining.clear()
        for worker_id in late:
            logger.warning("Worker %d did not finish initialization in time; excluded", worker_id)

    def _dispatch(self, slots: dict[int, _WorkerSlot]) -> None:
        while True:
            claimed = self._claim_next()
            if claimed is None:
                return
            job, worker_id = claimed
            attempt = self._attempts[job.job_id]
            logger.debug("Job %d -> worker %d (attempt %d)", job.job_id, worker_id, attempt)
            slots[worker_id].submit(_Assignment(job=job, attempt=attempt))

    def _claim_next(self) -> tuple[Job, int] | None:
        with self._lock:
            if not self._pending or not self._idle:
                return None
            job = self._pending.popleft()
            worker_id = heapq.heappop(self._idle)
            attempt = self._attempts[job.job_id] + 1
            self._attempts[job.job_id] = attempt
            deadline = (
                time.monotonic() + self.job_timeout_seconds
                if self.job_timeout_seconds is not None
                else None
            )
            self._in_flight[job.job_id] = _InFlight(
                job=job,
                worker_id=worker_id,
                attempt=attempt,
                deadline=deadline,
            )
            self._states[job.job_id] = JobState.IN_FLIGHT
            return job, worker_id

    def _release_worker(self, worker_id: int) -> None:
        with self._lock:
            if worker_id in self._excluded or worker_id in self._idle:
                return
            if any(entry.worker_id == worker_id for entry in self._in_flight.values()):
                return
            heapq.heappush(self._idle, worker_id)

    def _exclude_worker(self, worker_id: int, reason: str) -> None:
        with self._lock:
            self._excluded.add(worker_id)
            if worker_id in self._idle:
                self._idle.remove(worker_id)
                heapq.heapify(self._idle)
        logger.warning("Worker %d excluded from the pool: %s", worker_id, reason)

    def _handle(
        self,
        message: _WorkerJoined | _JobFinished,
        total: int,
        cancel: threading.Event,
    ) -> None:
        if isinstance(message, _WorkerJoined):
            with self._lock:
                self._joining.discard(message.worker_id)
                excluded = message.worker_id in self._excluded
            if excluded:
                return
            if message.error is not None:
                self._exclude_worker(
                    message.worker_id,
                    f"initialization failed: {message.error}",
                )
                return
            logger.debug("Worker %d joined the pool", message.worker_id)
            self._release_worker(message.worker_id)
            return

        with self._lock:
            entry = self._in_flight.get(message.job_id)
            current = (
                entry is not None
                and entry.worker_id == message.worker_id
                and entry.attempt == message.attempt
            )
            if current:
                del self._in_flight[message.job_id]
        if not current or entry is None:
            logger.debug(
                "Discarding late result for job %d from worker %d",
                message.job_id,
                message.worker_id,
            )
            return

        if message.unreachable is not None:
            self._exclude_worker(message.worker_id, str(message.unreachable))
            result = JobResult.failure(
                message.job_id,
                WORKER_UNREACHABLE_REASON,
                failure_class=FailureClass.WORKER_UNREACHABLE,
                worker_id=message.worker_id,
            )
        else:
            self._release_worker(message.worker_id)
            result = message.result
            if result is None or result.job_id != message.job_id:
                result = JobResult.failure(
                    message.job_id,
                    "worker returned a result for a different job",
                    failure_class=FailureClass.WORKER_ERROR,
                    worker_id=message.worker_id,
                )
        self._settle(entry, result, total, cancel)

    def _expire_overdue(self, total: int, cancel: threading.Event) -> None:
        if self.job_timeout_seconds is None:
            return
        now = time.monotonic()
        with self._lock:
            overdue = [
                entry
                for entry in self._in_flight.values()
                if entry.deadline is not None and entry.deadline <= now
            ]
            for entry in overdue:
                del self._in_flight[entry.job.job_id]
        # An overdue execution may still be running, so the job is never re-queued.
        for entry in overdue:
            self._exclude_worker(
                entry.worker_id,
                f"job {entry.job.job_id} exceeded {self.job_timeout_seconds}s",
            )
            self._settle(
                entry,
                JobResult.failure(
                    entry.job.job_id,
                    WORKER_UNREACHABLE_REASON,
                    failure_class=FailureClass.WORKER_UNREACHABLE,
                    worker_id=entry.worker_id,
                ),
                total,
                cancel,
                retryable=False,
            )

    def _settle(  # noqa: PLR0913
        self,
        entry: _InFlight,
        result: JobResult,
        total: int,
        cancel: threading.Event,
        *,
        retryable: bool = True,
    ) -> None:
        job_id = entry.job.job_id
        if (
            retryable
            and not result.succeeded
            and result.failure_class in RETRYABLE_FAILURES
            and entry.attempt <= self.retry_attempts
            and not cancel.is_set()
        ):
            with self._lock:
                self._pending.append(entry.job)
                self._states[job_id] = JobState.PENDING
            logger.info(
                "Retrying job %d after attempt %d failed: %s",
                job_id,
                entry.attempt,
                result.reason,
            )
            return
        self._record(result.with_attempts(entry.attempt), total)

    def _record(self, result: JobResult, total: int) -> None:
        with self._lock:
            if result.job_id in self._results:
                raise RuntimeError(f"Job {result.job_id} already reached a terminal state.")
            self._results[result.job_id] = result
            self._states[result.job_id] = (
                JobState.SUCCEEDED if result.succeeded else JobState.FAILED
            )
            self.completion_order.append(result.job_id)
            done = len(self._results)
        self._on_result(result)
        self._on_progress(done, total)

    def _drain_pending(self) -> list[Job]:
        with self._lock:
            drained = list(self._pending)
            self._pending.clear()
        return drained

    def _cancel_pending(self, total: int) -> None:
        for job in self._drain_pending():
            self._record(
                JobResult.failure(
                    job.job_id,
                    CANCELLED_REASON,
                    failure_class=FailureClass.CANCELLED,
                    attempts=self._attempts[job.job_id],
                ),
                total,
            )

    def _fail_pending_without_workers(self, total: int) -> None:
        drained = self._drain_pending()
        if drained:
            logger.error("No reachable workers left; failing %d pending job(s)", len(drained))
        for job in drained:
            self._record(
                JobResult.failure(
                    job.job_id,
                    NO_WORKERS_REASON,
                    failure_class=FailureClass.NO_WORKERS,
                    attempts=self._attempts[job.job_id],
                ),
                total,
            )
