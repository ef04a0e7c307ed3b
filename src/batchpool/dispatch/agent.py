"""Remote worker entry point: run one job and print its result as a JSON line."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from batchpool import __version__
from batchpool.dispatch.computation import SUPPORTED_COMPUTATIONS, ComputationSpec
from batchpool.dispatch.models import Job, WorkerHandle
from batchpool.dispatch.worker import LocalWorker


def main(argv: list[str] | None = None) -> int:
    """Execute one job with a local worker; job failures still exit 0."""

    parser = argparse.ArgumentParser(prog="batchpool-agent")
    parser.add_argument("--check", action="store_true", help="Report readiness and exit.")
    parser.add_argument("--job-id", type=int)
    parser.add_argument("--input", type=Path)
    parser.add_argument("--output", type=Path)
    parser.add_argument("--computation", default="random-column", choices=SUPPORTED_COMPUTATIONS)
    parser.add_argument("--column", default="new")
    parser.add_argument("--delay-seconds", type=float, default=0.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--heartbeat-seconds",
        type=float,
        default=0.0,
        help="Print a heartbeat line this often while the job runs (0 disables).",
    )
    args = parser.parse_args(argv)

    if args.check:
        print(json.dumps({"status": "ok", "version": __version__}))
        return 0

    if args.job_id is None or args.input is None or args.output is None:
        parser.error("--job-id, --input and --output are required unless --check is given")

    spec = ComputationSpec(
        name=args.computation,
        column=args.column,
        delay_seconds=args.delay_seconds,
        seed=args.seed,
    )
    try:
        computation = spec.build()
    except ValueError as error:
        print(f"Invalid computation settings: {error}", file=sys.stderr)
        return 2

    worker = LocalWorker(WorkerHandle(worker_id=0), computation=computation)
    job = Job(job_id=args.job_id, input_path=args.input, output_path=args.output)
    with _heartbeat(args.heartbeat_seconds):
        result = worker.execute(job)
    print(json.dumps(result.to_payload(), sort_keys=True))
    return 0


@contextmanager
def _heartbeat(interval_seconds: float) -> Iterator[None]:
    if interval_seconds <= 0:
        yield
        return

    stop = threading.Event()

    def _beat() -> None:
        while not stop.wait(interval_seconds):
            print("heartbeat", flush=True)

    beater = threading.Thread(target=_beat, daemon=True, name="batchpool-heartbeat")
    beater.start()
    try:
        yield
    finally:
        stop.set()
        beater.join()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
