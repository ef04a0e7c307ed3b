"""Rendering and persistence of batch reports."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from batchpool.dispatch.models import BatchReport

REPORT_CONTRACT_VERSION = 1


def render_report_lines(report: BatchReport) -> list[str]:
    """Human-readable summary with every failed input and its reason."""

    lines = [
        "Batch summary: "
        f"total={report.total} succeeded={len(report.succeeded)} failed={len(report.failed)} "
        f"elapsed={report.elapsed_seconds:.1f}s",
    ]
    if report.cancelled:
        lines.append("Batch was cancelled; undispatched jobs are reported as failed.")
    failed = report.failed_inputs()
    if failed:
        lines.append("Failed inputs:")
        lines.extend(f"  {path}: {reason}" for path, reason in failed)
    return lines


def report_payload(report: BatchReport) -> dict[str, Any]:
    """Deterministic JSON-ready form of a report (job ids in ascending order)."""

    ordered = report.sorted()
    return {
        "contract_version": REPORT_CONTRACT_VERSION,
        "total": ordered.total,
        "cancelled": ordered.cancelled,
        "elapsed_seconds": round(ordered.elapsed_seconds, 3),
        "succeeded": [str(ordered.jobs[job_id].input_path) for job_id in ordered.succeeded],
        "failed": [
            {
                "input_path": str(ordered.jobs[job_id].input_path),
                "reason": ordered.results[job_id].reason,
                "failure_class": (
                    ordered.results[job_id].failure_class.value
                    if ordered.results[job_id].failure_class is not None
                    else None
                ),
                "attempts": ordered.results[job_id].attempts,
            }
            for job_id in ordered.failed
        ],
        "jobs": [
            {
                "input_path": str(ordered.jobs[job_id].input_path),
                "output_path": str(ordered.jobs[job_id].output_path),
                **ordered.results[job_id].to_payload(),
            }
            for job_id in sorted(ordered.results)
        ],
    }


def write_report(path: Path, report: BatchReport) -> None:
    """Persist a report using deterministic JSON formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(report_payload(report), ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )
