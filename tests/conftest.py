"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

CSV_HEADER = "id,value\n"


def _write_csv(path: Path, rows: int) -> None:
    body = "".join(f"{index},{index * 10}\n" for index in range(rows))
    path.write_text(CSV_HEADER + body, "utf-8")


@pytest.fixture()
def csv_input_dir(tmp_path: Path) -> Path:
    """Input directory with a.csv, b.csv and c.csv."""

    input_dir = tmp_path / "data"
    input_dir.mkdir()
    for name, rows in (("a.csv", 2), ("b.csv", 3), ("c.csv", 1)):
        _write_csv(input_dir / name, rows)
    return input_dir


@pytest.fixture()
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "results"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep BATCHPOOL_* variables from the developer shell out of tests."""

    for name in (
        "BATCHPOOL_WORKERS",
        "BATCHPOOL_HOSTS",
        "BATCHPOOL_HOSTS_FILE",
        "BATCHPOOL_JOB_TIMEOUT_SECONDS",
        "BATCHPOOL_JOIN_TIMEOUT_SECONDS",
        "BATCHPOOL_RETRY_ATTEMPTS",
        "BATCHPOOL_POLL_INTERVAL_SECONDS",
        "BATCHPOOL_SSH_COMMAND",
        "BATCHPOOL_REMOTE_PYTHON",
        "BATCHPOOL_CONNECT_TIMEOUT_SECONDS",
        "BATCHPOOL_HEARTBEAT_SECONDS",
        "BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS",
        "BATCHPOOL_COMPUTATION",
        "BATCHPOOL_COLUMN",
        "BATCHPOOL_DELAY_SECONDS",
        "BATCHPOOL_SEED",
    ):
        monkeypatch.delenv(name, raising=False)
