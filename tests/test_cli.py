import json
from pathlib import Path

import allure
from click.testing import CliRunner

from batchpool.main import batchpool

pytestmark = [
    allure.epic("Batch Dispatch"),
    allure.feature("CLI Surface"),
]


def test_run_processes_every_file(csv_input_dir: Path, output_dir: Path):
    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        ["run", str(csv_input_dir), str(output_dir), "--workers", "2", "--seed", "5"],
    )

    assert result.exit_code == 0, result.output
    assert "Worker pool: 2 slot(s) (2 local, 0 remote)" in result.output
    assert "Batch summary: total=3 succeeded=3 failed=0" in result.output
    for name in ("a.csv", "b.csv", "c.csv"):
        assert (output_dir / name).read_text("utf-8").startswith("id,value,new\n")


def test_run_reports_failed_inputs_and_exits_non_zero(csv_input_dir: Path, output_dir: Path):
    (csv_input_dir / "bad.csv").write_text("", "utf-8")
    report_path = output_dir / "report.json"

    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        [
            "run",
            str(csv_input_dir),
            str(output_dir),
            "--workers",
            "2",
            "--column",
            "score",
            "--report-path",
            str(report_path),
        ],
    )

    assert result.exit_code == 1
    assert "failed=1" in result.output
    assert f"{csv_input_dir / 'bad.csv'}: computation failed: CSV input has no header row." in (
        result.output
    )
    assert "Batch finished with failed jobs." in result.output
    payload = json.loads(report_path.read_text("utf-8"))
    assert [entry["input_path"] for entry in payload["failed"]] == [str(csv_input_dir / "bad.csv")]
    assert (output_dir / "a.csv").read_text("utf-8").startswith("id,value,score\n")


def test_run_with_copy_computation(csv_input_dir: Path, output_dir: Path):
    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        ["run", str(csv_input_dir), str(output_dir), "--workers", "1", "--computation", "copy"],
    )

    assert result.exit_code == 0, result.output
    assert (output_dir / "c.csv").read_bytes() == (csv_input_dir / "c.csv").read_bytes()


def test_run_empty_directory_succeeds(tmp_path: Path):
    input_dir = tmp_path / "empty"
    input_dir.mkdir()

    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        ["run", str(input_dir), str(tmp_path / "out"), "--workers", "1"],
    )

    assert result.exit_code == 0, result.output
    assert "Batch summary: total=0 succeeded=0 failed=0" in result.output


def test_run_missing_directory_is_an_error(tmp_path: Path):
    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        ["run", str(tmp_path / "missing"), str(tmp_path / "out"), "--workers", "1"],
    )

    assert result.exit_code == 1
    assert "Input directory not found or not readable" in result.output
    assert not (tmp_path / "out").exists()


def test_run_without_workers_is_an_error(csv_input_dir: Path, output_dir: Path):
    runner = CliRunner()
    result = runner.invoke(
        batchpool,
        ["run", str(csv_input_dir), str(output_dir), "--workers", "0"],
    )

    assert result.exit_code == 1
    assert "No workers configured" in result.output


def test_hosts_lists_worker_pool(tmp_path: Path):
    nodes = tmp_path / "nodes"
    nodes.write_text("node-a:2\n", "utf-8")

    runner = CliRunner()
    result = runner.invoke(batchpool, ["hosts", "--workers", "1", "--hosts-file", str(nodes)])

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "Worker pool: 3 slot(s) (1 local, 2 remote)",
        "  local#0",
        "  node-a#1",
        "  node-a#2",
    ]


def test_hosts_rejects_bad_host_spec():
    runner = CliRunner()
    result = runner.invoke(batchpool, ["hosts", "--workers", "0", "--host", "node-a:0"])

    assert result.exit_code == 1
    assert "slot count must be" in result.output
