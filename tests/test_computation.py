import csv
import io

import allure
import pytest

from batchpool.dispatch.computation import (
    ComputationError,
    ComputationSpec,
    CopyComputation,
    RandomColumnComputation,
    build_computation,
)

pytestmark = [
    allure.epic("Batch Dispatch"),
    allure.feature("Computations"),
]

SAMPLE = b"id,value\n1,10\n2,20\n3,30\n"


def _rows(data: bytes) -> list[list[str]]:
    return list(csv.reader(io.StringIO(data.decode("utf-8"))))


def test_copy_returns_input_unchanged():
    assert CopyComputation()(SAMPLE) == SAMPLE


def test_random_column_appends_values_in_unit_interval():
    output = RandomColumnComputation(column="new")(SAMPLE)
    rows = _rows(output)

    assert rows[0] == ["id", "value", "new"]
    assert [row[:2] for row in rows[1:]] == [["1", "10"], ["2", "20"], ["3", "30"]]
    for row in rows[1:]:
        assert 0.0 <= float(row[2]) < 1.0


def test_random_column_header_only_input():
    assert _rows(RandomColumnComputation()(b"id,value\n")) == [["id", "value", "new"]]


def test_seeded_output_is_reproducible_and_content_dependent():
    first = RandomColumnComputation(seed=7)(SAMPLE)
    second = RandomColumnComputation(seed=7)(SAMPLE)
    other_input = RandomColumnComputation(seed=7)(b"id,value\n1,11\n2,20\n3,30\n")

    assert first == second
    assert _rows(first)[1][2] != _rows(other_input)[1][2]


def test_delay_uses_injected_sleep():
    calls = []
    RandomColumnComputation(delay_seconds=2.5, sleep=calls.append)(SAMPLE)
    assert calls == [2.5]


def test_delay_is_skipped_for_rejected_input():
    calls = []
    with pytest.raises(ComputationError):
        RandomColumnComputation(delay_seconds=1.0, sleep=calls.append)(b"")
    assert calls == []


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (b"", "no header row"),
        (b"id,value\n1\n", "has 1 fields, expected 2"),
        (b"id,new\n1,2\n", "already has a 'new' column"),
        (b"\xff\xfe\x00bad", "not UTF-8"),
    ],
)
def test_random_column_rejects_bad_input(data, message):
    with pytest.raises(ComputationError, match=message):
        RandomColumnComputation()(data)


def test_random_column_validates_arguments():
    with pytest.raises(ValueError, match="non-empty"):
        RandomColumnComputation(column=" ")
    with pytest.raises(ValueError, match="delay_seconds"):
        RandomColumnComputation(delay_seconds=-1)


def test_build_computation_resolves_names():
    assert isinstance(build_computation("copy"), CopyComputation)
    computation = build_computation("Random-Column", column="score", seed=1)
    assert isinstance(computation, RandomColumnComputation)
    assert computation.column == "score"

    with pytest.raises(ValueError, match="Unsupported computation"):
        build_computation("sum")


def test_spec_renders_agent_arguments():
    assert ComputationSpec(name="copy").to_args() == [
        "--computation",
        "copy",
        "--column",
        "new",
        "--delay-seconds",
        "0.0",
    ]
    assert ComputationSpec(seed=3).to_args()[-2:] == ["--seed", "3"]
    assert isinstance(ComputationSpec(name="copy").build(), CopyComputation)
