"""Per-job computations applied by workers to input bytes."""

from __future__ import annotations

import csv
import hashlib
import io
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

SUPPORTED_COMPUTATIONS: tuple[str, ...] = ("copy", "random-column")


class ComputationError(RuntimeError):
    """The per-job transform rejected its input."""


class Computation(Protocol):
    """Pure transform from input bytes to output bytes."""

    def __call__(self, data: bytes) -> bytes:
        """Transform one input document; raise ComputationError on bad input."""


class CopyComputation:
    """Identity transform."""

    def __call__(self, data: bytes) -> bytes:
        return data


class RandomColumnComputation:
    """Append a column of uniform random floats to a CSV document.

    With a ``seed`` the generated values depend only on the seed and the input
    content, so reruns and any worker produce the same output.
    """

    def __init__(
        self,
        *,
        column: str = "new",
        delay_seconds: float = 0.0,
        seed: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not column.strip():
            raise ValueError("Column name must be a non-empty string.")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0.")
        self.column = column
        self.delay_seconds = delay_seconds
        self.seed = seed
        self._sleep = sleep

    def __call__(self, data: bytes) -> bytes:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as error:
            raise ComputationError(f"Input is not UTF-8 text: {error}") from error

        try:
            rows = list(csv.reader(io.StringIO(text)))
        except csv.Error as error:
            raise ComputationError(f"Malformed CSV input: {error}") from error
        if not rows or not rows[0]:
            raise ComputationError("CSV input has no header row.")

        header, body = rows[0], [row for row in rows[1:] if row]
        if self.column in header:
            raise ComputationError(f"CSV input already has a {self.column!r} column.")
        width = len(header)
        for line_no, row in enumerate(body, start=2):
            if len(row) != width:
                raise ComputationError(
                    f"CSV row {line_no} has {len(row)} fields, expected {width}.",
                )

        if self.delay_seconds > 0:
            self._sleep(self.delay_seconds)

        generator = self._generator(data)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([*header, self.column])
        for row in body:
            writer.writerow([*row, repr(generator.random())])
        return buffer.getvalue().encode("utf-8")

    def _generator(self, data: bytes) -> random.Random:
        if self.seed is None:
            return random.Random()  # noqa: S311
        digest = hashlib.sha256(data).hexdigest()
        return random.Random(f"{self.seed}:{digest}")  # noqa: S311


@dataclass(frozen=True, slots=True)
class ComputationSpec:
    """Serializable description of a computation, shared with remote agents."""

    name: str = "random-column"
    column: str = "new"
    delay_seconds: float = 0.0
    seed: int | None = None

    def build(self) -> Computation:
        return build_computation(
            self.name,
            column=self.column,
            delay_seconds=self.delay_seconds,
            seed=self.seed,
        )

    def to_args(self) -> list[str]:
        """Render as ``batchpool.dispatch.agent`` command-line arguments."""

        args = [
            "--computation",
            self.name,
            "--column",
            self.column,
            "--delay-seconds",
            str(self.delay_seconds),
        ]
        if self.seed is not None:
            args.extend(["--seed", str(self.seed)])
        return args


def build_computation(
    name: str,
    *,
    column: str = "new",
    delay_seconds: float = 0.0,
    seed: int | None = None,
) -> Computation:
    """Resolve a computation by its registry name."""

    normalized = name.strip().lower()
    if normalized == "copy":
        return CopyComputation()
    if normalized == "random-column":
        return RandomColumnComputation(column=column, delay_seconds=delay_seconds, seed=seed)
    raise ValueError(
        f"Unsupported computation: {name!r}. Expected one of: {', '.join(SUPPORTED_COMPUTATIONS)}",
    )
