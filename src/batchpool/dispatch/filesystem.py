"""Filesystem collaborator and job enumeration."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from batchpool.dispatch.models import Job

logger = logging.getLogger(__name__)


class DirectoryNotFound(FileNotFoundError):
    """Input directory is missing or cannot be listed."""

    def __init__(self, path: Path, detail: str | None = None) -> None:
        message = f"Input directory not found or not readable: {path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.path = path


class FileSystem(Protocol):
    """Storage operations used by enumeration and workers."""

    def list_files(self, directory: Path) -> list[Path]:
        """Return regular files directly inside ``directory`` in a stable order."""

    def read(self, path: Path) -> bytes:
        """Read one input file."""

    def write(self, path: Path, data: bytes) -> None:
        """Write one output file, creating parent directories."""


class LocalFileSystem:
    """Local-disk implementation of :class:`FileSystem`."""

    def __init__(self, *, include_hidden: bool = True) -> None:
        self.include_hidden = include_hidden

    def list_files(self, directory: Path) -> list[Path]:
        if not directory.is_dir():
            raise DirectoryNotFound(directory)
        if not os.access(directory, os.R_OK | os.X_OK):
            raise DirectoryNotFound(directory, "permission denied")
        try:
            entries = list(directory.iterdir())
        except OSError as error:
            raise DirectoryNotFound(directory, str(error)) from error

        files = [
            entry
            for entry in entries
            if entry.is_file() and (self.include_hidden or not entry.name.startswith("."))
        ]
        return sorted(files, key=lambda entry: entry.name)

    def read(self, path: Path) -> bytes:
        return path.read_bytes()

    def write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def enumerate_jobs(
    input_dir: Path,
    output_dir: Path,
    *,
    filesystem: FileSystem | None = None,
) -> list[Job]:
    """Build one job per input file, ids assigned in file-name order.

    Raises:
        DirectoryNotFound: ``input_dir`` does not exist or is not readable.
    """

    fs = filesystem or LocalFileSystem()
    input_files = fs.list_files(input_dir)
    jobs = [
        Job(job_id=index, input_path=path, output_path=output_dir / path.name)
        for index, path in enumerate(input_files)
    ]
    logger.info("Enumerated %d job(s) from %s", len(jobs), input_dir)
    return jobs
