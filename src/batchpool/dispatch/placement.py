"""Worker host discovery and pool construction."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from pathlib import Path

from batchpool.dispatch.models import WorkerHandle, WorkerLocation

HOSTS_ENV_VAR = "BATCHPOOL_HOSTS"
HOSTS_FILE_ENV_VAR = "BATCHPOOL_HOSTS_FILE"

_SLOTS_SUFFIX = re.compile(r"^(?P<host>[^\s:]+):(?P<slots>\d+)$")
_SLOTS_KEYWORD = re.compile(r"^(?P<host>\S+)\s+slots\s*=\s*(?P<slots>\d+)$")


def parse_host_lines(lines: Iterable[str]) -> list[str]:
    """Expand node-file style lines into one entry per execution slot.

    Accepted forms: ``host`` (one slot; repeated lines add slots, as in
    scheduler-provided node files), ``host:N`` and ``host slots=N``.
    Blank lines and ``#`` comments are ignored.
    """

    hosts: list[str] = []
    for line_no, raw in enumerate(lines, start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        match = _SLOTS_SUFFIX.match(line) or _SLOTS_KEYWORD.match(line)
        if match is not None:
            slots = int(match.group("slots"))
            if slots <= 0:
                raise ValueError(f"Host line {line_no}: slot count must be > 0: {raw!r}")
            hosts.extend([match.group("host")] * slots)
            continue
        if any(char.isspace() for char in line) or ":" in line:
            raise ValueError(
                f"Host line {line_no}: expected 'host', 'host:N' or 'host slots=N', got {raw!r}",
            )
        hosts.append(line)
    return hosts


def read_hosts_file(path: Path) -> list[str]:
    """Load host entries from a node file."""

    try:
        text = path.read_text("utf-8")
    except OSError as error:
        raise ValueError(f"Cannot read hosts file {path}: {error}") from error
    return parse_host_lines(text.splitlines())


def get_worker_hosts(
    hosts: Sequence[str] = (),
    *,
    hosts_file: Path | None = None,
    env_var: str = HOSTS_ENV_VAR,
) -> list[str]:
    """Resolve the ordered remote host list.

    Explicit ``hosts`` win, then ``hosts_file``, then the comma-separated
    ``env_var`` (entries in ``host:N`` form are expanded too).
    """

    if hosts:
        return parse_host_lines(hosts)
    if hosts_file is not None:
        return read_hosts_file(hosts_file)
    raw = os.getenv(env_var, "").strip()
    if raw:
        return parse_host_lines(part for part in raw.split(","))
    return []


def build_worker_pool(hosts: Sequence[str], *, local_workers: int) -> list[WorkerHandle]:
    """Number local slots first, then one remote slot per host entry."""

    if local_workers < 0:
        raise ValueError("local_workers must be >= 0.")
    handles = [WorkerHandle(worker_id=index) for index in range(local_workers)]
    handles.extend(
        WorkerHandle(
            worker_id=local_workers + offset,
            location=WorkerLocation.REMOTE,
            host=host,
        )
        for offset, host in enumerate(hosts)
    )
    return handles
