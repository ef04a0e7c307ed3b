import os
from pathlib import Path

import allure
import pytest

from batchpool.config import Settings

pytestmark = [
    allure.epic("Batch Dispatch"),
    allure.feature("Configuration"),
]


def test_defaults(monkeypatch):
    monkeypatch.setattr(os, "cpu_count", lambda: 6)

    settings = Settings.from_env()
    settings.validate()

    assert settings.dispatch.local_workers == 6
    assert settings.dispatch.job_timeout_seconds == 0.0
    assert settings.dispatch.retry_attempts == 0
    assert settings.remote.hosts == ()
    assert settings.remote.hosts_file is None
    assert "ServerAliveInterval=" in settings.remote.ssh_command
    assert "ConnectTimeout=" in settings.remote.ssh_command
    assert settings.remote.heartbeat_timeout_seconds > settings.remote.heartbeat_seconds > 0
    assert settings.computation.name == "random-column"
    assert settings.computation.column == "new"
    assert settings.computation.seed is None


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("BATCHPOOL_WORKERS", "3")
    monkeypatch.setenv("BATCHPOOL_JOB_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("BATCHPOOL_RETRY_ATTEMPTS", "2")
    monkeypatch.setenv("BATCHPOOL_HOSTS", "node-a, node-b:2 ,")
    monkeypatch.setenv("BATCHPOOL_HOSTS_FILE", "/etc/batchpool/nodes")
    monkeypatch.setenv("BATCHPOOL_COMPUTATION", " COPY ")
    monkeypatch.setenv("BATCHPOOL_SEED", "11")

    settings = Settings.from_env()
    settings.validate()

    assert settings.dispatch.local_workers == 3
    assert settings.dispatch.job_timeout_seconds == 90.0
    assert settings.dispatch.retry_attempts == 2
    assert settings.remote.hosts == ("node-a", "node-b:2")
    assert settings.remote.hosts_file == Path("/etc/batchpool/nodes")
    assert settings.computation.name == "copy"
    assert settings.computation.to_spec().seed == 11


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BATCHPOOL_WORKERS", "many", "Invalid integer value for BATCHPOOL_WORKERS"),
        ("BATCHPOOL_DELAY_SECONDS", "soon", "Invalid number for BATCHPOOL_DELAY_SECONDS"),
    ],
)
def test_invalid_env_values(monkeypatch, name, value, message):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BATCHPOOL_WORKERS", "-1", "BATCHPOOL_WORKERS must be >= 0"),
        ("BATCHPOOL_JOIN_TIMEOUT_SECONDS", "0", "BATCHPOOL_JOIN_TIMEOUT_SECONDS must be > 0"),
        ("BATCHPOOL_RETRY_ATTEMPTS", "-2", "BATCHPOOL_RETRY_ATTEMPTS must be >= 0"),
        ("BATCHPOOL_COMPUTATION", "sum", "Unsupported BATCHPOOL_COMPUTATION"),
        ("BATCHPOOL_SSH_COMMAND", " ", "BATCHPOOL_SSH_COMMAND must not be empty"),
        ("BATCHPOOL_HEARTBEAT_SECONDS", "30", "BATCHPOOL_HEARTBEAT_SECONDS must be > 0"),
        ("BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS", "-1", "BATCHPOOL_HEARTBEAT_TIMEOUT_SECONDS"),
    ],
)
def test_validate_rejects_bad_values(monkeypatch, name, value, message):
    monkeypatch.setenv(name, value)
    settings = Settings.from_env()
    with pytest.raises(ValueError, match=message):
        settings.validate()
