"""Test fixtures for vault-daemon tests."""

import sys
import time
import threading
import tempfile
import shutil
from pathlib import Path

import pytest

from vault_daemon.models import (
    AgentResult,
    AgentSettings,
    AgentTagSettings,
    DaemonConfig,
    TaskLocation,
    TaskSettings,
)
from vault_daemon.lifecycle import TaskMover
from vault_daemon.status import StatusStore


class FakeRunner:
    """Stands in for AgentRunner; records prompts and returns canned output."""

    def __init__(self, stdout="Done.", error=None, gate=None):
        self.stdout = stdout
        self.error = error
        self.gate = gate
        self.calls = []
        self.labels = []
        self.on_run = None
        self._lock = threading.Lock()

    def run(self, prompt, cwd=None, timeout=None, label="agent"):
        with self._lock:
            self.calls.append(prompt)
            self.labels.append(label)
        if self.on_run:
            self.on_run(prompt)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return AgentResult(exit_code=0, stdout=self.stdout)

    def terminate_all(self):
        return 0

    def active_count(self):
        return 0


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll until predicate() is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp()).resolve()
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def vault(temp_dir):
    """Create a vault with the Tasks lifecycle folders."""
    vault_path = temp_dir / "vault"
    vault_path.mkdir()
    TaskMover(vault_path / "Tasks").ensure_folders()
    return vault_path


def make_config(vault, temp_dir, **overrides):
    """Resolved config pointing every file into temp_dir."""
    values = dict(
        vault_path=str(vault),
        log_path=str(temp_dir / "logs" / "vault-daemon.log"),
        state_path=str(temp_dir / "state.json"),
        lock_path=str(temp_dir / "vault-daemon.lock"),
        tasks=TaskSettings(debounce_ms=50, max_concurrent=2),
        agent_tags=AgentTagSettings(debounce_ms=50, scan_interval_ms=60000),
        agent=AgentSettings(command=sys.executable, args=["-c", "print('ok')"], prompt_flag="", timeout_ms=5000),
    )
    values.update(overrides)
    return DaemonConfig(**values)


@pytest.fixture
def config(vault, temp_dir):
    return make_config(vault, temp_dir)


@pytest.fixture
def status(temp_dir):
    return StatusStore(temp_dir / "state.json")


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def mover(vault):
    return TaskMover(vault / "Tasks")


@pytest.fixture
def inbox_task(mover):
    """Create a task file in the Inbox."""
    task_file = mover.folder(TaskLocation.INBOX) / "summarize.md"
    task_file.write_text("Summarize this folder.")
    return task_file
