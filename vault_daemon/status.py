"""
Daemon status store.

Holds the single status snapshot, recomputes the derived status on every
change and persists it atomically for external observers.
"""

import logging
import threading
from pathlib import Path
from datetime import date, datetime
from typing import Optional

from vault_daemon.models import DaemonStatus, DaemonState, TaskOutcome
from vault_daemon.atomic import AtomicFileWriter


logger = logging.getLogger(__name__)


class StatusStore:
    """
    Owns the daemon status and writes it to disk after each mutation.

    All mutations go through one lock, so worker threads may call any
    method concurrently. The file is written for observers only; nothing
    in the daemon reads it back for control decisions.
    """

    def __init__(self, state_path: Path, persist: bool = True):
        """
        Initialize status store.

        Args:
            state_path: Status JSON file
            persist: Write to disk on each mutation
        """
        self.state_path = Path(state_path)
        self.persist = persist
        self._lock = threading.Lock()
        self._status = DaemonStatus()
        self._save()

    def snapshot(self) -> DaemonStatus:
        """Copy of the current status."""
        with self._lock:
            return self._status.model_copy()

    @property
    def active_tasks(self) -> int:
        with self._lock:
            return self._status.active_tasks

    def task_started(self) -> None:
        """A task was dispatched."""
        with self._lock:
            self._roll_day()
            self._status.active_tasks += 1
            self._status.status = DaemonState.WORKING.value
            self._save()

    def task_finished(self, outcome: TaskOutcome, error: Optional[str] = None) -> None:
        """
        A dispatched task reached a terminal transition.

        Must be called exactly once per task_started().

        Args:
            outcome: How the task ended
            error: Error text for ERROR outcomes
        """
        with self._lock:
            self._roll_day()
            self._status.active_tasks = max(0, self._status.active_tasks - 1)

            if outcome == TaskOutcome.COMPLETED:
                self._status.tasks_completed_today += 1
            if error:
                self._status.last_error = error

            self._status.status = self._derive(outcome).value
            self._save()

    def _derive(self, outcome: TaskOutcome) -> DaemonState:
        """Status after a task finished with the given outcome."""
        if self._status.active_tasks > 0:
            return DaemonState.WORKING
        if outcome == TaskOutcome.BLOCKED:
            return DaemonState.BLOCKED
        if outcome == TaskOutcome.ERROR:
            return DaemonState.ERROR
        return DaemonState.IDLE

    def directive_processed(self) -> None:
        """An inline directive was handed to the agent successfully."""
        with self._lock:
            self._roll_day()
            self._status.agent_commands_today += 1
            self._save()

    def record_scan(self) -> None:
        """A full directive scan started."""
        with self._lock:
            self._status.last_scan = datetime.now().astimezone().isoformat()
            self._save()

    def record_error(self, message: str) -> None:
        """Remember the latest error without changing the overall status."""
        with self._lock:
            self._status.last_error = message
            self._save()

    def set_idle(self) -> None:
        """Startup state."""
        with self._lock:
            self._status.status = (
                DaemonState.WORKING if self._status.active_tasks else DaemonState.IDLE
            ).value
            self._save()

    def set_paused(self) -> None:
        """Shutdown state."""
        with self._lock:
            self._status.status = DaemonState.PAUSED.value
            self._save()

    def _roll_day(self) -> None:
        """Reset daily counters when the local date changes."""
        today = date.today().isoformat()
        if self._status.counters_date != today:
            self._status.counters_date = today
            self._status.tasks_completed_today = 0
            self._status.agent_commands_today = 0

    def _save(self) -> None:
        if not self.persist:
            return
        try:
            AtomicFileWriter.write_json(self.state_path, self._status.model_dump(), indent=2)
        except OSError as e:
            logger.error(f"Failed to save status to {self.state_path}: {e}")

    @staticmethod
    def load(state_path: Path) -> Optional[DaemonStatus]:
        """
        Read a status file written by a running daemon.

        Returns:
            DaemonStatus or None if missing or invalid
        """
        data = AtomicFileWriter.read_json(state_path)
        if not isinstance(data, dict):
            return None
        try:
            return DaemonStatus(**data)
        except ValueError:
            return None
