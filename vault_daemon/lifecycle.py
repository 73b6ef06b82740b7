"""
Task queue and lifecycle manager.

The folder a task file sits in is its state:
- Tasks/Inbox/        - waiting to run
- Tasks/In Progress/  - handed to the agent
- Tasks/Blocked/      - needs the user (questions or an error)
- Tasks/Completed/    - done

Moves are same-volume renames, so a file is never visible half-copied.
"""

import os
import logging
import threading
import time
from collections import deque
from pathlib import Path
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Tuple

from vault_daemon.models import DaemonConfig, Task, TaskLocation, TaskOutcome
from vault_daemon.agent_runner import AgentRunner, AgentRunError
from vault_daemon.prompts import BLOCKING_MARKER, build_task_prompt
from vault_daemon.status import StatusStore


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TaskMover:
    """Moves task files between lifecycle folders."""

    def __init__(self, tasks_root: Path, extension: str = ".md"):
        """
        Initialize mover.

        Args:
            tasks_root: Directory containing the lifecycle folders
            extension: Extension of task documents
        """
        self.tasks_root = Path(tasks_root)
        self.extension = extension

    def folder(self, location: TaskLocation) -> Path:
        return self.tasks_root / location.value

    def ensure_folders(self) -> None:
        """Create all lifecycle folders."""
        for location in TaskLocation:
            self.folder(location).mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str, location: TaskLocation) -> Path:
        return self.folder(location) / name

    def location_of(self, path: Path) -> Optional[TaskLocation]:
        """Lifecycle folder a path lives in, if any."""
        parent = Path(path).parent
        for location in TaskLocation:
            if parent == self.folder(location):
                return location
        return None

    def is_task_file(self, path: Path) -> bool:
        """Visible document with the task extension."""
        path = Path(path)
        return path.suffix == self.extension and not path.name.startswith(".")

    def move(self, path: Path, location: TaskLocation) -> Path:
        """
        Rename a task file into another lifecycle folder.

        Args:
            path: Current location
            location: Target folder

        Returns:
            New path

        Raises:
            FileNotFoundError: The file is no longer at path
        """
        path = Path(path)
        dest = self.path_for(path.name, location)
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(path, dest)
        logger.info(f"Moved task to {location.value}: {path.name}")
        return dest

    def list(self, location: TaskLocation) -> List[Path]:
        """
        Task files in a folder, oldest first.

        Ordered by modification time, then name.
        """
        folder = self.folder(location)
        if not folder.is_dir():
            return []

        entries = []
        for path in folder.iterdir():
            if not self.is_task_file(path):
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            if path.is_file():
                entries.append((stat.st_mtime, path.name, path))

        entries.sort(key=lambda e: (e[0], e[1]))
        return [path for _, _, path in entries]


class TaskQueue:
    """
    FIFO task queue with bounded concurrency.

    Tasks are admitted in detection order and dispatched to worker threads
    while fewer than max_concurrent tasks are in progress. Each worker
    reports exactly one terminal transition to the status store.
    """

    def __init__(
        self,
        config: DaemonConfig,
        runner: AgentRunner,
        status: StatusStore,
        mover: Optional[TaskMover] = None
    ):
        """
        Initialize task queue.

        Args:
            config: Resolved daemon configuration
            runner: Agent runner used for each task
            status: Status store to report transitions to
            mover: Task mover (defaults to one rooted at config.tasks_root)
        """
        self.settings = config.tasks
        self.vault_path = Path(config.vault_path)
        self.runner = runner
        self.status = status
        self.mover = mover or TaskMover(config.tasks_root, self.settings.document_extension)

        self._queue: Deque[Task] = deque()
        self._workers: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._accepting = True

    # Admission

    def submit(self, path: Path) -> bool:
        """
        Admit a file from the Inbox into the queue.

        Args:
            path: Task file in the Inbox

        Returns:
            True if the task was queued
        """
        path = Path(path)
        if not self.mover.is_task_file(path):
            return False

        if self._is_known(path.name):
            logger.debug(f"Task already queued or running: {path.name}")
            return False

        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"Task no longer in Inbox: {path.name}")
            return False
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read task: {path.name} - {e}")
            return False

        with self._lock:
            if not self._accepting:
                return False
            if path.name in self._workers or any(t.name == path.name for t in self._queue):
                return False
            self._queue.append(Task(path=path, name=path.name, content=content))

        logger.info(f"New task detected: {path.name}")
        self.dispatch()
        return True

    def _is_known(self, name: str) -> bool:
        with self._lock:
            return name in self._workers or any(t.name == name for t in self._queue)

    def dispatch(self) -> int:
        """
        Start queued tasks while concurrency slots are free.

        Returns:
            Number of tasks started
        """
        started = []

        with self._lock:
            while (
                self._accepting
                and self._queue
                and len(self._workers) < self.settings.max_concurrent
            ):
                task = self._queue.popleft()
                worker = threading.Thread(
                    target=self._worker,
                    args=(task,),
                    name=f"Task-{task.name}",
                    daemon=True
                )
                self._workers[task.name] = worker
                self.status.task_started()
                started.append(worker)

        for worker in started:
            worker.start()

        return len(started)

    def _worker(self, task: Task) -> None:
        """Run one task and report its single terminal transition."""
        outcome, error = TaskOutcome.ERROR, None
        try:
            outcome, error = self.execute(task)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"Unexpected error running task {task.name}: {error}", exc_info=True)
        finally:
            self.status.task_finished(outcome, error)
            with self._idle:
                self._workers.pop(task.name, None)
                self._idle.notify_all()
            self.dispatch()

    # Execution

    def execute(self, task: Task) -> Tuple[TaskOutcome, Optional[str]]:
        """
        Execute one task.

        The move into In Progress is the commit point and happens before
        the agent is started.

        Args:
            task: Task read from the Inbox

        Returns:
            (outcome, error message or None)
        """
        try:
            in_progress = self.mover.move(task.path, TaskLocation.IN_PROGRESS)
        except FileNotFoundError:
            logger.info(f"Task vanished before it could start: {task.name}")
            return TaskOutcome.SKIPPED, None

        task.path = in_progress
        logger.info(f"Starting task: {task.name}")

        try:
            result = self.runner.run(
                build_task_prompt(task, self.vault_path),
                label=task.name
            )

            if BLOCKING_MARKER in result.stdout:
                self._write_back(in_progress, self._blocked_content(task.content, result.stdout))
                task.path = self.mover.move(in_progress, TaskLocation.BLOCKED)
                logger.info(f"Task blocked with questions: {task.name}")
                return TaskOutcome.BLOCKED, None

            self._write_back(in_progress, self._completed_content(task.content, result.stdout))
            task.path = self.mover.move(in_progress, TaskLocation.COMPLETED)
            logger.info(f"Task completed: {task.name}")
            return TaskOutcome.COMPLETED, None

        except AgentRunError as e:
            return self._fail(task, in_progress, str(e), level=logging.WARNING)
        except Exception as e:
            return self._fail(task, in_progress, f"{type(e).__name__}: {e}")

    def _fail(
        self,
        task: Task,
        in_progress: Path,
        message: str,
        level: int = logging.ERROR
    ) -> Tuple[TaskOutcome, Optional[str]]:
        """Annotate the task with the error and park it in Blocked."""
        logger.log(level, f"Task failed: {task.name} - {message}")

        try:
            self._write_back(in_progress, self._error_content(task.content, message))
            task.path = self.mover.move(in_progress, TaskLocation.BLOCKED)
        except FileNotFoundError:
            logger.info(f"Task already moved, error annotation skipped: {task.name}")
        except OSError as e:
            logger.error(f"Could not park failed task {task.name}: {e}")

        return TaskOutcome.ERROR, message

    @staticmethod
    def _write_back(path: Path, content: str) -> None:
        """
        Rewrite a task file in place.

        Opened without create, so a file moved away by the user is never
        recreated; if it moves after opening, the text follows the file.

        Raises:
            FileNotFoundError: The file is no longer at path
        """
        with open(path, "r+", encoding="utf-8") as f:
            f.write(content)
            f.truncate()
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _completed_content(original: str, output: str) -> str:
        return (
            f"{original}\n\n---\ncompleted_at: {_now_iso()}\n---\n\n"
            f"## Completion Summary\n\n{output}"
        )

    @staticmethod
    def _blocked_content(original: str, output: str) -> str:
        return f"{original}\n\n---\nstatus: blocked\nblocked_at: {_now_iso()}\n---\n\n{output}"

    @staticmethod
    def _error_content(original: str, message: str) -> str:
        return (
            f"{original}\n\n---\nstatus: error\nerror_at: {_now_iso()}\n---\n\n"
            f"## Error\n\n```\n{message}\n```\n\n"
            f"<!-- Fix the issue and move back to Inbox to retry -->"
        )

    # Re-admission and recovery

    def readmit(self, path: Path) -> Optional[Path]:
        """
        Move an edited Blocked task back to the Inbox.

        Content is left untouched; the Inbox watcher picks it up as new.

        Returns:
            New path, or None if the file was not a Blocked task any more
        """
        path = Path(path)
        if not self.mover.is_task_file(path):
            return None
        if self.mover.location_of(path) != TaskLocation.BLOCKED:
            return None

        try:
            dest = self.mover.move(path, TaskLocation.INBOX)
        except FileNotFoundError:
            logger.info(f"Blocked task already moved: {path.name}")
            return None

        logger.info(f"Re-queued blocked task: {path.name}")
        return dest

    def recover_orphans(self) -> List[Path]:
        """
        Handle files left in In Progress by a previous run.

        With orphan_policy 'requeue' they are moved back to the Inbox;
        with 'leave' they are only reported.

        Returns:
            Orphaned task paths found at startup
        """
        orphans = self.mover.list(TaskLocation.IN_PROGRESS)

        for path in orphans:
            if self.settings.orphan_policy == "requeue":
                try:
                    self.mover.move(path, TaskLocation.INBOX)
                    logger.warning(f"Re-queued orphaned task: {path.name}")
                except FileNotFoundError:
                    continue
            else:
                logger.warning(f"Orphaned task left in In Progress: {path.name}")

        return orphans

    def load_inbox(self) -> int:
        """
        Queue tasks already waiting in the Inbox.

        Returns:
            Number of tasks queued
        """
        return sum(1 for path in self.mover.list(TaskLocation.INBOX) if self.submit(path))

    # Lifecycle

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def running_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def stop(self) -> int:
        """
        Stop admitting and drop queued tasks.

        Dropped tasks stay in the Inbox on disk.

        Returns:
            Number of queued tasks dropped
        """
        with self._idle:
            self._accepting = False
            dropped = len(self._queue)
            self._queue.clear()
            self._idle.notify_all()
        return dropped

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no task is queued or running.

        Returns:
            True if idle, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._workers or self._queue:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True
