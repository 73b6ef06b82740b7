"""
Background daemon wiring watchers, the task queue and the directive scanner.

Event sources are the watchdog observers and the periodic scan timer.
Inbox/Blocked events feed the task queue; document changes feed the
directive scanner. Both run the agent and report to the status store.
"""

import signal
import logging
import threading
from pathlib import Path
from typing import List, Optional

from vault_daemon.models import DaemonConfig, TaskLocation
from vault_daemon.atomic import InstanceLock
from vault_daemon.status import StatusStore
from vault_daemon.agent_runner import AgentRunner
from vault_daemon.lifecycle import TaskMover, TaskQueue
from vault_daemon.scanner import DirectiveScanner
from vault_daemon.watchdog import (
    BlockedHandler,
    Debouncer,
    InboxHandler,
    VaultHandler,
    WatchdogManager,
)


# Shutdown timeouts
WORKER_JOIN_TIMEOUT = 10.0  # seconds
SCANNER_JOIN_TIMEOUT = 5.0  # seconds


logger = logging.getLogger(__name__)


class VaultDaemon:
    """
    Vault daemon process.

    Owns the components and their shutdown order. A second daemon on the
    same lock file refuses to start.
    """

    def __init__(
        self,
        config: DaemonConfig,
        runner: Optional[AgentRunner] = None,
        status: Optional[StatusStore] = None
    ):
        """
        Initialize daemon.

        Args:
            config: Resolved configuration
            runner: Agent runner (created from config if None)
            status: Status store (created from config if None)
        """
        self.config = config
        self.status = status or StatusStore(Path(config.state_path))
        self.runner = runner or AgentRunner(config.agent, Path(config.vault_path))
        self.mover = TaskMover(config.tasks_root, config.tasks.document_extension)
        self.queue = TaskQueue(config, self.runner, self.status, self.mover)
        self.scanner = DirectiveScanner(config, self.runner, self.status)

        self.watchdog_manager = WatchdogManager()
        self._debouncers: List[Debouncer] = []

        self.instance_lock = InstanceLock(Path(config.lock_path))

        self.running = False
        self._shutdown_requested = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._stopped = False

    # Startup

    def start(self, watch: bool = True) -> bool:
        """
        Start all enabled components.

        Args:
            watch: Start watchers and the periodic scan (False for one-shot runs)

        Returns:
            False if another instance holds the lock
        """
        if not self.instance_lock.acquire():
            logger.error(
                f"Another instance is already running (lock file: {self.config.lock_path})"
            )
            return False

        logger.info("=" * 50)
        logger.info("Vault Daemon starting...")
        logger.info(f"Vault: {self.config.vault_path}")
        logger.info(f"Agent: {self.config.agent.command} {' '.join(self.config.agent.args[:2])}")
        logger.info(f"Tasks enabled: {self.config.tasks.enabled}")
        logger.info(f"Directives enabled: {self.config.agent_tags.enabled}")

        self.status.set_idle()
        self.running = True

        if self.config.tasks.enabled:
            self.mover.ensure_folders()
            self.queue.recover_orphans()
            if watch:
                self._setup_task_watchers()
            queued = self.queue.load_inbox()
            if queued:
                logger.info(f"Queued {queued} task(s) from Inbox")

        if self.config.agent_tags.enabled and watch:
            self._setup_vault_watcher()
            self.scanner.start_periodic()

        logger.info("Vault Daemon ready")
        return True

    def _setup_task_watchers(self) -> None:
        """Watch Inbox for new tasks and Blocked for user edits."""
        debounce_ms = self.config.tasks.debounce_ms

        inbox_debouncer = Debouncer(debounce_ms, self.queue.submit, name="inbox")
        blocked_debouncer = Debouncer(debounce_ms, self.queue.readmit, name="blocked")
        self._debouncers.extend([inbox_debouncer, blocked_debouncer])

        self.watchdog_manager.add(
            "inbox",
            self.mover.folder(TaskLocation.INBOX),
            InboxHandler(inbox_debouncer, self.mover.is_task_file)
        )
        self.watchdog_manager.add(
            "blocked",
            self.mover.folder(TaskLocation.BLOCKED),
            BlockedHandler(blocked_debouncer, self.mover.is_task_file)
        )
        logger.info("Task watcher started")

    def _setup_vault_watcher(self) -> None:
        """Watch the whole vault for document changes."""
        debouncer = Debouncer(
            self.config.agent_tags.debounce_ms,
            self.scanner.submit_file,
            name="vault"
        )
        self._debouncers.append(debouncer)

        self.watchdog_manager.add(
            "vault",
            Path(self.config.vault_path),
            VaultHandler(debouncer, self.scanner.is_document),
            recursive=True
        )
        logger.info("Directive watcher started")

    # Run modes

    def run_forever(self) -> int:
        """
        Run until SIGINT/SIGTERM.

        Returns:
            Process exit code
        """
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        if not self.start():
            return 1

        try:
            while not self._shutdown_requested.wait(timeout=1.0):
                pass
        finally:
            self.shutdown()

        return 0

    def run_once(self, timeout: Optional[float] = None) -> int:
        """
        Process the Inbox and scan the vault once, then stop.

        Returns:
            Process exit code
        """
        if not self.start(watch=False):
            return 1

        try:
            if self.config.agent_tags.enabled:
                self.scanner.scan_all()
            if not self.queue.join(timeout=timeout):
                logger.warning("Timed out waiting for tasks to finish")
        finally:
            self.shutdown()

        return 0

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    # Shutdown

    def shutdown(self) -> None:
        """
        Stop everything. Safe to call more than once.

        Files are not rolled back; a task killed mid-run either lands in
        Blocked with an error note or stays In Progress for the next start.
        """
        with self._shutdown_lock:
            if self._stopped:
                return
            self._stopped = True

        logger.info("Shutting down...")
        self.status.set_paused()
        self.running = False

        dropped = self.queue.stop()
        if dropped:
            logger.info(f"Left {dropped} queued task(s) in Inbox")

        for debouncer in self._debouncers:
            debouncer.cancel_all()

        self.watchdog_manager.stop_all()

        # No new directive may start once agents are being killed
        self.scanner.request_stop()

        killed = self.runner.terminate_all()
        if killed:
            logger.info(f"Killed {killed} agent process(es)")

        self.scanner.stop(timeout=SCANNER_JOIN_TIMEOUT)

        if not self.queue.join(timeout=WORKER_JOIN_TIMEOUT):
            logger.warning("Task workers did not stop in time")

        # Finished workers may have changed the status after the kill
        self.status.set_paused()

        self.instance_lock.release()
        logger.info("Daemon stopped")
