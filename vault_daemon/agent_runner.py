"""
Agent runner.

Spawns the external agent CLI for one unit of work, enforces a hard
timeout and classifies the result.
"""

import os
import signal
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vault_daemon.models import AgentResult, AgentSettings


# Seconds to wait for pipes to close after a kill
KILL_WAIT_TIMEOUT = 2.0


logger = logging.getLogger(__name__)


class AgentRunError(RuntimeError):
    """Agent invocation did not succeed."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class AgentSpawnError(AgentRunError):
    """The agent process could not be started."""


class AgentTimeoutError(AgentRunError):
    """The agent exceeded its wall-clock limit and was killed."""

    def __init__(self, timeout_seconds: float, stdout: str = "", stderr: str = ""):
        super().__init__(f"Agent timed out after {timeout_seconds:g}s", stdout, stderr)
        self.timeout_seconds = timeout_seconds


class AgentExitError(AgentRunError):
    """The agent exited with a non-zero code."""

    def __init__(self, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(f"Agent exited with code {exit_code}: {stderr.strip()}", stdout, stderr)
        self.exit_code = exit_code


class AgentRunner:
    """
    Runs the agent CLI as a child process.

    Each run() is an independent process group. The only shared state is
    the registry of live processes and the closed flag, both used at
    shutdown.
    """

    def __init__(self, settings: AgentSettings, working_dir: Path):
        """
        Initialize runner.

        Args:
            settings: Command, fixed args, prompt flag and timeout
            working_dir: Default cwd for agent processes (the vault root)
        """
        self.settings = settings
        self.working_dir = Path(working_dir)
        self._processes: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._closed = False

    def build_args(self, prompt: str) -> List[str]:
        """Command line for one invocation."""
        args = [self.settings.command, *self.settings.args]
        if self.settings.prompt_flag:
            args.append(self.settings.prompt_flag)
        args.append(prompt)
        return args

    def run(
        self,
        prompt: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        label: str = "agent"
    ) -> AgentResult:
        """
        Run the agent with a prompt and wait for it.

        Args:
            prompt: Final prompt argument
            cwd: Working directory (defaults to the vault root)
            timeout: Seconds before the process is killed (defaults to config)
            label: Name used in log lines

        Returns:
            AgentResult for a zero exit code

        Raises:
            AgentSpawnError: Process could not be started, or the runner is closed
            AgentTimeoutError: Timeout fired
            AgentExitError: Non-zero exit
        """
        if timeout is None:
            timeout = self.settings.timeout_ms / 1000.0

        with self._lock:
            if self._closed:
                raise AgentSpawnError("Agent runner closed")

        started = time.monotonic()
        try:
            # Own process group, so tools the agent spawned die with it
            proc = subprocess.Popen(
                self.build_args(prompt),
                cwd=str(cwd or self.working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise AgentSpawnError(f"Failed to start agent '{self.settings.command}': {e}") from e

        with self._lock:
            self._processes[proc.pid] = proc
            closed = self._closed
        if closed:
            # terminate_all() ran while this process was starting
            self._kill(proc)

        logger.debug(f"[{label}] Agent started (pid {proc.pid})")

        try:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._kill(proc)
                stdout, stderr = self._collect_after_kill(proc)
                logger.warning(f"[{label}] Agent timed out after {timeout:g}s")
                raise AgentTimeoutError(timeout, stdout, stderr)
        finally:
            with self._lock:
                self._processes.pop(proc.pid, None)

        duration = time.monotonic() - started

        if proc.returncode != 0:
            raise AgentExitError(proc.returncode, stdout or "", stderr or "")

        logger.debug(f"[{label}] Agent finished in {duration:.1f}s")

        return AgentResult(
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_seconds=duration,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """SIGKILL the agent's whole process group."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                proc.kill()
            except OSError:
                pass

    @staticmethod
    def _collect_after_kill(proc: subprocess.Popen) -> Tuple[str, str]:
        """Output read after a kill, without waiting on stray pipe holders."""
        try:
            stdout, stderr = proc.communicate(timeout=KILL_WAIT_TIMEOUT)
            return stdout or "", stderr or ""
        except subprocess.TimeoutExpired:
            logger.warning(f"Agent pipes still open {KILL_WAIT_TIMEOUT:g}s after kill (pid {proc.pid})")
            for pipe in (proc.stdout, proc.stderr):
                if pipe is not None:
                    pipe.close()
            try:
                proc.wait(timeout=KILL_WAIT_TIMEOUT)
            except subprocess.TimeoutExpired:
                pass
            return "", ""

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def active_count(self) -> int:
        """Number of live agent processes."""
        with self._lock:
            return len(self._processes)

    def terminate_all(self) -> int:
        """
        Kill every live agent process and refuse new runs.

        Returns:
            Number of processes signalled
        """
        with self._lock:
            self._closed = True
            processes = list(self._processes.values())

        for proc in processes:
            logger.info(f"Killing agent process {proc.pid}")
            self._kill(proc)

        return len(processes)
