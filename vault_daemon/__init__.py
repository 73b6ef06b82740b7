"""
Vault Daemon - folder-based task queue and inline directives for an agent CLI.

Watches a vault directory and runs an external agent for:
- Tasks/Inbox/*.md        - task files, moved through In Progress to
                            Completed or Blocked
- "@agent ..." lines      - inline directives in any other document

Architecture: No task database - the folder a task file sits in is its state.
"""

__version__ = "1.0.0"

from vault_daemon.models import (
    Task,
    TaskLocation,
    TaskOutcome,
    Directive,
    DaemonState,
    DaemonStatus,
    DaemonConfig,
)

from vault_daemon.config import ConfigManager, ConfigError, DEFAULT_CONFIG_FILE
from vault_daemon.extractor import extract_directives
from vault_daemon.agent_runner import (
    AgentRunner,
    AgentRunError,
    AgentExitError,
    AgentSpawnError,
    AgentTimeoutError,
)
from vault_daemon.status import StatusStore
from vault_daemon.lifecycle import TaskMover, TaskQueue
from vault_daemon.scanner import DirectiveScanner
from vault_daemon.watchdog import Debouncer, WatchdogManager
from vault_daemon.log_sink import LogSink, setup_logging

__all__ = [
    # Models
    "Task",
    "TaskLocation",
    "TaskOutcome",
    "Directive",
    "DaemonState",
    "DaemonStatus",
    "DaemonConfig",
    # Config
    "ConfigManager",
    "ConfigError",
    "DEFAULT_CONFIG_FILE",
    # Components
    "extract_directives",
    "AgentRunner",
    "AgentRunError",
    "AgentExitError",
    "AgentSpawnError",
    "AgentTimeoutError",
    "StatusStore",
    "TaskMover",
    "TaskQueue",
    "DirectiveScanner",
    "Debouncer",
    "WatchdogManager",
    "LogSink",
    "setup_logging",
]
