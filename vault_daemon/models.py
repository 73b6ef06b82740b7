"""
Data models for the vault daemon.

Defines Pydantic models for tasks, directives, status and configuration.
"""

from enum import Enum
from pathlib import Path
from datetime import date
from typing import Optional, List
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TaskLocation(str, Enum):
    """Lifecycle folder of a task. The value is the folder name under Tasks/."""
    INBOX = "Inbox"
    IN_PROGRESS = "In Progress"
    BLOCKED = "Blocked"
    COMPLETED = "Completed"


class TaskOutcome(str, Enum):
    """How a dispatched task ended."""
    COMPLETED = "completed"
    BLOCKED = "blocked"
    ERROR = "error"
    SKIPPED = "skipped"     # File vanished before the commit move


class DaemonState(str, Enum):
    """Overall daemon status reported to observers."""
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    PAUSED = "paused"
    ERROR = "error"


class Task(BaseModel):
    """
    A task in the queue.

    Backed by a single Markdown file; the folder it sits in is its state.
    """

    path: Path = Field(..., description="Current location of the task file")
    name: str = Field(..., description="File name, stable across moves")
    content: str = Field(default="", description="Text payload read at admission")


class Directive(BaseModel):
    """An inline command found in a document."""

    source_line: str
    instruction: str
    line_number: int


class AgentResult(BaseModel):
    """Captured output of a successful agent run."""

    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0


class DaemonStatus(BaseModel):
    """
    Status snapshot written to the state file.

    Field names and status values are read by external tools.
    """

    status: DaemonState = DaemonState.IDLE
    active_tasks: int = Field(default=0, ge=0)
    last_scan: Optional[str] = None
    last_error: Optional[str] = None
    tasks_completed_today: int = 0
    agent_commands_today: int = 0
    counters_date: str = Field(default_factory=lambda: date.today().isoformat())

    model_config = ConfigDict(use_enum_values=True)


class TaskSettings(BaseModel):
    """Task queue settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Watch the Tasks folders")
    debounce_ms: int = Field(default=2000, ge=0, description="Quiet period before acting on a task file")
    max_concurrent: int = Field(default=2, ge=1, description="Max tasks in progress at once")
    document_extension: str = Field(default=".md", description="Extension of task files")
    orphan_policy: str = Field(default="requeue", description="What to do with In Progress files at startup")

    @field_validator("orphan_policy")
    @classmethod
    def validate_orphan_policy(cls, v: str) -> str:
        """Only 'requeue' and 'leave' are understood."""
        if v not in ("requeue", "leave"):
            raise ValueError(f"orphan_policy must be 'requeue' or 'leave', got: {v}")
        return v


class AgentTagSettings(BaseModel):
    """Inline directive settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Scan documents for directives")
    scan_interval_ms: int = Field(default=300000, ge=1000, description="Full scan interval")
    debounce_ms: int = Field(default=5000, ge=0, description="Quiet period before scanning a changed document")
    trigger: str = Field(default="@agent", description="Token that starts a directive line")
    ignore_patterns: List[str] = Field(
        default_factory=lambda: [
            "Tasks/**",
            "**/.git",
            "**/.git/**",
            ".git",
            "**/node_modules",
            "**/node_modules/**",
            "node_modules",
            ".obsidian",
            ".obsidian/**",
            "_agent/daemon/**",
        ],
        description="Glob patterns relative to the vault root"
    )


class AgentSettings(BaseModel):
    """External agent invocation settings."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(default="auto", description="Executable, or 'auto' to discover it")
    args: List[str] = Field(
        default_factory=lambda: ["--dangerously-skip-permissions"],
        description="Fixed arguments placed before the prompt"
    )
    prompt_flag: str = Field(default="-p", description="Flag preceding the prompt argument")
    timeout_ms: int = Field(default=600000, ge=1, description="Hard wall-clock limit per run")


class DaemonConfig(BaseModel):
    """
    Complete daemon configuration.

    Paths may be 'auto' until resolved by ConfigManager.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: str = "1.0"
    vault_path: str = Field(default="auto", description="Root directory of the vault")
    log_path: str = Field(default="auto", description="Daemon log file")
    log_max_size_mb: float = Field(default=10, gt=0, description="Log truncation threshold")
    log_level: str = Field(default="INFO", description="Minimum level written to the log")
    state_path: str = Field(default="auto", description="Status JSON file")
    lock_path: str = Field(default="auto", description="Single-instance lock file")

    tasks: TaskSettings = Field(default_factory=TaskSettings)
    agent_tags: AgentTagSettings = Field(default_factory=AgentTagSettings)
    agent: AgentSettings = Field(
        default_factory=AgentSettings,
        validation_alias=AliasChoices("agent", "claude")
    )

    @property
    def tasks_root(self) -> Path:
        """Directory holding the lifecycle folders."""
        return Path(self.vault_path) / "Tasks"
