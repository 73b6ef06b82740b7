"""
Configuration management for the vault daemon.

Handles loading the JSON config file, applying environment overrides
and resolving 'auto' values into concrete paths and commands.
"""

import os
import sys
import shutil
from pathlib import Path
from typing import Optional, List, Tuple

from dotenv import load_dotenv
from pydantic import ValidationError

from vault_daemon.models import DaemonConfig
from vault_daemon.atomic import AtomicFileWriter


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "vault-daemon"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

# Environment variables
ENV_CONFIG_FILE = "VAULT_DAEMON_CONFIG"
ENV_VAULT_PATH = "VAULT_DAEMON_VAULT"
ENV_DOTENV_FILE = "VAULT_DAEMON_ENV_FILE"

AUTO = "auto"

# Tried in order when the agent command is 'auto' and not on PATH
AGENT_FALLBACK_PATHS = [
    Path.home() / ".local" / "bin" / "claude",
    Path.home() / ".npm-global" / "bin" / "claude",
    Path("/usr/local/bin/claude"),
    Path("/opt/homebrew/bin/claude"),
]
NPX_PACKAGE_ARGS = ["--yes", "@anthropic-ai/claude-code"]


class ConfigError(Exception):
    """Configuration could not be loaded or resolved."""


def load_environment(env_file: Optional[Path] = None) -> None:
    """
    Load a .env file into the process environment.

    Existing environment variables win over values in the file.
    """
    path = env_file or os.environ.get(ENV_DOTENV_FILE)
    if path:
        load_dotenv(Path(path))
    else:
        load_dotenv(Path.cwd() / ".env")


class ConfigManager:
    """
    Loads and resolves daemon configuration.

    The resolved config is immutable; call reload() to read the file again.
    """

    def __init__(self, config_file: Optional[Path] = None, resolve_agent: bool = True):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to
                $VAULT_DAEMON_CONFIG or ~/.config/vault-daemon/config.json
            resolve_agent: Look up the agent executable when it is 'auto'

        Raises:
            ConfigError: If the file exists but is unreadable or invalid
        """
        if config_file:
            self.config_file = Path(config_file)
        elif os.environ.get(ENV_CONFIG_FILE):
            self.config_file = Path(os.environ[ENV_CONFIG_FILE])
        else:
            self.config_file = DEFAULT_CONFIG_FILE

        self.resolve_agent = resolve_agent
        self.raw_config = self._load_config()
        self.config = self.resolve(self.raw_config, resolve_agent)

    def _load_config(self) -> DaemonConfig:
        """Load configuration from file or fall back to defaults."""
        if not self.config_file.exists():
            return DaemonConfig()

        data = AtomicFileWriter.read_json(self.config_file)
        if not isinstance(data, dict):
            raise ConfigError(f"Config file is not a JSON object: {self.config_file}")

        try:
            return DaemonConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config file {self.config_file}: {e}") from e

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.raw_config = self._load_config()
        self.config = self.resolve(self.raw_config, self.resolve_agent)

    def save_default(self) -> bool:
        """
        Write a default config file if none exists.

        Returns:
            True if a file was written
        """
        if self.config_file.exists():
            return False

        AtomicFileWriter.write_json(
            self.config_file,
            DaemonConfig().model_dump(),
            indent=2
        )
        return True

    @staticmethod
    def resolve(config: DaemonConfig, resolve_agent: bool = True) -> DaemonConfig:
        """
        Replace 'auto' values with concrete settings.

        Args:
            config: Configuration as loaded from disk
            resolve_agent: Look up the agent executable when it is 'auto'

        Returns:
            New DaemonConfig with absolute paths and a concrete agent command

        Raises:
            ConfigError: If the vault does not exist or no agent command is found
        """
        vault_path = os.environ.get(ENV_VAULT_PATH) or config.vault_path
        if vault_path == AUTO:
            vault_path = str(Path.cwd())
        vault = Path(vault_path).expanduser().resolve()
        if not vault.is_dir():
            raise ConfigError(f"Vault directory does not exist: {vault}")

        log_path = config.log_path
        if log_path == AUTO:
            log_path = str(default_log_path())

        state_path = config.state_path
        if state_path == AUTO:
            state_path = str(Path.home() / ".vault-daemon-state.json")

        lock_path = config.lock_path
        if lock_path == AUTO:
            lock_path = str(DEFAULT_CONFIG_DIR / "vault-daemon.lock")

        command, args = config.agent.command, list(config.agent.args)
        if command == AUTO and resolve_agent:
            command, args = find_agent_command(args)

        agent = config.agent.model_copy(update={"command": command, "args": args})

        return config.model_copy(update={
            "vault_path": str(vault),
            "log_path": str(Path(log_path).expanduser()),
            "state_path": str(Path(state_path).expanduser()),
            "lock_path": str(Path(lock_path).expanduser()),
            "agent": agent,
        })


def default_log_path() -> Path:
    """Platform log location."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Logs" / "vault-daemon.log"
    return Path.home() / ".local" / "share" / "vault-daemon.log"


def find_agent_command(args: List[str]) -> Tuple[str, List[str]]:
    """
    Locate the agent executable.

    Args:
        args: Configured fixed arguments

    Returns:
        (command, args) with npx package arguments prepended when needed

    Raises:
        ConfigError: If no executable can be found
    """
    found = shutil.which("claude")
    if found:
        return found, args

    for candidate in AGENT_FALLBACK_PATHS:
        if candidate.exists():
            return str(candidate), args

    npx = shutil.which("npx")
    if npx:
        return npx, NPX_PACKAGE_ARGS + args

    raise ConfigError(
        "Agent CLI not found. Set agent.command in the config file "
        "or install it with: npm install -g @anthropic-ai/claude-code"
    )
