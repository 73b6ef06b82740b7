"""
Size-bounded log file for the daemon.

Appends one "[timestamp] [LEVEL] message" line per record. When the file
grows past its threshold the oldest ~20% of lines are dropped before the
next append.
"""

import sys
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone


# Fraction of lines kept when the log is over its threshold
KEEP_FRACTION = 0.8

LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


class SinkFormatter(logging.Formatter):
    """Formats records as [ISO-8601 timestamp] [LEVEL] message."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        timestamp = timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        level = LEVEL_NAMES.get(record.levelno, "INFO")
        message = record.getMessage()
        if record.exc_info:
            # Keep one line per entry
            message = f"{message} ({self.formatException(record.exc_info).splitlines()[-1]})"
        # Agent output may span lines; one entry stays one line
        message = message.replace("\r\n", "\n").replace("\r", "\n").replace("\n", "\\n")
        return f"[{timestamp}] [{level}] {message}"


class LogSink(logging.Handler):
    """
    Append-only log handler with approximate size bound.

    The bound is checked before each append, so the file may briefly
    exceed max_bytes by one line.
    """

    def __init__(self, log_path: Path, max_bytes: int):
        """
        Initialize the sink.

        Args:
            log_path: File to append to (parent directories are created)
            max_bytes: Size above which the oldest lines are discarded
        """
        super().__init__()
        self.log_path = Path(log_path)
        self.max_bytes = max_bytes
        self._write_lock = threading.Lock()
        self.setFormatter(SinkFormatter())
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            self.write_line(line)
        except Exception:
            self.handleError(record)

    def write_line(self, line: str) -> None:
        """Truncate if needed, then append one line."""
        with self._write_lock:
            self.truncate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def truncate_if_needed(self) -> bool:
        """
        Drop the oldest ~20% of lines if the file is over the threshold.

        Returns:
            True if the file was rewritten
        """
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            return False

        if size <= self.max_bytes:
            return False

        lines = self.log_path.read_text(encoding="utf-8", errors="replace").splitlines(keepends=True)
        keep = int(len(lines) * KEEP_FRACTION)
        remainder = lines[len(lines) - keep:] if keep else []
        self.log_path.write_text("".join(remainder), encoding="utf-8")
        return True


def setup_logging(
    log_path: Path,
    max_size_mb: float = 10,
    level: str = "INFO",
    console: bool = True
) -> LogSink:
    """
    Configure root logging for the daemon.

    Args:
        log_path: Log file location
        max_size_mb: Truncation threshold in megabytes
        level: Minimum level name
        console: Also log to stdout

    Returns:
        The installed LogSink
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Replace sinks from an earlier call
    for handler in list(root.handlers):
        if isinstance(handler, LogSink) or getattr(handler, "_vault_daemon_console", False):
            root.removeHandler(handler)
            handler.close()

    sink = LogSink(log_path, int(max_size_mb * 1024 * 1024))
    root.addHandler(sink)

    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        stream._vault_daemon_console = True
        root.addHandler(stream)

    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)

    return sink
