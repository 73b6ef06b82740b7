"""
Atomic file operations and single-instance locking.

Provides safe write operations for the status file and task documents,
and an inter-process lock that keeps a second daemon off the same machine.
"""

import os
import fcntl
import tempfile
from pathlib import Path
from typing import Any, Optional
import json


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Readers never observe a partially written file.
    """

    @staticmethod
    def write_text(filepath: Path, content: str) -> None:
        """
        Atomically write text to a file.

        Args:
            filepath: Target file path
            content: Text to write

        Raises:
            OSError: If the write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path = None
        try:
            # Same directory so os.replace stays on one volume
            with tempfile.NamedTemporaryFile(
                mode='w',
                encoding='utf-8',
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix='.tmp',
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(content)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.replace(temp_path, filepath)

        except Exception:
            if temp_path and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path
            data: Data to serialize as JSON
            indent: JSON indentation level
        """
        AtomicFileWriter.write_text(filepath, json.dumps(data, indent=indent, default=str))

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read JSON file with safe defaults.

        Args:
            filepath: File to read
            default: Default value if file doesn't exist or is invalid

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            return default


class InstanceLock:
    """File-based lock to prevent multiple daemon instances."""

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file: Optional[Any] = None
        self.acquired = False

    def acquire(self) -> bool:
        """Acquire the lock. Returns True if successful, False if already locked."""
        try:
            self.lock_file = open(self.lock_path, 'a')
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_file.truncate(0)
            self.lock_file.write(str(os.getpid()))
            self.lock_file.flush()
            self.acquired = True
            return True
        except OSError:
            # Held by another process
            if self.lock_file:
                self.lock_file.close()
            self.lock_file = None
            return False

    def release(self) -> None:
        """Release the lock."""
        if self.lock_file:
            try:
                fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_UN)
                self.lock_file.close()
            except OSError:
                pass
            self.lock_file = None

            try:
                self.lock_path.unlink()
            except OSError:
                pass

        self.acquired = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
