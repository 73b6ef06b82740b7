"""
Watchdog-based file system monitoring for the vault.

Turns raw file events into debounced, per-path notifications for the
task queue (Inbox and Blocked folders) and the directive scanner
(documents anywhere else in the vault).
"""

from __future__ import annotations

import os
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent


logger = logging.getLogger(__name__)


class Debouncer:
    """
    Per-key single-slot timers.

    touch(key) (re)starts the quiet window for key; the callback runs once
    the key has been quiet for the whole window. A new touch replaces the
    outstanding timer rather than adding another.
    """

    def __init__(self, debounce_ms: int, callback: Callable[[str], None], name: str = "debounce"):
        """
        Initialize debouncer.

        Args:
            debounce_ms: Quiet period in milliseconds
            callback: Called with the key after the quiet period
            name: Used in timer thread names and logs
        """
        self.debounce_seconds = debounce_ms / 1000.0
        self.callback = callback
        self.name = name
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False

    def touch(self, key: str) -> None:
        """Start or restart the quiet window for key."""
        with self._lock:
            if self._closed:
                return

            existing = self._timers.pop(key, None)
            if existing is not None:
                existing.cancel()

            timer = threading.Timer(self.debounce_seconds, self._fire, args=(key,))
            timer.name = f"{self.name}-{Path(key).name}"
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def _fire(self, key: str) -> None:
        with self._lock:
            # A replaced timer may still wake up; only the current one counts
            if self._timers.get(key) is not threading.current_thread():
                return
            del self._timers[key]

        try:
            self.callback(key)
        except Exception as e:
            logger.error(f"Error handling {self.name} event for {key}: {e}", exc_info=True)

    def pending(self) -> List[str]:
        """Keys with an outstanding window."""
        with self._lock:
            return list(self._timers)

    def cancel_all(self) -> int:
        """
        Cancel every outstanding window and refuse new ones.

        Returns:
            Number of windows cancelled
        """
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()

        for timer in timers:
            timer.cancel()

        return len(timers)


class DebouncedHandler(FileSystemEventHandler):
    """
    Forwards selected file events to a debouncer.

    Only files accepted by the predicate and event kinds listed in
    `events` are forwarded.
    """

    def __init__(
        self,
        debouncer: Debouncer,
        accept: Callable[[Path], bool],
        events: FrozenSet[str] = frozenset({"created", "modified", "moved"})
    ):
        super().__init__()
        self.debouncer = debouncer
        self.accept = accept
        self.events = events

    def on_created(self, event: FileSystemEvent) -> None:
        if "created" in self.events and not event.is_directory:
            self._forward(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if "modified" in self.events and not event.is_directory:
            self._forward(event.src_path, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        if "moved" in self.events and not event.is_directory:
            self._forward(event.dest_path, "moved")

    def _forward(self, raw_path, event_type: str) -> None:
        path = Path(os.fsdecode(raw_path))
        try:
            if not self.accept(path):
                return
        except Exception as e:
            logger.error(f"Error filtering {event_type} event for {path}: {e}", exc_info=True)
            return

        logger.debug(f"File {event_type}: {path.name}")
        self.debouncer.touch(str(path))


class InboxHandler(DebouncedHandler):
    """New or rewritten task files in the Inbox."""

    def __init__(self, debouncer: Debouncer, accept: Callable[[Path], bool]):
        super().__init__(debouncer, accept, frozenset({"created", "modified", "moved"}))


class BlockedHandler(DebouncedHandler):
    """
    User edits to Blocked tasks.

    Files arriving in the folder (lifecycle moves, initial population) are
    not edits and are ignored. An editor's save-by-rename inside the
    folder counts as an edit.
    """

    def __init__(self, debouncer: Debouncer, accept: Callable[[Path], bool]):
        super().__init__(debouncer, accept, frozenset({"modified"}))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = Path(os.fsdecode(event.src_path))
        dest = Path(os.fsdecode(event.dest_path))
        if src.parent == dest.parent:
            self._forward(event.dest_path, "saved")


class VaultHandler(DebouncedHandler):
    """Document changes anywhere in the vault, for the directive scanner."""

    def __init__(self, debouncer: Debouncer, accept: Callable[[Path], bool]):
        super().__init__(debouncer, accept, frozenset({"created", "modified", "moved"}))


class WatchdogManager:
    """
    Manages one watchdog observer per watched directory.
    """

    def __init__(self):
        self._observers: Dict[str, Observer] = {}

    def add(
        self,
        name: str,
        path: Path,
        handler: FileSystemEventHandler,
        recursive: bool = False
    ) -> bool:
        """
        Start watching a directory.

        Args:
            name: Identifier for logs and is_watching()
            path: Directory to watch
            handler: Event handler
            recursive: Watch subdirectories

        Returns:
            True if the observer started
        """
        if name in self._observers:
            logger.warning(f"'{name}' is already being watched")
            return False

        watch_path = Path(path)
        if not watch_path.is_dir():
            logger.error(f"Watch directory does not exist: {watch_path}")
            return False

        observer = Observer()
        observer.schedule(handler, str(watch_path), recursive=recursive)
        observer.start()

        self._observers[name] = observer
        logger.info(f"Watching '{name}': {watch_path}")
        return True

    def remove(self, name: str) -> None:
        """Stop watching one directory."""
        observer = self._observers.pop(name, None)
        if observer is None:
            return

        try:
            observer.stop()
            observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping observer for '{name}': {e}", exc_info=True)

        logger.debug(f"Stopped watching '{name}'")

    def stop_all(self) -> None:
        for name in list(self._observers):
            self.remove(name)

    def is_watching(self, name: str) -> bool:
        observer: Optional[Observer] = self._observers.get(name)
        return observer is not None and observer.is_alive()

    def watched(self) -> List[str]:
        return [name for name in self._observers if self.is_watching(name)]
