"""
Directive scanner.

Walks the vault for Markdown documents containing inline directives and
hands each directive to the agent.
"""

import os
import re
import logging
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from vault_daemon.models import DaemonConfig, Directive
from vault_daemon.extractor import extract_directives
from vault_daemon.agent_runner import AgentRunner, AgentRunError
from vault_daemon.prompts import build_directive_prompt
from vault_daemon.status import StatusStore


logger = logging.getLogger(__name__)


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """
    Compile a vault-relative glob.

    '**' matches across directories, '*' and '?' stay within one path
    segment. The whole relative path must match.
    """
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


class DirectiveScanner:
    """
    Finds and processes inline directives across the vault.

    Directives in one file run one after another; different files may be
    processed concurrently.
    """

    def __init__(self, config: DaemonConfig, runner: AgentRunner, status: StatusStore):
        """
        Initialize scanner.

        Args:
            config: Resolved daemon configuration
            runner: Agent runner used for each directive
            status: Status store for counters and errors
        """
        self.settings = config.agent_tags
        self.vault_path = Path(config.vault_path)
        self.tasks_root = config.tasks_root
        self.extension = config.tasks.document_extension
        self.runner = runner
        self.status = status

        self._ignore = [glob_to_regex(p) for p in self.settings.ignore_patterns]

        # One lock per document path
        self._file_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._stop = threading.Event()
        self._periodic: Optional[threading.Thread] = None
        self._file_threads: Set[threading.Thread] = set()

    # Eligibility

    def relative(self, path: Path) -> Optional[str]:
        """Vault-relative POSIX path, or None outside the vault."""
        try:
            return Path(path).relative_to(self.vault_path).as_posix()
        except ValueError:
            return None

    def is_ignored(self, path: Path) -> bool:
        """True for paths outside the vault, in the Tasks area or matching an ignore pattern."""
        path = Path(path)
        if path == self.tasks_root or self.tasks_root in path.parents:
            return True

        rel = self.relative(path)
        if rel is None:
            return True
        return any(regex.match(rel) for regex in self._ignore)

    def is_document(self, path: Path) -> bool:
        path = Path(path)
        return path.suffix == self.extension and not self.is_ignored(path)

    def iter_documents(self) -> Iterator[Path]:
        """Eligible documents under the vault, skipping ignored directories."""
        for dirpath, dirnames, filenames in os.walk(self.vault_path):
            current = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if not self.is_ignored(current / d))
            for filename in sorted(filenames):
                path = current / filename
                if self.is_document(path):
                    yield path

    # Scanning

    def scan_all(self) -> int:
        """
        Scan every eligible document once.

        Returns:
            Number of directives processed successfully
        """
        logger.debug("Scanning vault for directives...")
        self.status.record_scan()

        processed = 0
        try:
            for path in self.iter_documents():
                if self._stop.is_set():
                    break
                processed += self.scan_file(path)
        except OSError as e:
            logger.error(f"Scan failed: {e}")
            self.status.record_error(f"Scan failed: {e}")

        return processed

    def scan_file(self, path: Path) -> int:
        """
        Process all directives in one document, in line order.

        Returns:
            Number of directives processed successfully
        """
        path = Path(path)
        with self._lock_for(path):
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.debug(f"Document vanished before scan: {path.name}")
                return 0
            except (OSError, UnicodeDecodeError) as e:
                logger.error(f"Failed to read document {path}: {e}")
                return 0

            directives = extract_directives(content, self.settings.trigger)
            processed = 0
            for directive in directives:
                if self._stop.is_set():
                    break
                if self.process_directive(path, directive):
                    processed += 1
            return processed

    def process_directive(self, path: Path, directive: Directive) -> bool:
        """
        Hand one directive to the agent.

        The agent edits the file and removes the directive line itself.

        Returns:
            True if the agent run succeeded
        """
        path = Path(path)
        logger.info(
            f"Processing directive in {path.name}:{directive.line_number}: "
            f"\"{directive.instruction[:50]}\""
        )

        try:
            # Earlier directives in this file may have changed it
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"Document vanished before directive ran: {path.name}")
            return False
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read document {path}: {e}")
            return False

        try:
            self.runner.run(
                build_directive_prompt(path, directive, content),
                label=f"{path.name}:{directive.line_number}"
            )
        except AgentRunError as e:
            logger.error(f"Directive failed in {path.name}: {e}")
            self.status.record_error(str(e))
            return False

        logger.info(f"Completed directive in {path.name}")
        self.status.directive_processed()
        return True

    def _lock_for(self, path: Path) -> threading.Lock:
        key = str(path)
        with self._locks_guard:
            if key not in self._file_locks:
                self._file_locks[key] = threading.Lock()
            return self._file_locks[key]

    # Triggers

    def submit_file(self, path: Path) -> Optional[threading.Thread]:
        """
        Scan a changed document on its own thread.

        Returns:
            The started thread, or None if the path is not eligible
        """
        path = Path(path)
        if self._stop.is_set() or not self.is_document(path):
            return None

        thread = threading.Thread(
            target=self._scan_file_safely,
            args=(path,),
            name=f"Scan-{path.name}",
            daemon=True
        )
        with self._locks_guard:
            self._file_threads.add(thread)
        thread.start()
        return thread

    def _scan_file_safely(self, path: Path) -> None:
        try:
            self.scan_file(path)
        except Exception as e:
            logger.error(f"Error scanning {path}: {e}", exc_info=True)
        finally:
            with self._locks_guard:
                self._file_threads.discard(threading.current_thread())

    def start_periodic(self) -> None:
        """Scan now and then every scan_interval_ms until stop()."""
        if self._periodic is not None:
            return

        self._stop.clear()
        self._periodic = threading.Thread(
            target=self._periodic_loop,
            name="DirectiveScanner",
            daemon=True
        )
        self._periodic.start()

    def _periodic_loop(self) -> None:
        interval = self.settings.scan_interval_ms / 1000.0
        while not self._stop.is_set():
            try:
                self.scan_all()
            except Exception as e:
                logger.error(f"Error in periodic scan: {e}", exc_info=True)

            if self._stop.wait(timeout=interval):
                break

    def request_stop(self) -> None:
        """Stop starting directives without waiting for running ones."""
        self._stop.set()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the periodic scan and wait briefly for scan threads."""
        self._stop.set()

        threads: List[threading.Thread] = []
        if self._periodic is not None:
            threads.append(self._periodic)
        with self._locks_guard:
            threads.extend(self._file_threads)

        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)

        self._periodic = None
