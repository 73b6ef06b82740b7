"""Tests for vault_daemon.lifecycle module."""

import os
import threading

import pytest

from vault_daemon.models import DaemonState, Task, TaskLocation, TaskOutcome, TaskSettings
from vault_daemon.agent_runner import AgentExitError, AgentTimeoutError
from vault_daemon.lifecycle import TaskMover, TaskQueue
from vault_daemon.prompts import BLOCKING_MARKER

from conftest import FakeRunner, make_config, wait_for


def make_queue(vault, temp_dir, status, runner, **task_settings):
    settings = dict(debounce_ms=50, max_concurrent=2)
    settings.update(task_settings)
    config = make_config(vault, temp_dir, tasks=TaskSettings(**settings))
    return TaskQueue(config, runner, status)


def write_task(mover, name, content="Do the thing.", location=TaskLocation.INBOX):
    path = mover.folder(location) / name
    path.write_text(content)
    return path


class TestTaskMover:
    """Tests for TaskMover."""

    def test_ensure_folders(self, temp_dir):
        mover = TaskMover(temp_dir / "Tasks")
        mover.ensure_folders()

        for name in ("Inbox", "In Progress", "Blocked", "Completed"):
            assert (temp_dir / "Tasks" / name).is_dir()

    def test_move_keeps_name_and_content(self, mover, inbox_task):
        dest = mover.move(inbox_task, TaskLocation.IN_PROGRESS)

        assert dest == mover.folder(TaskLocation.IN_PROGRESS) / "summarize.md"
        assert dest.read_text() == "Summarize this folder."
        assert not inbox_task.exists()

    def test_move_missing_file(self, mover):
        with pytest.raises(FileNotFoundError):
            mover.move(mover.folder(TaskLocation.INBOX) / "gone.md", TaskLocation.IN_PROGRESS)

    def test_location_of(self, mover, inbox_task):
        assert mover.location_of(inbox_task) == TaskLocation.INBOX
        assert mover.location_of(mover.tasks_root / "loose.md") is None

    def test_is_task_file(self, mover):
        assert mover.is_task_file("note.md")
        assert not mover.is_task_file("note.txt")
        assert not mover.is_task_file(".hidden.md")

    def test_list_oldest_first(self, mover):
        newer = write_task(mover, "a.md")
        older = write_task(mover, "b.md")
        os.utime(older, (1000, 1000))
        os.utime(newer, (2000, 2000))
        write_task(mover, "ignored.txt")

        assert mover.list(TaskLocation.INBOX) == [older, newer]


class TestExecute:
    """Tests for single task execution."""

    def test_completed(self, vault, temp_dir, status, mover, inbox_task):
        runner = FakeRunner(stdout="Summary written to summary.md")
        queue = make_queue(vault, temp_dir, status, runner)

        assert queue.submit(inbox_task) is True
        assert queue.join(timeout=5)

        done = mover.folder(TaskLocation.COMPLETED) / "summarize.md"
        content = done.read_text()
        assert content.startswith("Summarize this folder.\n\n---\ncompleted_at: ")
        assert "## Completion Summary\n\nSummary written to summary.md" in content
        assert not inbox_task.exists()
        assert not (mover.folder(TaskLocation.IN_PROGRESS) / "summarize.md").exists()

        snapshot = status.snapshot()
        assert snapshot.tasks_completed_today == 1
        assert snapshot.active_tasks == 0
        assert snapshot.status == DaemonState.IDLE

    def test_prompt_contains_task(self, vault, temp_dir, status, inbox_task):
        runner = FakeRunner()
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        queue.join(timeout=5)

        assert len(runner.calls) == 1
        assert "Summarize this folder." in runner.calls[0]
        assert runner.labels == ["summarize.md"]

    def test_blocked_with_questions(self, vault, temp_dir, status, mover, inbox_task):
        """Test that output with the questions marker parks the task in Blocked."""
        output = f"I need more detail.\n\n{BLOCKING_MARKER}\n\n1. Which folder?"
        runner = FakeRunner(stdout=output)
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        assert queue.join(timeout=5)

        blocked = mover.folder(TaskLocation.BLOCKED) / "summarize.md"
        content = blocked.read_text()
        assert content.startswith("Summarize this folder.")
        assert "status: blocked" in content
        assert "blocked_at: " in content
        assert content.endswith(output)

        snapshot = status.snapshot()
        assert snapshot.active_tasks == 0
        assert snapshot.status == DaemonState.BLOCKED
        assert snapshot.tasks_completed_today == 0

    def test_agent_failure_parks_task_with_error(self, vault, temp_dir, status, mover, inbox_task):
        runner = FakeRunner(error=AgentExitError(1, stderr="model overloaded"))
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        assert queue.join(timeout=5)

        blocked = mover.folder(TaskLocation.BLOCKED) / "summarize.md"
        content = blocked.read_text()
        assert "status: error" in content
        assert "## Error" in content
        assert "model overloaded" in content
        assert "<!-- Fix the issue and move back to Inbox to retry -->" in content

        snapshot = status.snapshot()
        assert snapshot.status == DaemonState.ERROR
        assert "model overloaded" in snapshot.last_error

    def test_timeout_parks_task_with_error(self, vault, temp_dir, status, mover, inbox_task):
        runner = FakeRunner(error=AgentTimeoutError(600))
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        assert queue.join(timeout=5)

        content = (mover.folder(TaskLocation.BLOCKED) / "summarize.md").read_text()
        assert "status: error" in content
        assert "timed out" in content
        assert status.snapshot().active_tasks == 0

    def test_moved_to_in_progress_before_agent_runs(self, vault, temp_dir, status, mover, inbox_task):
        """Test that the In Progress move happens before the agent starts."""
        seen = {}

        def check(prompt):
            seen["inbox"] = inbox_task.exists()
            seen["in_progress"] = (mover.folder(TaskLocation.IN_PROGRESS) / "summarize.md").exists()

        runner = FakeRunner()
        runner.on_run = check
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        queue.join(timeout=5)

        assert seen == {"inbox": False, "in_progress": True}

    def test_vanished_before_start_is_skipped(self, vault, temp_dir, status, mover):
        runner = FakeRunner()
        queue = make_queue(vault, temp_dir, status, runner)
        path = mover.folder(TaskLocation.INBOX) / "gone.md"

        outcome, error = queue.execute(Task(path=path, name="gone.md", content="x"))

        assert outcome == TaskOutcome.SKIPPED
        assert error is None
        assert runner.calls == []

    def test_file_removed_during_run(self, vault, temp_dir, status, mover, inbox_task):
        """Test that a task deleted while the agent runs does not crash the worker."""
        def delete(prompt):
            (mover.folder(TaskLocation.IN_PROGRESS) / "summarize.md").unlink()

        runner = FakeRunner()
        runner.on_run = delete
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        assert queue.join(timeout=5)

        assert status.snapshot().active_tasks == 0
        for location in TaskLocation:
            assert not (mover.folder(location) / "summarize.md").exists()


    def test_task_moved_away_during_run_not_recreated(self, vault, temp_dir, status, mover, inbox_task):
        """Test that a task the user pulled back mid-run stays where they put it."""
        in_progress = mover.folder(TaskLocation.IN_PROGRESS) / "summarize.md"
        pulled = mover.folder(TaskLocation.INBOX) / "pulled.md"

        runner = FakeRunner()
        runner.on_run = lambda prompt: os.replace(in_progress, pulled)
        queue = make_queue(vault, temp_dir, status, runner)

        queue.submit(inbox_task)
        assert queue.join(timeout=5)

        assert not in_progress.exists()
        assert pulled.read_text() == "Summarize this folder."
        assert list(mover.folder(TaskLocation.BLOCKED).iterdir()) == []

    def test_write_back_never_creates_file(self, mover):
        missing = mover.folder(TaskLocation.IN_PROGRESS) / "gone.md"

        with pytest.raises(FileNotFoundError):
            TaskQueue._write_back(missing, "annotated")
        assert not missing.exists()

    def test_write_back_replaces_content(self, mover, inbox_task):
        TaskQueue._write_back(inbox_task, "short")
        assert inbox_task.read_text() == "short"


class TestAdmission:
    """Tests for queue admission and concurrency."""

    def test_non_task_files_ignored(self, vault, temp_dir, status, mover):
        runner = FakeRunner()
        queue = make_queue(vault, temp_dir, status, runner)

        assert queue.submit(write_task(mover, "notes.txt")) is False
        assert queue.submit(write_task(mover, ".draft.md")) is False
        assert runner.calls == []

    def test_missing_file_not_queued(self, vault, temp_dir, status, mover):
        queue = make_queue(vault, temp_dir, status, FakeRunner())
        assert queue.submit(mover.folder(TaskLocation.INBOX) / "gone.md") is False

    def test_duplicate_submit_ignored(self, vault, temp_dir, status, mover, inbox_task):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        queue = make_queue(vault, temp_dir, status, runner)

        assert queue.submit(inbox_task) is True
        assert queue.submit(inbox_task) is False

        gate.set()
        assert queue.join(timeout=5)
        assert len(runner.calls) == 1

    def test_concurrency_limit(self, vault, temp_dir, status, mover):
        """Test that at most max_concurrent tasks are in progress."""
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        queue = make_queue(vault, temp_dir, status, runner, max_concurrent=2)

        for name in ("a.md", "b.md", "c.md"):
            queue.submit(write_task(mover, name))

        assert wait_for(lambda: len(runner.calls) == 2)
        assert queue.running_count() == 2
        assert queue.pending_count() == 1
        assert status.active_tasks == 2
        assert len(mover.list(TaskLocation.IN_PROGRESS)) == 2

        gate.set()
        assert queue.join(timeout=5)
        assert len(runner.calls) == 3
        assert len(mover.list(TaskLocation.COMPLETED)) == 3
        assert status.snapshot().tasks_completed_today == 3

    def test_fifo_order(self, vault, temp_dir, status, mover):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        queue = make_queue(vault, temp_dir, status, runner, max_concurrent=1)

        for name in ("first.md", "second.md", "third.md"):
            queue.submit(write_task(mover, name))

        gate.set()
        assert queue.join(timeout=5)
        assert runner.labels == ["first.md", "second.md", "third.md"]

    def test_load_inbox(self, vault, temp_dir, status, mover):
        write_task(mover, "one.md")
        write_task(mover, "two.md")
        runner = FakeRunner()
        queue = make_queue(vault, temp_dir, status, runner)

        assert queue.load_inbox() == 2
        assert queue.join(timeout=5)
        assert len(mover.list(TaskLocation.COMPLETED)) == 2

    def test_stop_drops_queued_tasks(self, vault, temp_dir, status, mover):
        """Test that stop() leaves queued tasks in the Inbox."""
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        queue = make_queue(vault, temp_dir, status, runner, max_concurrent=1)

        queue.submit(write_task(mover, "a.md"))
        queue.submit(write_task(mover, "b.md"))
        assert wait_for(lambda: len(runner.calls) == 1)

        assert queue.stop() == 1
        assert queue.submit(write_task(mover, "c.md")) is False

        gate.set()
        assert queue.join(timeout=5)
        assert runner.labels == ["a.md"]
        assert (mover.folder(TaskLocation.INBOX) / "b.md").exists()

    def test_join_timeout(self, vault, temp_dir, status, inbox_task):
        gate = threading.Event()
        queue = make_queue(vault, temp_dir, status, FakeRunner(gate=gate))

        queue.submit(inbox_task)
        assert queue.join(timeout=0.1) is False

        gate.set()
        assert queue.join(timeout=5) is True


class TestReadmit:
    """Tests for Blocked re-admission."""

    def test_readmit_moves_unchanged(self, vault, temp_dir, status, mover):
        content = "Task\n\n---\nstatus: blocked\n---\n\n## Questions from Claude\n\nAnswer: the docs folder"
        blocked = write_task(mover, "edited.md", content, TaskLocation.BLOCKED)
        queue = make_queue(vault, temp_dir, status, FakeRunner())

        dest = queue.readmit(blocked)

        assert dest == mover.folder(TaskLocation.INBOX) / "edited.md"
        assert dest.read_text() == content
        assert not blocked.exists()

    def test_readmit_missing_file(self, vault, temp_dir, status, mover):
        queue = make_queue(vault, temp_dir, status, FakeRunner())
        assert queue.readmit(mover.folder(TaskLocation.BLOCKED) / "gone.md") is None

    def test_readmit_outside_blocked_ignored(self, vault, temp_dir, status, mover):
        completed = write_task(mover, "done.md", location=TaskLocation.COMPLETED)
        queue = make_queue(vault, temp_dir, status, FakeRunner())

        assert queue.readmit(completed) is None
        assert completed.exists()


class TestRecoverOrphans:
    """Tests for startup recovery of In Progress files."""

    def test_requeue(self, vault, temp_dir, status, mover):
        orphan = write_task(mover, "orphan.md", location=TaskLocation.IN_PROGRESS)
        queue = make_queue(vault, temp_dir, status, FakeRunner(), orphan_policy="requeue")

        assert queue.recover_orphans() == [orphan]
        assert (mover.folder(TaskLocation.INBOX) / "orphan.md").exists()
        assert not orphan.exists()

    def test_leave(self, vault, temp_dir, status, mover):
        orphan = write_task(mover, "orphan.md", location=TaskLocation.IN_PROGRESS)
        queue = make_queue(vault, temp_dir, status, FakeRunner(), orphan_policy="leave")

        assert queue.recover_orphans() == [orphan]
        assert orphan.exists()

    def test_no_orphans(self, vault, temp_dir, status):
        queue = make_queue(vault, temp_dir, status, FakeRunner())
        assert queue.recover_orphans() == []
