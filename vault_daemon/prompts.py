"""Prompt templates for task execution and inline directives."""

from pathlib import Path

from vault_daemon.models import Directive, Task


# Heading the agent prints when it cannot continue without the user
BLOCKING_MARKER = "## Questions from Claude"


def build_task_prompt(task: Task, vault_path: Path) -> str:
    """Prompt for executing one task file."""
    return (
        f"You are executing a task from the user's Obsidian vault task queue.\n"
        f"\n"
        f"TASK FILE: {task.name}\n"
        f"TASK CONTENT:\n"
        f"{task.content}\n"
        f"\n"
        f"INSTRUCTIONS:\n"
        f"1. Read the task carefully and execute what is requested\n"
        f"2. Work within the Obsidian vault at: {vault_path}\n"
        f"3. If you need clarification, respond with questions in a specific format (see below)\n"
        f"4. When complete, summarize what you did\n"
        f"\n"
        f"If you have questions that BLOCK your progress, output them in this exact format:\n"
        f"---\n"
        f"{BLOCKING_MARKER}\n"
        f"1. [Your question]\n"
        f"2. [Another question if needed]\n"
        f"<!-- Answer below or edit the task description above, then save -->\n"
        f"\n"
        f"Otherwise, complete the task and provide a summary of what was accomplished."
    )


def build_directive_prompt(path: Path, directive: Directive, content: str) -> str:
    """Prompt for one inline directive in a document."""
    return (
        f"You are processing an inline command in an Obsidian note.\n"
        f"\n"
        f"FILE: {path}\n"
        f"LINE: {directive.line_number}\n"
        f"INSTRUCTION: {directive.instruction}\n"
        f"\n"
        f"CURRENT FILE CONTENT:\n"
        f"{content}\n"
        f"\n"
        f"INSTRUCTIONS:\n"
        f"1. Execute the instruction in the context of this file\n"
        f"2. Edit the file in place to fulfill the request\n"
        f"3. REMOVE the command line after completing the task\n"
        f"4. Keep your changes focused and minimal\n"
        f"5. Preserve the rest of the file structure\n"
        f"\n"
        f"The line to remove is: \"{directive.source_line.strip()}\""
    )
