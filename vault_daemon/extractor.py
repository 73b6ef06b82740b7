"""
Inline directive extraction.

Finds "@agent <instruction>" lines in Markdown text while ignoring code,
tables, quotes and documentation that merely mentions the trigger.
"""

import re
from typing import List

from vault_daemon.models import Directive


DEFAULT_TRIGGER = "@agent"

FENCE = "```"
FENCED_BLOCK_RE = re.compile(r"```[\s\S]*?```")

# Arrow glyphs used in diagrams and docs
ARROW_GLYPHS = ("→", "←", "↔", "⇒", "⟶")

INDENTED_CODE_RE = re.compile(r"^(?: {4,}|\t)")


def blank_fenced_blocks(text: str) -> str:
    """Replace fenced code blocks with empty lines, keeping line numbers."""
    return FENCED_BLOCK_RE.sub(lambda m: "\n" * m.group(0).count("\n"), text)


def is_documentation_line(line: str, trigger: str = DEFAULT_TRIGGER) -> bool:
    """
    True if the line should never be read as a directive.

    Tables, arrows, fence markers, blockquotes, headings that mention the
    trigger, indented code and inline-code mentions of the trigger.
    """
    stripped = line.strip()
    return (
        "|" in line
        or any(glyph in line for glyph in ARROW_GLYPHS)
        or FENCE in line
        or stripped.startswith(">")
        or (stripped.startswith("#") and trigger in line)
        or INDENTED_CODE_RE.match(line) is not None
        or f"`{trigger}" in line
        or f"{trigger}`" in line
    )


def extract_directives(text: str, trigger: str = DEFAULT_TRIGGER) -> List[Directive]:
    """
    Extract inline directives from document text.

    Args:
        text: Full document content
        trigger: Token that must start the line

    Returns:
        Directives in line order (no deduplication)
    """
    directive_re = re.compile(rf"^\s*{re.escape(trigger)}\s+(.+)$")
    directives = []

    for index, line in enumerate(blank_fenced_blocks(text).split("\n")):
        line = line.rstrip("\r")
        if is_documentation_line(line, trigger):
            continue

        match = directive_re.match(line)
        if not match:
            continue

        instruction = match.group(1).strip()
        if instruction:
            directives.append(Directive(
                source_line=line,
                instruction=instruction,
                line_number=index + 1,
            ))

    return directives
