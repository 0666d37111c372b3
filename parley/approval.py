"""Operator approval for file writes.

Every write_file call stops here: the operator sees a line diff (or a preview
for new files) and must answer before the tool continues.
"""

import logging
import sys
from collections.abc import Callable

from . import fmt

logger = logging.getLogger(__name__)

RULE = "=" * 50
PREVIEW_LINES = 10
APPROVE_ANSWERS = ("y", "yes")


def render_diff(path: str, old_content: str, new_content: str) -> str:
    """Line-by-line comparison of old and new content.

    Lines are compared by index; a changed index yields a removal line for the
    old text (when it exists) and an addition line for the new text (when it
    exists).
    """
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")

    out = [f"Changes to {path}:", RULE]
    has_changes = False
    for i in range(max(len(old_lines), len(new_lines))):
        old_line = old_lines[i] if i < len(old_lines) else ""
        new_line = new_lines[i] if i < len(new_lines) else ""
        if old_line == new_line:
            continue
        has_changes = True
        if i < len(old_lines):
            out.append(f"- {i + 1}: {old_line}")
        if i < len(new_lines):
            out.append(f"+ {i + 1}: {new_line}")

    if not has_changes:
        out.append("No changes detected.")
    out.append(RULE)
    return "\n".join(out)


def render_creation_preview(path: str, new_content: str) -> str:
    """Preview of a file that does not exist yet: first lines plus a count."""
    lines = new_content.split("\n")
    out = [f"Creating new file: {path}", RULE, "Content preview:"]
    out.extend(lines[:PREVIEW_LINES])
    if len(lines) > PREVIEW_LINES:
        out.append(f"... ({len(lines) - PREVIEW_LINES} more lines)")
    out.append(RULE)
    return "\n".join(out)


def _prompt_operator(question: str) -> str:
    """Ask on the terminal. Declines when stdin is not interactive."""
    if not sys.stdin.isatty():
        fmt.warning("stdin is not a terminal, declining write (use --yes to approve)")
        return ""
    from prompt_toolkit import prompt

    return prompt(question)


class ApprovalGate:
    """Blocks each file write until the operator accepts or declines it."""

    def __init__(
        self,
        ask: Callable[[str], str] | None = None,
        *,
        auto_approve: bool = False,
        verbose: bool = True,
    ):
        self.ask = ask or _prompt_operator
        self.auto_approve = auto_approve
        self.verbose = verbose
        self.last_preview: str | None = None

    def preview(self, path: str, old_content: str | None, new_content: str) -> str:
        if old_content is None:
            return render_creation_preview(path, new_content)
        return render_diff(path, old_content, new_content)

    def confirm_write(
        self, path: str, old_content: str | None, new_content: str
    ) -> bool:
        """Show the pending change and return True if the operator accepts it."""
        block = self.preview(path, old_content, new_content)
        self.last_preview = block
        if self.verbose or not self.auto_approve:
            fmt.diff_block(block)

        if self.auto_approve:
            logger.info("Write to %s auto-approved", path)
            return True

        try:
            answer = self.ask("Approve these changes? (y/N): ")
        except (EOFError, KeyboardInterrupt):
            answer = ""
        accepted = (answer or "").strip().lower() in APPROVE_ANSWERS
        logger.info("Write to %s %s by operator", path, "approved" if accepted else "declined")
        return accepted
