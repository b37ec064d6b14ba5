"""Line-range edits against a line-numbered rendering of a document.

Every edit in a batch addresses line numbers of the document as it was when
the batch was produced. Edits are applied bottom-to-top so that an edit
never shifts the lines another edit in the same batch refers to. Batches
must not contain overlapping ranges; overlaps are logged, not rejected.
"""

from dataclasses import dataclass

from agent_engine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LineEdit:
    """Replace lines ``start_line..end_line`` (1-based, inclusive) with ``new_content``.

    ``end_line == start_line - 1`` inserts before ``start_line`` without
    removing anything.
    """

    start_line: int
    end_line: int
    new_content: str
    narrative: str = ""


@dataclass(frozen=True)
class EditOutcome:
    edit: LineEdit
    success: bool
    old_content: str = ""
    content_after: str = ""
    error: str | None = None


def add_line_numbers(content: str) -> str:
    """Render ``content`` with a ``<<N>>`` prefix on every line."""
    return "\n".join(f"<<{i + 1}>> {line}" for i, line in enumerate(content.split("\n")))


def validate_edit(edit: LineEdit, total_lines: int) -> str | None:
    """Return an error message if ``edit`` does not fit a document of ``total_lines``."""
    if edit.start_line < 1 or edit.start_line > total_lines + 1:
        return (
            f"Invalid line range: start_line={edit.start_line}, end_line={edit.end_line}. "
            f"Document has {total_lines} lines."
        )
    if edit.end_line < edit.start_line - 1 or edit.end_line > total_lines:
        return (
            f"Invalid line range: start_line={edit.start_line}, end_line={edit.end_line}. "
            f"Document has {total_lines} lines."
        )
    return None


def find_overlaps(edits: list[LineEdit]) -> list[tuple[LineEdit, LineEdit]]:
    """Pairs of edits whose replaced ranges intersect."""
    ranged = sorted(
        (e for e in edits if e.end_line >= e.start_line), key=lambda e: (e.start_line, e.end_line)
    )
    overlaps = []
    for i, first in enumerate(ranged):
        for second in ranged[i + 1 :]:
            if second.start_line > first.end_line:
                break
            overlaps.append((first, second))
    return overlaps


def apply_line_edits(content: str, edits: list[LineEdit]) -> tuple[str, list[EditOutcome]]:
    """
    Apply a batch of edits bottom-to-top.

    Args:
        content: Document before the batch
        edits: Edits addressed against ``content``'s line numbers

    Returns:
        (final content, outcomes in application order). Invalid edits are
        reported with ``success=False`` and leave the document unchanged.
    """
    lines = content.split("\n")
    total_lines = len(lines)

    overlaps = find_overlaps(edits)
    if overlaps:
        logger.warning(
            f"{len(overlaps)} overlapping edit range(s) in one batch: "
            + ", ".join(
                f"{a.start_line}-{a.end_line}/{b.start_line}-{b.end_line}" for a, b in overlaps
            )
        )

    order = sorted(
        range(len(edits)),
        key=lambda i: (edits[i].start_line, edits[i].end_line),
        reverse=True,
    )

    outcomes: list[EditOutcome] = []
    for index in order:
        edit = edits[index]
        error = validate_edit(edit, total_lines)
        if error:
            outcomes.append(EditOutcome(edit=edit, success=False, error=error))
            continue

        start = edit.start_line - 1
        old_content = "\n".join(lines[start : edit.end_line])
        lines[start : edit.end_line] = edit.new_content.split("\n")
        outcomes.append(
            EditOutcome(
                edit=edit,
                success=True,
                old_content=old_content,
                content_after="\n".join(lines),
            )
        )

    return "\n".join(lines), outcomes
