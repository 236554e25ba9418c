"""
Structural line diffs with intra-line highlights, and the patch algebra
the staging engine builds on.

Texts are split on "\\n" without dropping the trailing empty element, so
joining the lines of any text produced here with "\\n" reproduces it
byte for byte (trailing newline included).
"""

from difflib import SequenceMatcher

from repoengine.lib.constants import DIFF_CONTEXT
from repoengine.lib.types import DiffHunk, DiffLine, IntraRange, SplitRow

ADD = "add"
REMOVE = "remove"
CONTEXT = "context"


def split_lines(text: str) -> list[str]:
    return text.split("\n")


def join_lines(lines: list[str]) -> str:
    return "\n".join(lines)


def _hunk_from_group(group, old: list[str], new: list[str]) -> DiffHunk:
    i1, i2 = group[0][1], group[-1][2]
    j1, j2 = group[0][3], group[-1][4]
    old_lines, new_lines = i2 - i1, j2 - j1
    hunk = DiffHunk(
        # A zero-length side is numbered after the line it follows, as git does
        old_start=i1 + 1 if old_lines else i1,
        old_lines=old_lines,
        new_start=j1 + 1 if new_lines else j1,
        new_lines=new_lines,
    )
    for tag, a1, a2, b1, b2 in group:
        if tag == "equal":
            for offset in range(a2 - a1):
                hunk.lines.append(DiffLine(
                    type=CONTEXT,
                    content=old[a1 + offset],
                    old_line_no=a1 + offset + 1,
                    new_line_no=b1 + offset + 1,
                ))
            continue
        if tag in ("replace", "delete"):
            for i in range(a1, a2):
                hunk.lines.append(DiffLine(type=REMOVE, content=old[i], old_line_no=i + 1))
        if tag in ("replace", "insert"):
            for j in range(b1, b2):
                hunk.lines.append(DiffLine(type=ADD, content=new[j], new_line_no=j + 1))
    return hunk


def char_ranges(old: str, new: str) -> tuple[list[IntraRange], list[IntraRange]]:
    """Changed character ranges on each side of a line pair."""
    removed, added = [], []
    for tag, i1, i2, j1, j2 in SequenceMatcher(None, old, new, autojunk=False).get_opcodes():
        if tag == "equal":
            continue
        if i2 > i1:
            removed.append(IntraRange(start=i1, end=i2))
        if j2 > j1:
            added.append(IntraRange(start=j1, end=j2))
    return removed, added


def _mark_intra_line(lines: list[DiffLine]) -> None:
    # Only a remove directly followed by an add is compared
    i = 0
    while i < len(lines) - 1:
        current, following = lines[i], lines[i + 1]
        if current.type == REMOVE and following.type == ADD:
            current.intra_changes, following.intra_changes = char_ranges(current.content, following.content)
            i += 2
            continue
        i += 1


def compute_diff(old_text: str, new_text: str, context: int = DIFF_CONTEXT) -> list[DiffHunk]:
    """
    Diff two texts into hunks with `context` lines around each change.

    Identical inputs (including two empty strings) yield no hunks.
    """
    old, new = split_lines(old_text), split_lines(new_text)
    matcher = SequenceMatcher(None, old, new, autojunk=False)
    hunks = []
    for group in matcher.get_grouped_opcodes(context):
        if all(tag == "equal" for tag, *_ in group):
            continue
        hunk = _hunk_from_group(group, old, new)
        _mark_intra_line(hunk.lines)
        hunks.append(hunk)
    return hunks


def build_side_by_side_rows(lines: list[DiffLine]) -> list[SplitRow]:
    """
    Pair hunk lines into two-column rows.

    A run of removes is paired index-for-index with the run of adds that
    immediately follows it; the shorter side is padded with None.
    """
    rows: list[SplitRow] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.type == CONTEXT:
            rows.append(SplitRow(left=line, right=line))
            i += 1
            continue

        removes = []
        while i < len(lines) and lines[i].type == REMOVE:
            removes.append(lines[i])
            i += 1
        adds = []
        while i < len(lines) and lines[i].type == ADD:
            adds.append(lines[i])
            i += 1
        for k in range(max(len(removes), len(adds))):
            rows.append(SplitRow(
                left=removes[k] if k < len(removes) else None,
                right=adds[k] if k < len(adds) else None,
            ))
    return rows


def _old_offset(hunk: DiffHunk) -> int:
    """0-based index of the hunk's first old line."""
    return hunk.old_start - 1 if hunk.old_lines else hunk.old_start


def _new_offset(hunk: DiffHunk) -> int:
    return hunk.new_start - 1 if hunk.new_lines else hunk.new_start


def apply_hunk(old_text: str, hunk: DiffHunk) -> str:
    """Apply one hunk computed against old_text and leave the rest of old_text as is."""
    lines = split_lines(old_text)
    start = _old_offset(hunk)
    replacement = [line.content for line in hunk.lines if line.type != REMOVE]
    lines[start:start + hunk.old_lines] = replacement
    return join_lines(lines)


def apply_hunks_except(old_text: str, hunks: list[DiffHunk], skip: int) -> str:
    """Apply every hunk but `skip` onto old_text, bottom-up so offsets stay valid."""
    text = old_text
    for index in range(len(hunks) - 1, -1, -1):
        if index != skip:
            text = apply_hunk(text, hunks[index])
    return text


def apply_line(old_text: str, hunk: DiffHunk, line_index: int) -> str:
    """
    Apply a single add or remove line of a hunk onto old_text.

    The position is found with a running offset over the lines before the
    target: context and removed lines exist in old_text and advance it,
    added lines do not.
    """
    target = hunk.lines[line_index]
    if target.type == CONTEXT:
        return old_text
    lines = split_lines(old_text)
    position = _old_offset(hunk)
    for line in hunk.lines[:line_index]:
        if line.type != ADD:
            position += 1
    if target.type == ADD:
        lines.insert(position, target.content)
    else:
        del lines[position]
    return join_lines(lines)


def revert_line(new_text: str, hunk: DiffHunk, line_index: int) -> str:
    """
    Undo a single add or remove line of a hunk within new_text.

    Mirror of apply_line over the new side: context and added lines exist
    in new_text and advance the offset, removed lines do not.
    """
    target = hunk.lines[line_index]
    if target.type == CONTEXT:
        return new_text
    lines = split_lines(new_text)
    position = _new_offset(hunk)
    for line in hunk.lines[:line_index]:
        if line.type != REMOVE:
            position += 1
    if target.type == ADD:
        del lines[position]
    else:
        lines.insert(position, target.content)
    return join_lines(lines)
