"""Tests for repoengine.ops.diff module."""

import pytest

from repoengine.ops.diff import (
    ADD,
    CONTEXT,
    REMOVE,
    apply_hunk,
    apply_hunks_except,
    apply_line,
    build_side_by_side_rows,
    char_ranges,
    compute_diff,
    revert_line,
)
from repoengine.lib.types import DiffLine

TEN = "".join(f"line{i}\n" for i in range(1, 11))
TEN_TWO_EDITS = TEN.replace("line1\n", "LINE1\n").replace("line10\n", "LINE10\n")


class TestComputeDiff:
    """Test hunk construction."""

    @pytest.mark.parametrize("text", ["", "a", "a\nb\n", "\n\n\n", TEN])
    def test_identical_texts_have_no_hunks(self, text):
        assert compute_diff(text, text) == []

    def test_single_replacement(self):
        hunks = compute_diff("a\nb\nc\n", "a\nB\nc\n")
        assert len(hunks) == 1
        hunk = hunks[0]
        assert [l.type for l in hunk.lines] == [CONTEXT, REMOVE, ADD, CONTEXT, CONTEXT]
        assert hunk.lines[1].content == "b"
        assert hunk.lines[1].old_line_no == 2
        assert hunk.lines[1].new_line_no is None
        assert hunk.lines[2].new_line_no == 2
        assert hunk.lines[2].old_line_no is None
        assert hunk.header == "@@ -1,4 +1,4 @@"

    def test_distant_changes_split_into_hunks(self):
        hunks = compute_diff(TEN, TEN_TWO_EDITS)
        assert len(hunks) == 2
        assert hunks[0].old_start == 1
        assert hunks[1].lines[-1].type == CONTEXT

    def test_context_window_is_three_lines(self):
        hunks = compute_diff(TEN, TEN.replace("line5\n", "five\n"))
        contents = [l.content for l in hunks[0].lines]
        assert contents[0] == "line2"
        assert contents[-1] == "line8"

    def test_empty_to_content(self):
        hunks = compute_diff("", "new\n")
        assert [l.type for l in hunks[0].lines].count(ADD) == 1
        assert [l.type for l in hunks[0].lines].count(REMOVE) == 0


class TestIntraLine:
    """Test character-level highlights."""

    def test_adjacent_pair_gets_ranges(self):
        hunk = compute_diff("let x = 1\n", "let y = 1\n")[0]
        removed = next(l for l in hunk.lines if l.type == REMOVE)
        added = next(l for l in hunk.lines if l.type == ADD)
        assert [(r.start, r.end) for r in removed.intra_changes] == [(4, 5)]
        assert [(r.start, r.end) for r in added.intra_changes] == [(4, 5)]

    def test_non_adjacent_remove_and_add_not_compared(self):
        hunk = compute_diff("a\nb\nc", "a\nc\nd")[0]
        assert [l.type for l in hunk.lines] == [CONTEXT, REMOVE, CONTEXT, ADD]
        assert all(not l.intra_changes for l in hunk.lines)

    def test_ranges_within_line_bounds(self):
        old = "alpha beta\nshort\n\nsame\n"
        new = "alpha gamma beta\nmuch longer line\nx\nsame\n"
        for hunk in compute_diff(old, new):
            for line in hunk.lines:
                for r in line.intra_changes:
                    assert 0 <= r.start <= r.end <= len(line.content)

    def test_char_ranges_pure_insertion(self):
        removed, added = char_ranges("ab", "aXb")
        assert removed == []
        assert [(r.start, r.end) for r in added] == [(1, 2)]


class TestSideBySide:
    """Test two-column row pairing."""

    def line(self, kind, content):
        return DiffLine(type=kind, content=content)

    def test_removes_pair_with_following_adds(self):
        lines = [
            self.line(CONTEXT, "c1"),
            self.line(REMOVE, "r1"),
            self.line(REMOVE, "r2"),
            self.line(ADD, "a1"),
            self.line(CONTEXT, "c2"),
            self.line(ADD, "a2"),
        ]
        rows = build_side_by_side_rows(lines)
        pairs = [
            (r.left.content if r.left else None, r.right.content if r.right else None)
            for r in rows
        ]
        assert pairs == [("c1", "c1"), ("r1", "a1"), ("r2", None), ("c2", "c2"), (None, "a2")]

    def test_more_adds_than_removes(self):
        rows = build_side_by_side_rows([self.line(REMOVE, "r"), self.line(ADD, "a"), self.line(ADD, "b")])
        assert rows[1].left is None
        assert rows[1].right.content == "b"


class TestPatchAlgebra:
    """Test applying hunks and single lines."""

    @pytest.mark.parametrize("index", [0, 1])
    def test_apply_one_hunk_only(self, index):
        hunks = compute_diff(TEN, TEN_TWO_EDITS)
        result = apply_hunk(TEN, hunks[index])
        expected = TEN.replace("line1\n", "LINE1\n") if index == 0 else TEN.replace("line10\n", "LINE10\n")
        assert result == expected

    def test_apply_hunks_except(self):
        hunks = compute_diff(TEN, TEN_TWO_EDITS)
        assert apply_hunks_except(TEN, hunks, 0) == TEN.replace("line10\n", "LINE10\n")

    def test_apply_all_hunks_reproduces_new(self):
        hunks = compute_diff(TEN, TEN_TWO_EDITS)
        assert apply_hunks_except(TEN, hunks, -1) == TEN_TWO_EDITS

    def test_apply_single_added_line(self):
        hunk = compute_diff("a\nb\nc", "a\nx\ny\nc")[0]
        assert [l.type for l in hunk.lines] == [CONTEXT, REMOVE, ADD, ADD, CONTEXT]
        assert apply_line("a\nb\nc", hunk, 3) == "a\nb\ny\nc"

    def test_apply_single_removed_line(self):
        hunk = compute_diff("a\nb\nc", "a\nx\ny\nc")[0]
        assert apply_line("a\nb\nc", hunk, 1) == "a\nc"

    def test_revert_single_added_line(self):
        hunk = compute_diff("a\nb\nc", "a\nx\ny\nc")[0]
        assert revert_line("a\nx\ny\nc", hunk, 2) == "a\ny\nc"

    def test_revert_single_removed_line(self):
        hunk = compute_diff("a\nb\nc", "a\nx\ny\nc")[0]
        assert revert_line("a\nx\ny\nc", hunk, 1) == "a\nb\nx\ny\nc"

    def test_context_line_is_a_no_op(self):
        hunk = compute_diff("a\nb\nc", "a\nx\nc")[0]
        assert apply_line("a\nb\nc", hunk, 0) == "a\nb\nc"

    def test_trailing_newline_preserved(self):
        hunk = compute_diff("a\n", "a\nb\n")[0]
        added = next(i for i, l in enumerate(hunk.lines) if l.type == ADD)
        assert apply_line("a\n", hunk, added) == "a\nb\n"
