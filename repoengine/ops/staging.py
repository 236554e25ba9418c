"""
Hunk- and line-level staging.

The index is only ever written through whole-file staging: an
intermediate content is written to the working file, the file is staged,
then the working file is put back exactly as it was. The restore runs on
every exit path.
"""

import logging

from repoengine.errors import RestorationFailed, ValidationError
from repoengine.git.backend import Backend
from repoengine.lib.types import DiffHunk
from repoengine.ops.diff import (
    CONTEXT,
    apply_hunk,
    apply_hunks_except,
    apply_line,
    compute_diff,
    revert_line,
)
from repoengine.ops.status import read_working_bytes, remove_working_file, write_working_file

logger = logging.getLogger(__name__)


def _select_hunk(old_content: str, new_content: str, hunk_index: int) -> tuple[list[DiffHunk], DiffHunk]:
    hunks = compute_diff(old_content, new_content)
    if not 0 <= hunk_index < len(hunks):
        raise ValidationError(f"Hunk index {hunk_index} out of range ({len(hunks)} hunks)")
    return hunks, hunks[hunk_index]


def _check_line(hunk: DiffHunk, line_index: int) -> None:
    if not 0 <= line_index < len(hunk.lines):
        raise ValidationError(f"Line index {line_index} out of range ({len(hunk.lines)} lines)")
    if hunk.lines[line_index].type == CONTEXT:
        raise ValidationError("Context lines cannot be staged or unstaged")


def write_index_content(backend: Backend, path: str, content: str) -> None:
    """
    Make the index hold `content` for path without changing the working file.

    Raises:
        RestorationFailed: the working file could not be put back
    """
    root = backend.root
    original = read_working_bytes(root, path)
    failure = None
    try:
        write_working_file(root, path, content)
        backend.stage_path(path)
    except Exception as e:
        failure = e
        raise
    finally:
        try:
            if original is None:
                remove_working_file(root, path)
            else:
                write_working_file(root, path, original)
        except OSError as restore_error:
            logger.error(f"CRITICAL: could not restore working copy of {path}: {restore_error}")
            raise RestorationFailed(
                f"Working file {path} was not restored", original=failure, cause=restore_error
            ) from restore_error


def stage_hunk(backend: Backend, path: str, old_content: str, new_content: str, hunk_index: int) -> str:
    """
    Stage one hunk of the old -> new diff.

    Returns:
        The content now in the index
    """
    _, hunk = _select_hunk(old_content, new_content, hunk_index)
    intermediate = apply_hunk(old_content, hunk)
    logger.info(f"[STAGE] hunk {hunk_index} of {path}")
    write_index_content(backend, path, intermediate)
    return intermediate


def stage_line(
    backend: Backend,
    path: str,
    old_content: str,
    new_content: str,
    hunk_index: int,
    line_index: int,
) -> str:
    """Stage a single added or removed line of one hunk."""
    _, hunk = _select_hunk(old_content, new_content, hunk_index)
    _check_line(hunk, line_index)
    intermediate = apply_line(old_content, hunk, line_index)
    logger.info(f"[STAGE] line {line_index} of hunk {hunk_index} in {path}")
    write_index_content(backend, path, intermediate)
    return intermediate


def unstage_hunk(backend: Backend, path: str, head_content: str, staged_content: str, hunk_index: int) -> str:
    """Remove one hunk of the HEAD -> index diff from the index."""
    hunks, _ = _select_hunk(head_content, staged_content, hunk_index)
    intermediate = apply_hunks_except(head_content, hunks, hunk_index)
    logger.info(f"[STAGE] unstage hunk {hunk_index} of {path}")
    write_index_content(backend, path, intermediate)
    return intermediate


def unstage_line(
    backend: Backend,
    path: str,
    head_content: str,
    staged_content: str,
    hunk_index: int,
    line_index: int,
) -> str:
    """Remove a single staged line change from the index."""
    _, hunk = _select_hunk(head_content, staged_content, hunk_index)
    _check_line(hunk, line_index)
    intermediate = revert_line(staged_content, hunk, line_index)
    logger.info(f"[STAGE] unstage line {line_index} of hunk {hunk_index} in {path}")
    write_index_content(backend, path, intermediate)
    return intermediate
