"""
Line attribution.

The backend's own blame is used when it has one. Otherwise the file's
history is replayed newest to oldest: a line of the current content that
is absent from an older version is attributed to the commit just after
that version. Lines are compared as a set, so moved or copied lines are
not tracked, and attribution is limited to blame_depth commits.
"""

import logging

from repoengine.errors import BackendError
from repoengine.git.backend import Backend
from repoengine.lib.types import BlameLine, Commit

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 50


def _line(line_no: int, content: str, commit: Commit | None) -> BlameLine:
    if commit is None:
        return BlameLine(line_no=line_no, content=content, commit_id="unknown", author="Unknown", date=0, summary="")
    return BlameLine(
        line_no=line_no,
        content=content,
        commit_id=commit.id,
        author=commit.author,
        date=commit.date,
        summary=commit.summary,
    )


def blame_by_history(backend: Backend, path: str, ref: str = "HEAD", depth: int = DEFAULT_DEPTH) -> list[BlameLine]:
    """Attribute lines by comparing each version of the file with the one before it."""
    content = backend.read_file_at(ref, path)
    if content is None:
        return []
    lines = content.split("\n")
    commits = backend.log(ref, depth, path=path)
    if not commits:
        return [_line(i + 1, text, None) for i, text in enumerate(lines)]

    attributed: list[Commit | None] = [None] * len(lines)
    newer_content = content
    newer_commit = commits[0]
    for commit in commits:
        older_content = backend.read_file_at(commit.id, path)
        if older_content is None:
            # File created by the newer commit
            break
        if older_content != newer_content:
            older = set(older_content.split("\n"))
            for i, text in enumerate(lines):
                if attributed[i] is None and text not in older:
                    attributed[i] = newer_commit
            newer_content = older_content
        newer_commit = commit

    # Whatever survives the whole window belongs to the oldest version seen
    return [_line(i + 1, text, attributed[i] or newer_commit) for i, text in enumerate(lines)]


def blame(backend: Backend, path: str, ref: str = "HEAD", depth: int = DEFAULT_DEPTH) -> list[BlameLine]:
    """Per-line commit, author, date and summary for path at ref."""
    try:
        native = backend.native_blame(path, ref)
    except BackendError as e:
        logger.warning(f"Native blame failed for {path}, replaying history instead: {e}")
        native = None
    if native is not None:
        return native
    return blame_by_history(backend, path, ref, depth)
