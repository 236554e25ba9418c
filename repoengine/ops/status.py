"""
Working-tree status and file content access.

All filesystem reads and writes go through safe_path(), which rejects
anything resolving outside the repository root before touching disk.
"""

import logging
import os
from pathlib import Path

from repoengine.errors import PathTraversalRejected, ValidationError
from repoengine.git.backend import Backend
from repoengine.lib.types import FileChange

logger = logging.getLogger(__name__)


def safe_path(root: Path, path: str) -> Path:
    """
    Resolve `path` against the repository root.

    Raises:
        PathTraversalRejected: the resolved path is not inside root
    """
    if not path:
        raise ValidationError("File path must not be empty")
    base = os.path.realpath(root)
    resolved = os.path.realpath(os.path.join(base, path))
    if resolved != base and not resolved.startswith(base + os.sep):
        logger.warning(f"Rejected path outside repository: {path}")
        raise PathTraversalRejected(path)
    return Path(resolved)


def get_working_tree_status(backend: Backend) -> list[FileChange]:
    """Staged and unstaged deltas. A path changed in both places appears twice."""
    return backend.status()


def is_dirty(backend: Backend) -> bool:
    """True when anything is staged, modified, deleted or untracked."""
    return bool(backend.status())


def get_file_content_at(backend: Backend, ref: str, path: str) -> str:
    """Content of path at ref, or "" when the path does not exist there."""
    content = backend.read_file_at(ref, path)
    return content if content is not None else ""


def get_staged_content(backend: Backend, path: str) -> str:
    """Index content of path, or "" when it is not in the index."""
    content = backend.read_staged_file(path)
    return content if content is not None else ""


def get_working_file_content(root: Path, path: str) -> str:
    """Live working-tree content; "" for a file that does not exist."""
    full = safe_path(root, path)
    if not full.is_file():
        return ""
    with open(full, encoding="utf-8", errors="replace", newline="") as f:
        return f.read()


def read_working_bytes(root: Path, path: str) -> bytes | None:
    full = safe_path(root, path)
    if not full.is_file():
        return None
    return full.read_bytes()


def write_working_file(root: Path, path: str, content: str | bytes) -> None:
    """Overwrite (or create) a working-tree file."""
    full = safe_path(root, path)
    full.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        full.write_bytes(content)
    else:
        # newline="" keeps the content byte for byte
        with open(full, "w", encoding="utf-8", newline="") as f:
            f.write(content)


def remove_working_file(root: Path, path: str) -> None:
    full = safe_path(root, path)
    if full.exists():
        full.unlink()


def list_working_dir(backend: Backend) -> list[str]:
    """Tracked and untracked (non-ignored) paths, sorted."""
    return sorted(backend.list_files())


def stage_file(backend: Backend, path: str) -> None:
    safe_path(backend.root, path)
    logger.info(f"[STAGE] file {path}")
    backend.stage_path(path)


def unstage_file(backend: Backend, path: str) -> None:
    safe_path(backend.root, path)
    logger.info(f"[STAGE] unstage file {path}")
    backend.unstage_path(path)


def discard_file(backend: Backend, path: str) -> None:
    """Restore a file from HEAD in index and worktree; an untracked file is deleted."""
    safe_path(backend.root, path)
    logger.info(f"[STAGE] discard {path}")
    tracked = backend.read_file_at("HEAD", path) is not None or backend.read_staged_file(path) is not None
    if tracked:
        backend.discard_path(path)
    else:
        remove_working_file(backend.root, path)
