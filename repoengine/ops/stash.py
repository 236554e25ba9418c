"""
Stashes, snapshots and the reflog.

A snapshot is a stash (untracked files included) whose message is
"gk-snapshot:<message>|<epoch ms>". Snapshots are listed separately and
never appear in list_stashes(). Stash positions shift after every push,
pop or drop, so callers re-list before acting on an index.
"""

import logging
import time
from datetime import datetime

from repoengine.errors import BackendError, RefNotFound, ValidationError, classify_backend_error
from repoengine.git.backend import Backend
from repoengine.lib.constants import SNAPSHOT_PREFIX
from repoengine.lib.types import ADDED, ReflogEntry, Snapshot, Stash
from repoengine.ops.status import safe_path

logger = logging.getLogger(__name__)


def _check_index(backend: Backend, index: int) -> None:
    if index < 0 or index >= len(backend.stash_list()):
        raise ValidationError(f"No stash entry at position {index}")


def _is_snapshot(stash: Stash) -> bool:
    return SNAPSHOT_PREFIX in stash.message


def stash_push(backend: Backend, message: str | None = None, include_untracked: bool = False) -> None:
    logger.info(f"Stashing changes{' (with untracked)' if include_untracked else ''}")
    backend.stash_push(message, include_untracked)


def stash_file(backend: Backend, path: str, message: str | None = None) -> None:
    """
    Stash the changes of a single file, leaving every other change in place.

    Raises:
        ValidationError: the file has no local changes
        UnsupportedOperation: the backend has no stash
    """
    safe_path(backend.root, path)
    changes = [c for c in backend.status() if c.filename == path]
    if not changes:
        raise ValidationError(f"No local changes to stash in {path}")
    untracked = all(c.status == ADDED and not c.staged for c in changes)
    logger.info(f"Stashing {path}")
    try:
        backend.stash_push_path(path, message or f"WIP: {path}", include_untracked=untracked)
    except BackendError as e:
        raise classify_backend_error(e, "stash") from e


def list_stashes(backend: Backend, with_files: bool = False) -> list[Stash]:
    """Regular stashes, top of the stack first. Snapshots are excluded."""
    stashes = [s for s in backend.stash_list() if not _is_snapshot(s)]
    if with_files:
        for stash in stashes:
            stash.files = backend.stash_files(stash.index)
    return stashes


def stash_apply(backend: Backend, index: int = 0) -> None:
    _check_index(backend, index)
    logger.info(f"Applying stash@{{{index}}}")
    try:
        backend.stash_apply(index)
    except BackendError as e:
        raise classify_backend_error(e, "stash apply") from e


def stash_pop(backend: Backend, index: int = 0) -> None:
    _check_index(backend, index)
    logger.info(f"Popping stash@{{{index}}}")
    try:
        backend.stash_pop(index)
    except BackendError as e:
        raise classify_backend_error(e, "stash pop") from e


def stash_drop(backend: Backend, index: int) -> None:
    _check_index(backend, index)
    logger.info(f"Dropping stash@{{{index}}}")
    backend.stash_drop(index)


def snapshot_message(message: str | None, now_ms: int | None = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    text = message or f"Snapshot {datetime.fromtimestamp(now_ms / 1000):%Y-%m-%d %H:%M:%S}"
    return f"{SNAPSHOT_PREFIX}{text}|{now_ms}"


def parse_snapshot(stash: Stash) -> Snapshot | None:
    """Snapshot view of a stash entry, or None for a regular stash."""
    if not _is_snapshot(stash):
        return None
    body = stash.message[stash.message.index(SNAPSHOT_PREFIX) + len(SNAPSHOT_PREFIX):]
    text, sep, stamp = body.rpartition("|")
    if not sep:
        text, stamp = body, ""
    timestamp = int(stamp) if stamp.isdigit() else stash.date * 1000
    return Snapshot(index=stash.index, message=text, timestamp=timestamp, files=list(stash.files))


def create_snapshot(backend: Backend, message: str | None = None) -> None:
    """Stash everything, untracked files included, under a snapshot message."""
    logger.info("Creating snapshot")
    backend.stash_push(snapshot_message(message), include_untracked=True)


def list_snapshots(backend: Backend) -> list[Snapshot]:
    """Snapshots, newest first."""
    snapshots = []
    for stash in backend.stash_list():
        snapshot = parse_snapshot(stash)
        if snapshot is None:
            continue
        snapshot.files = backend.stash_files(stash.index)
        snapshots.append(snapshot)
    return sorted(snapshots, key=lambda s: s.timestamp, reverse=True)


def restore_snapshot(backend: Backend, index: int) -> None:
    """Apply a snapshot and keep it."""
    _check_index(backend, index)
    logger.info(f"Restoring snapshot stash@{{{index}}}")
    try:
        backend.stash_apply(index)
    except BackendError as e:
        raise classify_backend_error(e, "restore snapshot") from e


def delete_snapshot(backend: Backend, index: int) -> None:
    _check_index(backend, index)
    logger.info(f"Deleting snapshot stash@{{{index}}}")
    backend.stash_drop(index)


def get_reflog(backend: Backend, limit: int = 50) -> list[ReflogEntry]:
    """Reflog entries across refs, most recent first."""
    if limit <= 0:
        raise ValidationError("limit must be > 0")
    return backend.reflog(limit)


def checkout_reflog_entry(backend: Backend, entry: ReflogEntry) -> None:
    """Detach HEAD at the commit a reflog entry recorded."""
    sha = backend.resolve_ref(entry.short_id)
    if sha is None:
        sha = backend.resolve_ref(f"{entry.ref}@{{{entry.index}}}")
    if sha is None:
        raise RefNotFound(f"{entry.ref}@{{{entry.index}}}")
    logger.info(f"Checking out reflog entry {entry.ref}@{{{entry.index}}} ({sha[:7]})")
    try:
        backend.checkout(sha, detach=True)
    except BackendError as e:
        raise classify_backend_error(e, "checkout", ref=sha) from e
