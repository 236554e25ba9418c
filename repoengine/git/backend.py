"""
Execution backend contract and selection.

Higher layers (repoengine.ops.*) talk only to the Backend protocol. Two
implementations exist: NativeBackend drives the git executable, and
EmbeddedBackend works on the repository in-process through dulwich.

Mutations raise BackendError with git-style stderr text on failure, so a
single classifier (repoengine.errors.classify_backend_error) serves both.
"""

import logging
import shutil
import threading
from pathlib import Path
from typing import Callable, Protocol

from repoengine.lib.config import BACKEND_AUTO, BACKEND_EMBEDDED, BACKEND_NATIVE, EngineConfig
from repoengine.lib.types import (
    Author,
    BlameLine,
    Branch,
    Commit,
    FileChange,
    ReflogEntry,
    Remote,
    ResetMode,
    Stash,
)

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]


class Backend(Protocol):
    name: str
    root: Path

    # refs and history
    def resolve_ref(self, ref: str) -> str | None: ...
    def current_branch(self) -> str: ...
    def list_branches(self) -> list[Branch]: ...
    def branch_exists(self, name: str) -> bool: ...
    def log(self, ref: str, max_count: int, path: str | None = None) -> list[Commit]: ...
    def commit_changes(self, commit: Commit) -> list[FileChange]: ...
    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...
    def has_marker(self, name: str) -> bool: ...
    def list_tags(self) -> list[str]: ...
    def list_remotes(self) -> list[Remote]: ...

    # content
    def status(self) -> list[FileChange]: ...
    def list_files(self) -> list[str]: ...
    def read_file_at(self, ref: str, path: str) -> str | None: ...
    def read_staged_file(self, path: str) -> str | None: ...
    def native_blame(self, path: str, ref: str) -> list[BlameLine] | None: ...

    # index and worktree
    def stage_path(self, path: str) -> None: ...
    def stage_all(self) -> None: ...
    def unstage_path(self, path: str) -> None: ...
    def unstage_all(self) -> None: ...
    def discard_path(self, path: str) -> None: ...
    def discard_all(self) -> None: ...

    # commits and refs
    def commit(self, message: str, author: Author | None = None, amend: bool = False) -> str: ...
    def reset(self, ref: str, mode: ResetMode) -> None: ...
    def checkout(self, ref: str, detach: bool = False) -> None: ...
    def force_checkout_branch(self, name: str, ref: str) -> None: ...
    def create_branch(self, name: str, start: str | None = None) -> None: ...
    def delete_branch(self, name: str) -> None: ...
    def rename_branch(self, old: str, new: str) -> None: ...
    def set_branch(self, name: str, ref: str) -> None: ...
    def create_tag(self, name: str, ref: str, message: str | None = None) -> None: ...
    def delete_tag(self, name: str) -> None: ...

    # merge family
    def cherry_pick(self, commit_id: str, author: Author | None = None, mainline: int | None = None) -> None: ...
    def revert_no_commit(self, commit_id: str, mainline: int | None = None) -> None: ...
    def merge_no_ff(self, branch: str, message: str | None = None, author: Author | None = None) -> None: ...
    def rebase(self, onto: str) -> None: ...
    def sequencer(self, operation: str, action: str) -> None: ...
    def conflicted_files(self) -> list[str]: ...

    # stash and reflog
    def stash_push(self, message: str | None, include_untracked: bool = False) -> None: ...
    def stash_push_path(self, path: str, message: str, include_untracked: bool = False) -> None: ...
    def stash_list(self) -> list[Stash]: ...
    def stash_files(self, index: int) -> list[str]: ...
    def stash_apply(self, index: int) -> None: ...
    def stash_pop(self, index: int) -> None: ...
    def stash_drop(self, index: int) -> None: ...
    def reflog(self, max_count: int) -> list[ReflogEntry]: ...

    # remotes
    def add_remote(self, name: str, url: str) -> None: ...
    def remove_remote(self, name: str) -> None: ...
    def fetch(self, remote: str, prune: bool, token: str | None,
              progress: ProgressFn | None, cancel: threading.Event | None) -> None: ...
    def pull(self, remote: str, branch: str, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None: ...
    def push(self, remote: str, branch: str, set_upstream: bool, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None: ...
    def push_tag(self, remote: str, tag: str, token: str | None) -> None: ...


def native_available(git_binary: str = "git") -> bool:
    """True when the git executable can be found on PATH."""
    return shutil.which(git_binary) is not None


def backend_class(config: EngineConfig):
    """Pick the backend class: native when git is runnable, else embedded."""
    from repoengine.git.embedded import EmbeddedBackend
    from repoengine.git.native import NativeBackend

    if config.backend == BACKEND_NATIVE:
        return NativeBackend
    if config.backend == BACKEND_EMBEDDED:
        return EmbeddedBackend
    if config.backend == BACKEND_AUTO and native_available(config.git_binary):
        return NativeBackend
    logger.info(f"git executable '{config.git_binary}' not found, using embedded backend")
    return EmbeddedBackend


def open_backend(root: Path, config: EngineConfig) -> Backend:
    """Construct the configured backend for a repository root."""
    return backend_class(config)(Path(root), config)
