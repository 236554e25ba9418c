"""
Repository engine: the single entry point the client calls.

Owns one RepositoryCache, one lock registry and one backend per opened
repository path. Reads take the repository's shared lock and may be
served from cache; mutations take its exclusive lock and invalidate every
cache entry for the path before the lock is released, so no later read
can see pre-mutation cached data.

Every method blocks. submit() runs any of them on a worker pool and
returns a Future.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

from repoengine.errors import ConflictPending, ResourceLocked, ValidationError
from repoengine.git.backend import Backend, ProgressFn, backend_class, open_backend
from repoengine.lib.cache import RepositoryCache
from repoengine.lib.config import EngineConfig
from repoengine.lib.constants import CACHE_BRANCHES, CACHE_STATUS, CACHE_WORKDIR
from repoengine.lib.types import (
    AheadBehind,
    Author,
    BlameLine,
    Branch,
    Commit,
    ConflictRegion,
    DiffHunk,
    DiffLine,
    FileChange,
    OperationResult,
    ReflogEntry,
    Remote,
    ResetMode,
    Snapshot,
    SplitRow,
    Stash,
)
from repoengine.ops import blame as blame_ops
from repoengine.ops import diff as diff_ops
from repoengine.ops import conflicts, history, refs, remote, staging, stash, status
from repoengine.runner.locking import LockTimeout, RepoLockRegistry
from repoengine.workflow.fsm import Observer

logger = logging.getLogger(__name__)


class RepositoryEngine:
    """Operations on any number of repositories, addressed by path."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        cache: RepositoryCache | None = None,
        on_transition: Observer | None = None,
    ):
        self.config = config or EngineConfig()
        self.cache = cache or RepositoryCache(self.config.cache_max_entries, self.config.cache_low_watermark)
        self.locks = RepoLockRegistry(timeout=self.config.lock_timeout)
        self.on_transition = on_transition
        self._backends: dict[str, Backend] = {}
        self._pending_picks: dict[str, tuple[list[str], int]] = {}
        self._guard = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    # --- plumbing ------------------------------------------------------

    @staticmethod
    def _key(repo) -> str:
        return str(Path(repo).resolve())

    def backend(self, repo) -> Backend:
        key = self._key(repo)
        with self._guard:
            backend = self._backends.get(key)
            if backend is None:
                backend = self._backends[key] = open_backend(Path(key), self.config)
                logger.debug(f"Opened {backend.name} backend for {key}")
            return backend

    @contextmanager
    def _read(self, repo):
        try:
            with self.locks.read_lock(self._key(repo)):
                yield self.backend(repo)
        except LockTimeout as e:
            raise ResourceLocked(str(e)) from e

    @contextmanager
    def _mutation(self, repo):
        key = self._key(repo)
        try:
            with self.locks.write_lock(key):
                try:
                    yield self.backend(repo)
                finally:
                    self.cache.invalidate(key)
        except LockTimeout as e:
            raise ResourceLocked(str(e)) from e

    def _cached(self, kind: str, repo, ttl_ms: int, compute):
        return self.cache.get_or_compute(kind, self._key(repo), ttl_ms, compute)

    def submit(self, method: str, *args, **kwargs) -> Future:
        """Run a public method on the worker pool."""
        if method.startswith("_") or not callable(getattr(self, method, None)) or method == "submit":
            raise ValidationError(f"Unknown operation: {method}")
        with self._guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="repoengine")
            executor = self._executor
        return executor.submit(getattr(self, method), *args, **kwargs)

    def close(self) -> None:
        with self._guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- repositories --------------------------------------------------

    def is_repository(self, path) -> bool:
        return backend_class(self.config).is_repository(Path(path), self.config)

    def init_repository(self, path, default_branch: str = "main") -> None:
        refs.validate_branch_name(default_branch)
        logger.info(f"Initializing repository at {path}")
        backend = backend_class(self.config).init_repository(Path(path), self.config, default_branch)
        with self._guard:
            self._backends[self._key(path)] = backend

    def clone(self, url: str, dest, token: str | None = None, progress: ProgressFn | None = None,
              cancel: threading.Event | None = None) -> None:
        backend = remote.clone(url, Path(dest), self.config, token=token, progress=progress, cancel=cancel)
        with self._guard:
            self._backends[self._key(dest)] = backend

    # --- status and content --------------------------------------------

    def get_working_tree_status(self, repo) -> list[FileChange]:
        with self._read(repo) as b:
            return self._cached(CACHE_STATUS, repo, self.config.status_ttl_ms,
                                lambda: status.get_working_tree_status(b))

    def is_dirty(self, repo) -> bool:
        """True when the working tree or index differs from HEAD (untracked files count)."""
        return bool(self.get_working_tree_status(repo))

    def list_working_dir(self, repo) -> list[str]:
        with self._read(repo) as b:
            return self._cached(CACHE_WORKDIR, repo, self.config.workdir_ttl_ms,
                                lambda: status.list_working_dir(b))

    def get_file_content_at(self, repo, ref: str, path: str) -> str:
        with self._read(repo) as b:
            return status.get_file_content_at(b, ref, path)

    def get_working_file_content(self, repo, path: str) -> str:
        status.safe_path(Path(repo), path)
        with self._read(repo):
            return status.get_working_file_content(Path(repo), path)

    def get_staged_content(self, repo, path: str) -> str:
        with self._read(repo) as b:
            return status.get_staged_content(b, path)

    def get_file_diff(self, repo, path: str, staged: bool = False) -> list[DiffHunk]:
        """Hunks for a file: HEAD -> index when staged, else index -> worktree."""
        status.safe_path(Path(repo), path)
        with self._read(repo) as b:
            if staged:
                old, new = status.get_file_content_at(b, "HEAD", path), status.get_staged_content(b, path)
            else:
                staged_text = b.read_staged_file(path)
                old = staged_text if staged_text is not None else ""
                new = status.get_working_file_content(Path(repo), path)
            return diff_ops.compute_diff(old, new)

    @staticmethod
    def compute_diff(old_text: str, new_text: str) -> list[DiffHunk]:
        return diff_ops.compute_diff(old_text, new_text)

    @staticmethod
    def build_side_by_side_rows(lines: list[DiffLine]) -> list[SplitRow]:
        return diff_ops.build_side_by_side_rows(lines)

    # --- index and working tree ----------------------------------------

    def write_working_file(self, repo, path: str, content: str) -> None:
        with self._mutation(repo):
            status.write_working_file(Path(repo), path, content)

    def stage_file(self, repo, path: str) -> None:
        with self._mutation(repo) as b:
            status.stage_file(b, path)

    def stage_all(self, repo) -> None:
        with self._mutation(repo) as b:
            logger.info("[STAGE] all")
            b.stage_all()

    def unstage_file(self, repo, path: str) -> None:
        with self._mutation(repo) as b:
            status.unstage_file(b, path)

    def unstage_all(self, repo) -> None:
        with self._mutation(repo) as b:
            logger.info("[STAGE] unstage all")
            b.unstage_all()

    def discard_file(self, repo, path: str) -> None:
        with self._mutation(repo) as b:
            status.discard_file(b, path)

    def discard_all(self, repo) -> None:
        with self._mutation(repo) as b:
            logger.info("[STAGE] discard all changes")
            b.discard_all()

    def stage_hunk(self, repo, path: str, old_content: str, new_content: str, hunk_index: int) -> str:
        with self._mutation(repo) as b:
            return staging.stage_hunk(b, path, old_content, new_content, hunk_index)

    def stage_line(self, repo, path: str, old_content: str, new_content: str, hunk_index: int,
                   line_index: int) -> str:
        with self._mutation(repo) as b:
            return staging.stage_line(b, path, old_content, new_content, hunk_index, line_index)

    def unstage_hunk(self, repo, path: str, head_content: str, staged_content: str, hunk_index: int) -> str:
        with self._mutation(repo) as b:
            return staging.unstage_hunk(b, path, head_content, staged_content, hunk_index)

    def unstage_line(self, repo, path: str, head_content: str, staged_content: str, hunk_index: int,
                     line_index: int) -> str:
        with self._mutation(repo) as b:
            return staging.unstage_line(b, path, head_content, staged_content, hunk_index, line_index)

    def commit(self, repo, message: str, author: Author | None = None) -> str:
        if not message or not message.strip():
            raise ValidationError("Commit message must not be empty")
        with self._mutation(repo) as b:
            return history.commit(b, message, author)

    # --- history queries -----------------------------------------------

    def get_commits(self, repo, ref: str = "HEAD", skip: int = 0, limit: int | None = None) -> list[Commit]:
        with self._read(repo) as b:
            return refs.get_commits(b, ref, skip, limit or self.config.log_page_size)

    def has_more_commits(self, repo, ref: str, current_count: int) -> bool:
        with self._read(repo) as b:
            return refs.has_more_commits(b, ref, current_count)

    def get_commit_details(self, repo, commit_id: str) -> Commit:
        with self._read(repo) as b:
            return refs.get_commit_details(b, commit_id)

    def get_file_history(self, repo, path: str, limit: int = 50) -> list[Commit]:
        with self._read(repo) as b:
            return refs.get_file_history(b, path, limit)

    def compare_branches(self, repo, a: str, b: str) -> tuple[list[Commit], list[Commit]]:
        with self._read(repo) as backend:
            return refs.compare_branches(backend, a, b, self.config.ahead_behind_depth)

    def blame(self, repo, path: str, ref: str = "HEAD") -> list[BlameLine]:
        with self._read(repo) as b:
            return blame_ops.blame(b, path, ref, self.config.blame_depth)

    # --- history mutations ---------------------------------------------

    def cherry_pick(self, repo, commit_ids: list[str]) -> OperationResult:
        key = self._key(repo)
        with self._mutation(repo) as b:
            try:
                result = history.cherry_pick(b, commit_ids, self.on_transition)
            except ConflictPending as e:
                if e.step is not None:
                    self._pending_picks[key] = (list(commit_ids), e.step)
                raise
            self._pending_picks.pop(key, None)
            return result

    def _resume(self, repo, action: str) -> OperationResult:
        key = self._key(repo)
        with self._mutation(repo) as b:
            ids, step = self._pending_picks.get(key, ([], 0))
            remaining = ids[step:] if history.pending_operation(b) == "cherry-pick" else []
            resume = history.continue_operation if action == "continue" else history.skip_operation
            try:
                result = resume(b, remaining, len(ids) or None, self.on_transition)
            except ConflictPending as e:
                if e.step is not None and ids:
                    self._pending_picks[key] = (ids, e.step)
                raise
            self._pending_picks.pop(key, None)
            return result

    def continue_operation(self, repo) -> OperationResult:
        return self._resume(repo, "continue")

    def skip_operation(self, repo) -> OperationResult:
        return self._resume(repo, "skip")

    def abort_operation(self, repo) -> OperationResult:
        with self._mutation(repo) as b:
            self._pending_picks.pop(self._key(repo), None)
            return history.abort_operation(b, self.on_transition)

    def reorder_commits(self, repo, new_order: list[str]) -> OperationResult:
        with self._mutation(repo) as b:
            return history.reorder_commits(b, new_order, self.on_transition)

    def move_commits(self, repo, to_move: list[str], target: str, position: str,
                     all_commits: list[str]) -> OperationResult:
        with self._mutation(repo) as b:
            return history.move_commits(b, to_move, target, position, all_commits, self.on_transition)

    def squash(self, repo, commit_ids: list[str], message: str, author: Author | None = None) -> OperationResult:
        if len(commit_ids) < 2:
            raise ValidationError("Squash needs at least two commits")
        with self._mutation(repo) as b:
            return history.squash(b, commit_ids, message, author, self.on_transition)

    def drop(self, repo, commit_id: str) -> OperationResult:
        with self._mutation(repo) as b:
            return history.drop(b, commit_id, self.on_transition)

    def revert(self, repo, commit_id: str) -> OperationResult:
        with self._mutation(repo) as b:
            return history.revert(b, commit_id, self.on_transition)

    def amend(self, repo, commit_id: str, message: str | None = None, author: Author | None = None) -> OperationResult:
        with self._mutation(repo) as b:
            return history.amend(b, commit_id, message, author, self.on_transition)

    def merge(self, repo, branch: str, message: str | None = None) -> OperationResult:
        with self._mutation(repo) as b:
            return history.merge(b, branch, message, observer=self.on_transition)

    def rebase(self, repo, onto: str) -> OperationResult:
        with self._mutation(repo) as b:
            self._pending_picks.pop(self._key(repo), None)
            return history.rebase(b, onto, self.on_transition)

    def get_conflicts(self, repo) -> dict[str, list[ConflictRegion]]:
        with self._read(repo) as b:
            return conflicts.list_conflicts(b)

    def get_conflict_regions(self, repo, path: str) -> list[ConflictRegion]:
        status.safe_path(Path(repo), path)
        with self._read(repo) as b:
            return conflicts.get_conflict_regions(b, path)

    def resolve_conflict(self, repo, path: str, side: str, region_index: int | None = None) -> str:
        """Take ours, theirs, both or base for one region (or all) and stage the file once clean."""
        with self._mutation(repo) as b:
            return conflicts.resolve_conflict(b, path, side, region_index)

    def undo_commit(self, repo, hard: bool = False) -> OperationResult:
        with self._mutation(repo) as b:
            return history.undo_commit(b, hard)

    def reset(self, repo, ref: str, mode: ResetMode | str = ResetMode.MIXED) -> OperationResult:
        with self._mutation(repo) as b:
            return history.reset(b, ref, mode)

    def reset_branch(self, repo, branch: str, ref: str, mode: ResetMode | str = ResetMode.MIXED) -> OperationResult:
        with self._mutation(repo) as b:
            return history.reset_branch(b, branch, ref, mode)

    # --- branches and refs ---------------------------------------------

    def resolve_ref(self, repo, ref: str) -> str:
        with self._read(repo) as b:
            return refs.resolve_ref(b, ref)

    def current_branch(self, repo) -> str:
        with self._read(repo) as b:
            return refs.current_branch(b)

    def ahead_behind(self, repo, branch: str | None = None) -> AheadBehind:
        with self._read(repo) as b:
            return refs.ahead_behind(b, branch, self.config.ahead_behind_depth)

    def list_branches(self, repo) -> list[Branch]:
        with self._read(repo) as b:
            return self._cached(CACHE_BRANCHES, repo, self.config.branch_ttl_ms, lambda: refs.list_branches(b))

    def create_branch(self, repo, name: str, start: str | None = None, checkout: bool = False) -> None:
        refs.validate_branch_name(name)
        with self._mutation(repo) as b:
            refs.create_branch(b, name, start, checkout)

    def delete_branch(self, repo, name: str) -> None:
        with self._mutation(repo) as b:
            refs.delete_branch(b, name)

    def rename_branch(self, repo, old: str, new: str) -> None:
        refs.validate_branch_name(new)
        with self._mutation(repo) as b:
            refs.rename_branch(b, old, new)

    def checkout(self, repo, ref: str) -> None:
        with self._mutation(repo) as b:
            refs.checkout(b, ref)

    def restore_branch_to(self, repo, name: str, commit_id: str) -> None:
        with self._mutation(repo) as b:
            refs.restore_branch_to(b, name, commit_id)

    def list_tags(self, repo) -> list[str]:
        with self._read(repo) as b:
            return refs.list_tags(b)

    def create_tag(self, repo, name: str, ref: str | None = None, message: str | None = None) -> None:
        refs.validate_tag_name(name)
        with self._mutation(repo) as b:
            refs.create_tag(b, name, ref, message)

    def delete_tag(self, repo, name: str) -> None:
        with self._mutation(repo) as b:
            refs.delete_tag(b, name)

    # --- remotes and network -------------------------------------------

    def list_remotes(self, repo) -> list[Remote]:
        with self._read(repo) as b:
            return remote.list_remotes(b)

    def add_remote(self, repo, name: str, url: str) -> None:
        with self._mutation(repo) as b:
            remote.add_remote(b, name, url)

    def remove_remote(self, repo, name: str) -> None:
        with self._mutation(repo) as b:
            remote.remove_remote(b, name)

    def fetch(self, repo, remote_name: str | None = None, prune: bool = False, token: str | None = None,
              progress: ProgressFn | None = None, cancel: threading.Event | None = None) -> None:
        with self._mutation(repo) as b:
            remote.fetch(b, remote_name, prune, token, progress, cancel)

    def pull(self, repo, branch: str | None = None, fetch_first: bool = False, token: str | None = None,
             progress: ProgressFn | None = None, cancel: threading.Event | None = None) -> None:
        with self._mutation(repo) as b:
            remote.pull(b, branch, fetch_first, token=token, progress=progress, cancel=cancel)

    def push(self, repo, branch: str | None = None, set_upstream: bool = False, token: str | None = None,
             progress: ProgressFn | None = None, cancel: threading.Event | None = None) -> None:
        with self._mutation(repo) as b:
            remote.push(b, branch, set_upstream, token=token, progress=progress, cancel=cancel)

    def push_tag(self, repo, tag: str, remote_name: str | None = None, token: str | None = None) -> None:
        with self._mutation(repo) as b:
            remote.push_tag(b, tag, remote_name, token)

    # --- stash, snapshots, reflog --------------------------------------

    def stash_push(self, repo, message: str | None = None, include_untracked: bool = False) -> None:
        with self._mutation(repo) as b:
            stash.stash_push(b, message, include_untracked)

    def stash_file(self, repo, path: str, message: str | None = None) -> None:
        with self._mutation(repo) as b:
            stash.stash_file(b, path, message)

    def list_stashes(self, repo) -> list[Stash]:
        with self._read(repo) as b:
            return stash.list_stashes(b, with_files=True)

    def stash_apply(self, repo, index: int = 0) -> None:
        with self._mutation(repo) as b:
            stash.stash_apply(b, index)

    def stash_pop(self, repo, index: int = 0) -> None:
        with self._mutation(repo) as b:
            stash.stash_pop(b, index)

    def stash_drop(self, repo, index: int) -> None:
        with self._mutation(repo) as b:
            stash.stash_drop(b, index)

    def create_snapshot(self, repo, message: str | None = None) -> None:
        with self._mutation(repo) as b:
            stash.create_snapshot(b, message)

    def list_snapshots(self, repo) -> list[Snapshot]:
        with self._read(repo) as b:
            return stash.list_snapshots(b)

    def restore_snapshot(self, repo, index: int) -> None:
        with self._mutation(repo) as b:
            stash.restore_snapshot(b, index)

    def delete_snapshot(self, repo, index: int) -> None:
        with self._mutation(repo) as b:
            stash.delete_snapshot(b, index)

    def get_reflog(self, repo, limit: int = 50) -> list[ReflogEntry]:
        with self._read(repo) as b:
            return stash.get_reflog(b, limit)

    def checkout_reflog_entry(self, repo, entry: ReflogEntry) -> None:
        with self._mutation(repo) as b:
            stash.checkout_reflog_entry(b, entry)
