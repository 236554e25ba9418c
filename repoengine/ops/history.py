"""
History mutations: cherry-pick, reorder, squash, drop, revert, amend,
merge, rebase, reset.

Each operation validates its input before touching the repository, then
drives one OperationFSM. Reorder and drop run as a replay saga: detach at
a base, cherry-pick commits one by one, and on any failure abort the
in-flight pick and check the original branch out again, so the branch tip
and working tree end up exactly as they started. Merge, rebase, revert
and multi-commit cherry-pick instead leave a conflict in place for the caller
to continue, skip or abort.
"""

import logging

from repoengine.errors import (
    BackendError,
    ConflictPending,
    EngineError,
    OperationInProgress,
    RefNotFound,
    RestorationFailed,
    ValidationError,
    classify_backend_error,
    is_empty_pick,
)
from repoengine.git.backend import Backend
from repoengine.lib.constants import (
    CHERRY_PICK_HEAD,
    DETACHED_HEAD,
    MERGE_HEAD,
    REBASE_APPLY,
    REBASE_MERGE,
    REVERT_HEAD,
)
from repoengine.lib.types import Author, Commit, OperationResult, OperationState, ResetMode
from repoengine.ops.status import is_dirty
from repoengine.workflow.fsm import Observer, OperationFSM

logger = logging.getLogger(__name__)

# How far back reorder/drop/squash look for the commits they are given
HISTORY_SCAN_DEPTH = 1000

_MARKER_OPERATIONS = (
    # Rebase first: its steps run through the pick machinery
    (REBASE_MERGE, "rebase"),
    (REBASE_APPLY, "rebase"),
    (CHERRY_PICK_HEAD, "cherry-pick"),
    (REVERT_HEAD, "revert"),
    (MERGE_HEAD, "merge"),
)


def pending_operation(backend: Backend) -> str | None:
    """Name of the unfinished merge-family operation, if any."""
    for marker, operation in _MARKER_OPERATIONS:
        if backend.has_marker(marker):
            return operation
    return None


def ensure_no_operation(backend: Backend) -> None:
    operation = pending_operation(backend)
    if operation is not None:
        raise OperationInProgress(operation, f"{operation} marker present")


def resolve_commit(backend: Backend, ref: str) -> str:
    sha = backend.resolve_ref(ref)
    if sha is None:
        raise RefNotFound(ref)
    return sha


def _start(operation: str, backend: Backend, observer: Observer | None) -> OperationFSM:
    fsm = OperationFSM(operation, backend.root, on_transition=observer)
    fsm.start()
    return fsm


def _result(fsm: OperationFSM, backend: Backend, skipped=None, message: str = "") -> OperationResult:
    return OperationResult(
        operation=fsm.operation,
        state=fsm.operation_state,
        head=backend.resolve_ref("HEAD"),
        skipped=list(skipped or []),
        message=message,
    )


def _fail(fsm: OperationFSM, err: BackendError, ref: str | None = None) -> EngineError:
    """Classify a backend failure and move the FSM accordingly."""
    kind = classify_backend_error(err, fsm.operation, ref=ref)
    if isinstance(kind, ConflictPending):
        fsm.conflict()
    else:
        fsm.abort()
    return kind


def _conflict(backend: Backend, operation: str, commit_id: str | None, step=None, total=None,
              detail: str = "") -> ConflictPending:
    return ConflictPending(
        operation,
        commit_id=commit_id,
        step=step,
        total=total,
        files=backend.conflicted_files(),
        detail=detail,
    )


def _first_parent_chain(backend: Backend, depth: int = HISTORY_SCAN_DEPTH) -> list[Commit]:
    """Commits reachable from HEAD, newest first."""
    return backend.log("HEAD", depth)


def _require_branch(backend: Backend, operation: str) -> str:
    branch = backend.current_branch()
    if branch == DETACHED_HEAD:
        raise ValidationError(f"Cannot {operation} in detached HEAD state. Checkout a branch first.")
    return branch


# --- cherry-pick -------------------------------------------------------


def _pick_each(
    backend: Backend,
    fsm: OperationFSM,
    commit_ids: list[str],
    first_step: int,
    total: int,
    skipped: list[str],
) -> None:
    """Pick commits in order onto HEAD. Empty picks are skipped; a conflict stops and stays."""
    for offset, commit_id in enumerate(commit_ids):
        step = first_step + offset
        try:
            backend.cherry_pick(commit_id)
        except BackendError as e:
            if is_empty_pick(e):
                logger.info(f"[HISTORY] {commit_id[:7]} is already applied, skipping")
                backend.sequencer("cherry-pick", "skip")
                skipped.append(commit_id)
                continue
            kind = _fail(fsm, e)
            if isinstance(kind, ConflictPending):
                raise _conflict(backend, "cherry-pick", commit_id, step, total, e.stderr) from e
            raise kind from e


def cherry_pick(backend: Backend, commit_ids: list[str], observer: Observer | None = None) -> OperationResult:
    """
    Apply commits onto the current tip, oldest first as given.

    Raises:
        ValidationError: no commits given
        OperationInProgress: an earlier cherry-pick, revert or merge is unfinished
        RefNotFound: a commit does not resolve
        ConflictPending: stopped on a conflict; the repository is left conflicted
    """
    if not commit_ids:
        raise ValidationError("No commits to cherry-pick")
    ensure_no_operation(backend)
    resolved = [resolve_commit(backend, c) for c in commit_ids]

    fsm = _start("cherry-pick", backend, observer)
    logger.info(f"[HISTORY] cherry-pick {len(resolved)} commit(s) onto {backend.current_branch()}")
    skipped: list[str] = []
    _pick_each(backend, fsm, resolved, 1, len(resolved), skipped)
    fsm.succeed()
    return _result(fsm, backend, skipped)


def _resume(
    backend: Backend,
    action: str,
    remaining: list[str],
    total: int | None,
    observer: Observer | None,
) -> OperationResult:
    operation = pending_operation(backend)
    if operation is None:
        raise ValidationError("No cherry-pick, revert, merge or rebase in progress")
    if action == "skip" and operation == "merge":
        raise ValidationError("A merge cannot be skipped; continue or abort it")

    fsm = OperationFSM(operation, backend.root, initial=OperationState.CONFLICT_PENDING.value,
                       on_transition=observer)
    fsm.resume()
    skipped: list[str] = []
    logger.info(f"[HISTORY] {action} {operation}")

    if action == "continue":
        unresolved = backend.conflicted_files()
        if unresolved:
            fsm.conflict()
            raise ConflictPending(operation, files=unresolved, detail="unresolved conflicts remain")
    try:
        backend.sequencer(operation, action)
    except BackendError as e:
        if operation in ("cherry-pick", "rebase") and is_empty_pick(e):
            backend.sequencer(operation, "skip")
        else:
            kind = _fail(fsm, e)
            if isinstance(kind, ConflictPending):
                raise _conflict(backend, operation, None, detail=e.stderr) from e
            raise kind from e

    if remaining:
        total = total or len(remaining)
        _pick_each(backend, fsm, remaining, total - len(remaining) + 1, total, skipped)
    fsm.succeed()
    return _result(fsm, backend, skipped)


def continue_operation(backend: Backend, remaining: list[str] | None = None, total: int | None = None,
                       observer: Observer | None = None) -> OperationResult:
    """Commit the resolved conflict and pick any remaining commits."""
    return _resume(backend, "continue", list(remaining or []), total, observer)


def skip_operation(backend: Backend, remaining: list[str] | None = None, total: int | None = None,
                   observer: Observer | None = None) -> OperationResult:
    """Drop the conflicted commit and pick any remaining commits."""
    return _resume(backend, "skip", list(remaining or []), total, observer)


def abort_operation(backend: Backend, observer: Observer | None = None) -> OperationResult:
    """Abandon a pending cherry-pick, revert, merge or rebase."""
    operation = pending_operation(backend)
    if operation is None:
        raise ValidationError("No cherry-pick, revert, merge or rebase in progress")
    fsm = OperationFSM(operation, backend.root, initial=OperationState.CONFLICT_PENDING.value,
                       on_transition=observer)
    logger.info(f"[HISTORY] abort {operation}")
    try:
        backend.sequencer(operation, "abort")
    except BackendError as e:
        raise classify_backend_error(e, operation) from e
    fsm.abort()
    return _result(fsm, backend)


# --- replay saga (reorder, drop) ---------------------------------------


def _rollback(backend: Backend, branch: str, original_tip: str, failure: BaseException) -> None:
    """Abort any in-flight pick and check the original branch out again."""
    try:
        if backend.has_marker(CHERRY_PICK_HEAD):
            backend.sequencer("cherry-pick", "abort")
        backend.checkout(branch)
        tip = backend.resolve_ref(branch)
    except BackendError as restore_error:
        logger.error(f"CRITICAL: could not restore {branch} to {original_tip[:7]}: {restore_error}")
        raise RestorationFailed(f"Branch {branch} was not restored", original=failure,
                                cause=restore_error) from restore_error
    if tip != original_tip:
        logger.error(f"CRITICAL: {branch} is at {tip} after rollback, expected {original_tip[:7]}")
        raise RestorationFailed(f"Branch {branch} was not restored", original=failure,
                                cause=RefNotFound(original_tip))


def _replay(
    backend: Backend,
    fsm: OperationFSM,
    branch: str,
    base: str,
    chronological: list[str],
) -> list[str]:
    """
    Rebuild `branch` as `base` plus `chronological` picked in order.

    Returns commits skipped as already applied. On failure the branch is
    restored and the classified error raised.
    """
    original_tip = resolve_commit(backend, "HEAD")
    skipped: list[str] = []
    total = len(chronological)
    try:
        backend.checkout(base, detach=True)
        for step, commit_id in enumerate(chronological, 1):
            try:
                backend.cherry_pick(commit_id)
            except BackendError as e:
                if is_empty_pick(e):
                    logger.info(f"[HISTORY] {commit_id[:7]} is already applied, skipping")
                    backend.sequencer("cherry-pick", "skip")
                    skipped.append(commit_id)
                    continue
                kind = classify_backend_error(e, fsm.operation)
                if isinstance(kind, ConflictPending):
                    kind = ConflictPending(
                        fsm.operation, commit_id=commit_id, step=step, total=total,
                        files=backend.conflicted_files(), options=("abort",),
                        detail=f"{e.stderr}\nThe repository has been restored to its original state.",
                    )
                raise kind from e
        backend.force_checkout_branch(branch, "HEAD")
    except EngineError as e:
        logger.warning(f"[HISTORY] {fsm.operation} failed, restoring {branch}: {e}")
        _rollback(backend, branch, original_tip, e)
        fsm.abort()
        raise
    return skipped


def reorder_commits(backend: Backend, new_order: list[str], observer: Observer | None = None) -> OperationResult:
    """
    Rewrite the newest commits of the current branch into `new_order`.

    new_order lists the same commits as the top len(new_order) commits of
    HEAD, newest first, in their desired order.
    """
    if not new_order:
        raise ValidationError("No commits to reorder")
    branch = _require_branch(backend, "reorder commits")
    ensure_no_operation(backend)

    resolved = [resolve_commit(backend, c) for c in new_order]
    current = _first_parent_chain(backend, len(resolved) + 1)
    top = [c.id for c in current[:len(resolved)]]
    if sorted(top) != sorted(resolved):
        raise ValidationError("Commits to reorder must be the newest commits of the current branch")
    if any(c.is_merge for c in current[:len(resolved)]):
        raise ValidationError("Cannot reorder merge commits")
    oldest = current[len(resolved) - 1]
    if oldest.is_root:
        raise ValidationError("Cannot reorder: root commit has no parent")
    if resolved == top:
        logger.info("[HISTORY] reorder: order unchanged")
        fsm = _start("reorder", backend, observer)
        fsm.succeed()
        return _result(fsm, backend, message="order unchanged")

    fsm = _start("reorder", backend, observer)
    base = oldest.parents[0]
    logger.info(f"[HISTORY] reorder {len(resolved)} commits on {branch} onto {base[:7]}")
    skipped = _replay(backend, fsm, branch, base, list(reversed(resolved)))
    fsm.succeed()
    return _result(fsm, backend, skipped)


def move_commits(
    backend: Backend,
    to_move: list[str],
    target: str,
    position: str,
    all_commits: list[str],
    observer: Observer | None = None,
) -> OperationResult:
    """
    Move commits next to `target` within a newest-first listing.

    In newest-first order "before" places them closer to HEAD than target,
    "after" further from it.
    """
    if not to_move:
        raise ValidationError("No commits to reorder")
    if position not in ("before", "after"):
        raise ValidationError(f"Invalid position: {position}")
    moving = set(to_move)
    remaining = [c for c in all_commits if c not in moving]
    if target not in remaining:
        raise ValidationError("Target commit not found in history")
    insert_at = remaining.index(target) + (0 if position == "before" else 1)
    new_order = remaining[:insert_at] + [c for c in all_commits if c in moving] + remaining[insert_at:]
    return reorder_commits(backend, new_order, observer)


def drop(backend: Backend, commit_id: str, observer: Observer | None = None) -> OperationResult:
    """Remove one commit from the current branch, replaying its descendants onto its parent."""
    branch = _require_branch(backend, "drop a commit")
    ensure_no_operation(backend)
    sha = resolve_commit(backend, commit_id)

    chain = _first_parent_chain(backend)
    ids = [c.id for c in chain]
    if sha not in ids:
        raise ValidationError(f"Commit {sha[:7]} is not on branch {branch}")
    position = ids.index(sha)
    dropped = chain[position]
    if dropped.is_root:
        raise ValidationError("Cannot drop the root commit")
    newer = chain[:position]
    if any(c.is_merge for c in newer + [dropped]):
        raise ValidationError("Cannot drop across merge commits")

    fsm = _start("drop", backend, observer)
    logger.info(f"[HISTORY] drop {sha[:7]} from {branch}, replaying {len(newer)} commit(s)")
    skipped = _replay(backend, fsm, branch, dropped.parents[0], [c.id for c in reversed(newer)])
    fsm.succeed()
    return _result(fsm, backend, skipped)


# --- single-step rewrites ----------------------------------------------


def squash(
    backend: Backend,
    commit_ids: list[str],
    message: str,
    author: Author | None = None,
    observer: Observer | None = None,
) -> OperationResult:
    """
    Replace the newest commits (newest first) with one commit.

    Raises:
        ValidationError: fewer than two commits, empty message, commits not
            the contiguous tip of the branch, or a root commit included
    """
    if len(commit_ids) < 2:
        raise ValidationError("Squash needs at least two commits")
    if not message or not message.strip():
        raise ValidationError("Commit message must not be empty")
    ensure_no_operation(backend)

    resolved = [resolve_commit(backend, c) for c in commit_ids]
    chain = _first_parent_chain(backend, len(resolved))
    if [c.id for c in chain] != resolved:
        raise ValidationError("Commits to squash must be the newest commits of the branch, newest first")
    oldest = chain[-1]
    if oldest.is_root:
        raise ValidationError("Cannot squash the root commit")

    fsm = _start("squash", backend, observer)
    original_tip = resolved[0]
    parent = oldest.parents[0]
    logger.info(f"[HISTORY] squash {len(resolved)} commits onto {parent[:7]}")
    try:
        backend.reset(parent, ResetMode.SOFT)
        backend.commit(message, author=author)
    except BackendError as e:
        logger.warning(f"[HISTORY] squash failed, moving HEAD back to {original_tip[:7]}")
        try:
            backend.reset(original_tip, ResetMode.SOFT)
        except BackendError as restore_error:
            logger.error(f"CRITICAL: could not restore HEAD to {original_tip[:7]}: {restore_error}")
            raise RestorationFailed("HEAD was not restored", original=e, cause=restore_error) from restore_error
        raise _fail(fsm, e) from e
    fsm.succeed()
    return _result(fsm, backend)


def revert(backend: Backend, commit_id: str, observer: Observer | None = None) -> OperationResult:
    """
    Create a commit undoing `commit_id`.

    A conflict is left in place (ConflictPending); it is never aborted
    automatically.
    """
    ensure_no_operation(backend)
    sha = resolve_commit(backend, commit_id)
    target = backend.log(sha, 1)[0]

    fsm = _start("revert", backend, observer)
    logger.info(f"[HISTORY] revert {sha[:7]}")
    try:
        backend.revert_no_commit(sha, mainline=1 if target.is_merge else None)
    except BackendError as e:
        kind = _fail(fsm, e)
        if isinstance(kind, ConflictPending):
            raise _conflict(backend, "revert", sha, detail=e.stderr) from e
        raise kind from e

    message = f'Revert "{target.summary}"\n\nThis reverts commit {sha}.'
    try:
        backend.commit(message)
    except BackendError as e:
        if not is_empty_pick(e):
            raise _fail(fsm, e) from e
        # The commit's changes are already undone
        if backend.has_marker(REVERT_HEAD):
            backend.sequencer("revert", "abort")
        fsm.abort()
        return _result(fsm, backend, skipped=[sha], message="nothing to revert")
    fsm.succeed()
    return _result(fsm, backend)


def amend(
    backend: Backend,
    commit_id: str,
    message: str | None = None,
    author: Author | None = None,
    observer: Observer | None = None,
) -> OperationResult:
    """Replace the tip commit with staged content and a new message and/or author."""
    if message is not None and not message.strip():
        raise ValidationError("Commit message must not be empty")
    ensure_no_operation(backend)
    sha = resolve_commit(backend, commit_id)
    head = resolve_commit(backend, "HEAD")
    if sha != head:
        raise ValidationError(f"Only the tip commit can be amended ({sha[:7]} is not HEAD)")
    if message is None:
        message = backend.log(head, 1)[0].message

    fsm = _start("amend", backend, observer)
    logger.info(f"[HISTORY] amend {sha[:7]}")
    try:
        backend.commit(message, author=author, amend=True)
    except BackendError as e:
        raise _fail(fsm, e) from e
    fsm.succeed()
    return _result(fsm, backend)


def merge(backend: Backend, branch: str, message: str | None = None, author: Author | None = None,
          observer: Observer | None = None) -> OperationResult:
    """
    Merge `branch` into the current branch with an explicit merge commit.

    Raises:
        RefNotFound: branch does not resolve
        ValidationError: branch is already contained in HEAD
        OperationInProgress: another merge-family operation is unfinished
        ConflictPending: merge stopped on conflicts, left in place
    """
    ensure_no_operation(backend)
    sha = backend.resolve_ref(branch)
    if sha is None:
        raise RefNotFound(branch)
    head = resolve_commit(backend, "HEAD")
    if backend.is_ancestor(sha, head):
        raise ValidationError(f"{branch} is already merged into the current branch")

    fsm = _start("merge", backend, observer)
    logger.info(f"[HISTORY] merge {branch} into {backend.current_branch()}")
    try:
        backend.merge_no_ff(branch, message=message, author=author)
    except BackendError as e:
        kind = _fail(fsm, e, ref=branch)
        if isinstance(kind, ConflictPending):
            raise _conflict(backend, "merge", sha, detail=e.stderr) from e
        raise kind from e
    fsm.succeed()
    return _result(fsm, backend)


def rebase(backend: Backend, onto: str, observer: Observer | None = None) -> OperationResult:
    """
    Replay the current branch's own commits on top of `onto`.

    A conflicting step is left in place; continue_operation,
    skip_operation and abort_operation drive the rest.

    Raises:
        ValidationError: detached HEAD or uncommitted changes
        RefNotFound: onto does not resolve
        OperationInProgress: another merge-family operation is unfinished
        ConflictPending: a replayed commit conflicted
        UnsupportedOperation: the backend cannot rebase
    """
    branch = _require_branch(backend, "rebase")
    ensure_no_operation(backend)
    sha = backend.resolve_ref(onto)
    if sha is None:
        raise RefNotFound(onto)
    if is_dirty(backend):
        raise ValidationError("Cannot rebase with uncommitted changes. Commit or stash them first.")

    fsm = _start("rebase", backend, observer)
    head = resolve_commit(backend, "HEAD")
    if backend.is_ancestor(sha, head):
        logger.info(f"[HISTORY] rebase: {branch} is already based on {onto}")
        fsm.succeed()
        return _result(fsm, backend, message="already up to date")

    logger.info(f"[HISTORY] rebase {branch} onto {onto}")
    try:
        backend.rebase(onto)
    except BackendError as e:
        kind = _fail(fsm, e, ref=onto)
        if isinstance(kind, ConflictPending):
            raise _conflict(backend, "rebase", None, detail=e.stderr) from e
        raise kind from e
    fsm.succeed()
    return _result(fsm, backend)


def commit(backend: Backend, message: str, author: Author | None = None) -> str:
    """Commit the index. Returns the new commit id."""
    if not message or not message.strip():
        raise ValidationError("Commit message must not be empty")
    logger.info(f"[HISTORY] commit on {backend.current_branch()}")
    try:
        return backend.commit(message, author=author)
    except BackendError as e:
        raise classify_backend_error(e, "commit") from e


def undo_commit(backend: Backend, hard: bool = False) -> OperationResult:
    """Move the tip back to its parent, keeping (soft) or discarding (hard) its changes."""
    head = resolve_commit(backend, "HEAD")
    tip = backend.log(head, 1)[0]
    if tip.is_root:
        raise ValidationError("Cannot undo the root commit")
    fsm = _start("undo", backend, None)
    logger.info(f"[HISTORY] undo {head[:7]} ({'hard' if hard else 'soft'})")
    try:
        backend.reset(tip.parents[0], ResetMode.HARD if hard else ResetMode.SOFT)
    except BackendError as e:
        raise _fail(fsm, e) from e
    fsm.succeed()
    return _result(fsm, backend)


def reset(backend: Backend, ref: str, mode: ResetMode | str = ResetMode.MIXED) -> OperationResult:
    """Move HEAD to ref with soft, mixed or hard semantics."""
    try:
        mode = ResetMode(mode)
    except ValueError:
        raise ValidationError(f"Invalid reset mode: {mode}") from None
    sha = resolve_commit(backend, ref)
    fsm = _start("reset", backend, None)
    logger.info(f"[HISTORY] reset --{mode.value} to {sha[:7]}")
    try:
        backend.reset(sha, mode)
    except BackendError as e:
        raise _fail(fsm, e, ref=ref) from e
    fsm.succeed()
    return _result(fsm, backend)


def reset_branch(backend: Backend, branch: str, ref: str, mode: ResetMode | str = ResetMode.MIXED) -> OperationResult:
    """Check out `branch`, then reset it to `ref`."""
    if not backend.branch_exists(branch):
        raise RefNotFound(branch)
    if backend.current_branch() != branch:
        try:
            backend.checkout(branch)
        except BackendError as e:
            raise classify_backend_error(e, "checkout", ref=branch) from e
    return reset(backend, ref, mode)
