"""
Branch, tag and ref queries and ref mutations.
"""

import logging

from repoengine.errors import BackendError, RefNotFound, ValidationError, classify_backend_error
from repoengine.git.backend import Backend
from repoengine.lib.constants import BRANCH_NAME_PATTERN, DETACHED_HEAD, TAG_NAME_PATTERN
from repoengine.lib.types import AheadBehind, Branch, Commit

logger = logging.getLogger(__name__)

AHEAD_BEHIND_DEPTH = 200
# Commits counted as ahead when there is no remote-tracking branch
UNTRACKED_DEPTH = 100


def resolve_ref(backend: Backend, ref: str) -> str:
    """Full commit id for ref. Raises RefNotFound."""
    sha = backend.resolve_ref(ref)
    if sha is None:
        raise RefNotFound(ref)
    return sha


def current_branch(backend: Backend) -> str:
    """Checked-out branch name, or "HEAD" when detached."""
    return backend.current_branch()


def tracking_ref(backend: Backend, branch: str) -> str | None:
    """<remote>/<branch> for the first remote (origin preferred) that has it."""
    remote_names = {b.name for b in backend.list_branches() if b.is_remote}
    remotes = sorted((r.name for r in backend.list_remotes()), key=lambda n: (n != "origin", n))
    for remote in remotes or ["origin"]:
        candidate = f"{remote}/{branch}"
        if candidate in remote_names:
            return candidate
    return None


def ahead_behind(backend: Backend, branch: str | None = None, depth: int = AHEAD_BEHIND_DEPTH) -> AheadBehind:
    """
    Commits on branch but not its remote-tracking counterpart (ahead), and
    the reverse (behind).

    Both logs are read to `depth` and counted until the first commit the
    other log contains, so divergence deeper than `depth` is under-reported.
    """
    branch = branch or backend.current_branch()
    if branch == DETACHED_HEAD:
        return AheadBehind(ahead=0, behind=0, has_remote=False)
    local_sha = backend.resolve_ref(f"refs/heads/{branch}")
    if local_sha is None:
        return AheadBehind(ahead=0, behind=0, has_remote=False)

    remote = tracking_ref(backend, branch)
    if remote is None:
        return AheadBehind(ahead=len(backend.log(local_sha, UNTRACKED_DEPTH)), behind=0, has_remote=False)
    remote_sha = backend.resolve_ref(f"refs/remotes/{remote}")
    if remote_sha == local_sha:
        return AheadBehind(ahead=0, behind=0)

    local_ids = [c.id for c in backend.log(local_sha, depth)]
    remote_ids = [c.id for c in backend.log(remote_sha, depth)]
    return AheadBehind(
        ahead=_count_until_common(local_ids, set(remote_ids)),
        behind=_count_until_common(remote_ids, set(local_ids)),
    )


def _count_until_common(ids: list[str], other: set[str]) -> int:
    count = 0
    for commit_id in ids:
        if commit_id in other:
            break
        count += 1
    return count


def validate_branch_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Branch name must not be empty")
    if not BRANCH_NAME_PATTERN.match(name):
        raise ValidationError(f"Invalid branch name '{name}': use letters, digits, '-', '_' and '/'")
    if name.startswith(".") or ".." in name or name.startswith("/") or name.endswith("/"):
        raise ValidationError(f"Invalid branch name '{name}'")


def validate_tag_name(name: str) -> None:
    if not name or not TAG_NAME_PATTERN.match(name) or name.startswith(".") or ".." in name:
        raise ValidationError(f"Invalid tag name '{name}'")


def list_branches(backend: Backend) -> list[Branch]:
    """Local branches first, then remote-tracking; the active one is flagged."""
    return backend.list_branches()


def create_branch(backend: Backend, name: str, start: str | None = None, checkout: bool = False) -> None:
    validate_branch_name(name)
    if backend.branch_exists(name):
        raise ValidationError(f"Branch '{name}' already exists")
    if start is not None:
        resolve_ref(backend, start)
    logger.info(f"Creating branch {name} at {start or 'HEAD'}")
    try:
        backend.create_branch(name, start)
        if checkout:
            backend.checkout(name)
    except BackendError as e:
        raise classify_backend_error(e, "create branch", ref=start) from e


def delete_branch(backend: Backend, name: str) -> None:
    """Force-delete a local branch. The checked-out branch cannot be deleted."""
    if not backend.branch_exists(name):
        raise RefNotFound(name)
    if backend.current_branch() == name:
        raise ValidationError(f"Cannot delete the checked-out branch '{name}'")
    logger.info(f"Deleting branch {name}")
    backend.delete_branch(name)


def rename_branch(backend: Backend, old: str, new: str) -> None:
    validate_branch_name(new)
    if not backend.branch_exists(old):
        raise RefNotFound(old)
    if backend.branch_exists(new):
        raise ValidationError(f"Branch '{new}' already exists")
    logger.info(f"Renaming branch {old} to {new}")
    backend.rename_branch(old, new)


def checkout(backend: Backend, ref: str) -> None:
    """Switch to a branch, or detach at any other ref."""
    if backend.branch_exists(ref):
        detach = False
    else:
        resolve_ref(backend, ref)
        detach = True
    logger.info(f"Checking out {ref}")
    try:
        backend.checkout(ref, detach=detach)
    except BackendError as e:
        raise classify_backend_error(e, "checkout", ref=ref) from e


def restore_branch_to(backend: Backend, name: str, commit_id: str) -> None:
    """Create `name` at commit_id, or force-update it there if it exists."""
    validate_branch_name(name)
    sha = resolve_ref(backend, commit_id)
    logger.info(f"Restoring branch {name} to {sha[:7]}")
    if not backend.branch_exists(name):
        backend.create_branch(name, sha)
    elif backend.current_branch() == name:
        backend.force_checkout_branch(name, sha)
    else:
        backend.set_branch(name, sha)


def list_tags(backend: Backend) -> list[str]:
    return backend.list_tags()


def create_tag(backend: Backend, name: str, ref: str | None = None, message: str | None = None) -> None:
    """Lightweight tag, or annotated when a message is given."""
    validate_tag_name(name)
    if name in backend.list_tags():
        raise ValidationError(f"Tag '{name}' already exists")
    sha = resolve_ref(backend, ref or "HEAD")
    logger.info(f"Creating tag {name} at {sha[:7]}")
    backend.create_tag(name, sha, message)


def delete_tag(backend: Backend, name: str) -> None:
    if name not in backend.list_tags():
        raise RefNotFound(name)
    logger.info(f"Deleting tag {name}")
    backend.delete_tag(name)


# --- history queries ---------------------------------------------------


def get_commits(backend: Backend, ref: str = "HEAD", skip: int = 0, limit: int = 20) -> list[Commit]:
    """One page of history, newest first. An unborn HEAD has no commits."""
    if skip < 0 or limit <= 0:
        raise ValidationError("skip must be >= 0 and limit > 0")
    sha = backend.resolve_ref(ref)
    if sha is None:
        if ref == "HEAD":
            return []
        raise RefNotFound(ref)
    return backend.log(sha, skip + limit)[skip:]


def has_more_commits(backend: Backend, ref: str, current_count: int) -> bool:
    sha = backend.resolve_ref(ref)
    if sha is None:
        return False
    return len(backend.log(sha, current_count + 1)) > current_count


def get_commit_details(backend: Backend, commit_id: str) -> Commit:
    """A commit with its per-file changes and line counts."""
    sha = resolve_ref(backend, commit_id)
    commit = backend.log(sha, 1)[0]
    commit.changes = backend.commit_changes(commit)
    return commit


def get_file_history(backend: Backend, path: str, limit: int = 50, ref: str = "HEAD") -> list[Commit]:
    """Commits that touched path, newest first."""
    sha = backend.resolve_ref(ref)
    if sha is None:
        return []
    return backend.log(sha, limit, path=path)


def compare_branches(backend: Backend, a: str, b: str, depth: int = AHEAD_BEHIND_DEPTH) -> tuple[list[Commit], list[Commit]]:
    """(commits in a not in b, commits in b not in a), each newest first and bounded by depth."""
    a_log = backend.log(resolve_ref(backend, a), depth)
    b_log = backend.log(resolve_ref(backend, b), depth)
    a_ids = {c.id for c in a_log}
    b_ids = {c.id for c in b_log}
    return [c for c in a_log if c.id not in b_ids], [c for c in b_log if c.id not in a_ids]
