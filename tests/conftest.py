"""Shared fixtures: an in-memory backend with scripted failures."""

import pytest

from repoengine.errors import BackendError
from repoengine.lib.constants import CHERRY_PICK_HEAD, MERGE_HEAD, REBASE_MERGE, REVERT_HEAD
from repoengine.lib.types import Branch, Commit, Remote

_MARKER_FOR = {
    "cherry-pick": CHERRY_PICK_HEAD,
    "revert": REVERT_HEAD,
    "merge": MERGE_HEAD,
    "rebase": REBASE_MERGE,
}


def make_commit(sha: str, parents=(), message=None, files=None, author="Ada", date=0) -> Commit:
    commit = Commit(id=sha, message=message or f"commit {sha[:7]}", author=author, date=date, parents=list(parents))
    commit.files = dict(files or {})
    return commit


class FakeBackend:
    """
    Branches, HEAD and markers over a fixed set of Commit objects.

    Commits carry a `files` dict so file reads and blame work. Picks
    create new commits; ids listed in conflict_on / empty_on fail the way
    git does and leave the matching marker behind.
    """

    name = "fake"

    def __init__(self, root, commits, branch="main"):
        self.root = root
        self.commits = {c.id: c for c in commits}
        self.branches = {branch: commits[-1].id}
        self.remote_branches: dict[str, str] = {}
        self.remotes: list[Remote] = []
        self.tags: list[str] = []
        self.dirty: list = []
        self.head = branch
        self.markers: set[str] = set()
        self.unresolved: list[str] = []
        self.conflict_on: set[str] = set()
        self.empty_on: set[str] = set()
        self.fail_branch_checkout = False
        self.calls: list[tuple] = []
        self._counter = 0

    # --- queries

    def _head_sha(self):
        return self.branches.get(self.head, self.head)

    def resolve_ref(self, ref):
        if ref == "HEAD":
            return self._head_sha()
        if ref in self.branches:
            return self.branches[ref]
        if ref in self.remote_branches:
            return self.remote_branches[ref]
        if ref.startswith("refs/heads/"):
            return self.branches.get(ref[len("refs/heads/"):])
        if ref.startswith("refs/remotes/"):
            return self.remote_branches.get(ref[len("refs/remotes/"):])
        return ref if ref in self.commits else None

    def current_branch(self):
        return self.head if self.head in self.branches else "HEAD"

    def branch_exists(self, name):
        return name in self.branches

    def list_branches(self):
        local = [Branch(name=n, commit_id=s, active=n == self.head) for n, s in self.branches.items()]
        remote = [Branch(name=n, commit_id=s, is_remote=True) for n, s in self.remote_branches.items()]
        return local + remote

    def list_remotes(self):
        return list(self.remotes)

    def list_tags(self):
        return list(self.tags)

    def status(self):
        return list(self.dirty)

    def log(self, ref, max_count, path=None):
        sha = self.resolve_ref(ref)
        out = []
        while sha is not None and len(out) < max_count:
            commit = self.commits[sha]
            parent = self.commits.get(commit.parents[0]) if commit.parents else None
            touched = path is None or commit.files.get(path) != (parent.files.get(path) if parent else None)
            if touched:
                out.append(commit)
            sha = commit.parents[0] if commit.parents else None
        return out

    def read_file_at(self, ref, path):
        sha = self.resolve_ref(ref)
        if sha is None:
            return None
        return self.commits[sha].files.get(path)

    def native_blame(self, path, ref):
        return None

    def has_marker(self, name):
        return name in self.markers

    def conflicted_files(self):
        return list(self.unresolved)

    def is_ancestor(self, ancestor, descendant):
        return any(c.id == ancestor for c in self.log(descendant, 10_000))

    # --- mutations

    def _advance(self, message, files=None, parents=None):
        self._counter += 1
        new_id = f"{self._counter:040d}"
        head = self._head_sha()
        base = self.commits[head].files if head in self.commits else {}
        commit = make_commit(new_id, parents if parents is not None else [head], message, files or base)
        self.commits[new_id] = commit
        if self.head in self.branches:
            self.branches[self.head] = new_id
        else:
            self.head = new_id
        return new_id

    def _fail(self, operation, commit_id, verb):
        self.markers.add(_MARKER_FOR[operation])
        self.unresolved = ["f.txt"]
        raise BackendError(
            f"git {operation} failed",
            stderr=f"error: could not {verb} {commit_id[:7]}\nCONFLICT (content): Merge conflict in f.txt",
        )

    def checkout(self, ref, detach=False):
        self.calls.append(("checkout", ref, detach))
        if not detach and ref in self.branches:
            if self.fail_branch_checkout:
                raise BackendError("checkout failed", stderr="error: Your local changes would be overwritten")
            self.head = ref
        else:
            self.head = self.resolve_ref(ref)

    def cherry_pick(self, commit_id, author=None, mainline=None):
        self.calls.append(("cherry_pick", commit_id))
        if commit_id in self.conflict_on:
            self._fail("cherry-pick", commit_id, "apply")
        if commit_id in self.empty_on:
            self.markers.add(CHERRY_PICK_HEAD)
            raise BackendError(
                "git cherry-pick failed",
                stderr="The previous cherry-pick is now empty, possibly due to conflict resolution.",
            )
        self._advance(f"picked {commit_id}", self.commits[commit_id].files)

    def revert_no_commit(self, commit_id, mainline=None):
        self.calls.append(("revert", commit_id))
        if commit_id in self.conflict_on:
            self._fail("revert", commit_id, "revert")
        self.markers.add(REVERT_HEAD)

    def merge_no_ff(self, branch, message=None, author=None):
        self.calls.append(("merge", branch))
        sha = self.resolve_ref(branch)
        if sha in self.conflict_on:
            self._fail("merge", sha, "merge")
        self._advance(message or f"Merge branch '{branch}'", parents=[self._head_sha(), sha])

    def rebase(self, onto):
        self.calls.append(("rebase", onto))
        sha = self.resolve_ref(onto)
        if sha in self.conflict_on:
            self._fail("rebase", sha, "apply")
        self._advance(f"rebased onto {onto}", parents=[sha])

    def push_tag(self, remote, tag, token=None):
        self.calls.append(("push_tag", remote, tag, token))

    def stash_push_path(self, path, message, include_untracked=False):
        self.calls.append(("stash_push_path", path, message, include_untracked))

    def sequencer(self, operation, action):
        self.calls.append(("sequencer", operation, action))
        self.markers.discard(_MARKER_FOR[operation])
        self.unresolved = []
        if action == "continue":
            self._advance(f"resolved {operation}")

    def commit(self, message, author=None, amend=False):
        self.calls.append(("commit", message, amend))
        self.markers.discard(REVERT_HEAD)
        if amend:
            tip = self.commits[self._head_sha()]
            return self._advance(message, tip.files, parents=list(tip.parents))
        return self._advance(message)

    def reset(self, ref, mode):
        self.calls.append(("reset", ref, mode))
        sha = self.resolve_ref(ref)
        if self.head in self.branches:
            self.branches[self.head] = sha
        else:
            self.head = sha

    def force_checkout_branch(self, name, ref):
        self.calls.append(("force_checkout_branch", name, ref))
        self.branches[name] = self.resolve_ref(ref)
        self.head = name

    def create_branch(self, name, start=None):
        self.branches[name] = self.resolve_ref(start or "HEAD")

    def set_branch(self, name, ref):
        self.branches[name] = self.resolve_ref(ref)


@pytest.fixture
def linear_repo(tmp_path):
    """R <- A <- B <- C <- D on main, each commit rewriting f.txt."""
    ids = ["r" * 40, "a" * 40, "b" * 40, "c" * 40, "d" * 40]
    commits, parent = [], None
    for sha in ids:
        commits.append(make_commit(sha, [parent] if parent else [], files={"f.txt": f"{sha[0]}\n"}))
        parent = sha
    return FakeBackend(tmp_path, commits)
