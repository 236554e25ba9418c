"""
Embedded backend: in-process repository access through dulwich.

Used when no git executable is available. Reads walk object trees
directly; the working tree status is a (HEAD, index, worktree) matrix
computed by hashing files. Merge-family operations use a three-way tree
merge with line-level merging from repoengine.git.merge3.

Failures are raised as BackendError carrying the same stderr wording git
uses, so error classification is shared with the native backend.
"""

import logging
import os
import re
import stat
import threading
import time
from collections import deque
from difflib import SequenceMatcher
from pathlib import Path

from dulwich import porcelain
from dulwich.diff_tree import CHANGE_ADD, CHANGE_DELETE, CHANGE_RENAME, RenameDetector, tree_changes
from dulwich.errors import NotGitRepository
from dulwich.ignore import IgnoreFilterManager
from dulwich.index import Index, IndexEntry, commit_tree
from dulwich.object_store import tree_lookup_path
from dulwich.objects import Blob, Commit as DulwichCommit, Tag
from dulwich.objectspec import parse_commit
from dulwich.repo import Repo
from dulwich.walk import Walker

from repoengine.errors import BackendError, OperationCancelled, UnsupportedOperation
from repoengine.git.backend import ProgressFn
from repoengine.git.merge3 import merge_blobs
from repoengine.lib.config import EngineConfig
from repoengine.lib.constants import CHERRY_PICK_HEAD, DETACHED_HEAD, MERGE_HEAD, REVERT_HEAD
from repoengine.lib.types import (
    ADDED,
    CONFLICTED,
    DELETED,
    MODIFIED,
    RENAMED,
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

# Paths with unresolved conflicts, one per line, under the control dir
CONFLICTS_FILE = "REPOENGINE_CONFLICTS"
MERGE_MSG = "MERGE_MSG"
ORIG_HEAD = "ORIG_HEAD"

_MARKERS = (CHERRY_PICK_HEAD, REVERT_HEAD, MERGE_HEAD, MERGE_MSG, CONFLICTS_FILE)

MODE_FILE = 0o100644
MODE_EXEC = 0o100755
MODE_LINK = 0o120000
MODE_GITLINK = 0o160000

_IDENT = re.compile(rb'^(.*?)\s*<([^>]*)>\s*$')
_SUFFIX = re.compile(r'(\^\{commit\}|~\d*|\^\d*)$')

# (mode, sha) per path
Entries = dict[bytes, tuple[int, bytes]]


def _ident(author: Author) -> bytes:
    return f"{author.name} <{author.email}>".encode("utf-8")


def _split_ident(raw: bytes) -> tuple[str, str]:
    match = _IDENT.match(raw)
    if not match:
        return raw.decode("utf-8", "replace"), ""
    return match.group(1).decode("utf-8", "replace"), match.group(2).decode("utf-8", "replace")


def _local_tz() -> int:
    return time.localtime().tm_gmtoff


def _worktree_mode(st: os.stat_result) -> int:
    if stat.S_ISLNK(st.st_mode):
        return MODE_LINK
    if st.st_mode & 0o111:
        return MODE_EXEC
    return MODE_FILE


class _ProgressStream:
    """Byte stream handed to dulwich; forwards progress lines and honours cancel."""

    def __init__(self, progress: ProgressFn | None, cancel: threading.Event | None):
        self._progress = progress
        self._cancel = cancel
        self._buf = ""

    def write(self, data) -> int:
        if self._cancel is not None and self._cancel.is_set():
            raise OperationCancelled("network operation cancelled")
        text = data.decode("utf-8", "replace") if isinstance(data, bytes) else data
        self._buf += text
        parts = re.split(r'[\r\n]', self._buf)
        self._buf = parts.pop()
        for line in parts:
            if line and self._progress:
                self._progress(line)
        return len(data)

    def flush(self) -> None:
        if self._buf and self._progress:
            self._progress(self._buf)
        self._buf = ""


def _credentials(token: str | None) -> dict:
    if not token:
        return {}
    return {"username": "x-access-token", "password": token}


class EmbeddedBackend:
    """Backend that operates on the repository through dulwich."""

    name = "embedded"

    def __init__(self, root: Path, config: EngineConfig | None = None):
        self.root = Path(root)
        self.config = config or EngineConfig()

    def _open(self) -> Repo:
        try:
            return Repo(str(self.root))
        except NotGitRepository as e:
            raise BackendError(f"fatal: not a git repository: {self.root}", exit_code=128,
                               stderr=f"fatal: not a git repository: {self.root}") from e

    def _control(self, repo: Repo) -> Path:
        return Path(repo.controldir())

    # --- low-level helpers ---------------------------------------------

    def _head_sha(self, repo: Repo) -> bytes | None:
        try:
            return repo.refs[b"HEAD"]
        except KeyError:
            return None

    def _head_ref(self, repo: Repo) -> bytes | None:
        """Branch ref HEAD points at, or None when detached."""
        raw = repo.refs.read_ref(b"HEAD")
        if raw and raw.startswith(b"ref: "):
            return raw[len(b"ref: "):].strip()
        return None

    def _write_head(self, repo: Repo, value: bytes) -> None:
        """Point HEAD at a ref (b"refs/heads/x") or detach it at a sha."""
        head_file = self._control(repo) / "HEAD"
        if value.startswith(b"refs/"):
            head_file.write_bytes(b"ref: " + value + b"\n")
        else:
            head_file.write_bytes(value + b"\n")

    def _advance_head(self, repo: Repo, sha: bytes) -> None:
        ref = self._head_ref(repo)
        if ref is not None:
            repo.refs[ref] = sha
        else:
            self._write_head(repo, sha)

    def _resolve(self, repo: Repo, ref: str) -> bytes | None:
        suffixes = []
        base = ref
        while True:
            match = _SUFFIX.search(base)
            if not match or match.start() == 0:
                break
            suffixes.insert(0, match.group(1))
            base = base[:match.start()]
        try:
            if base == "HEAD":
                sha = self._head_sha(repo)
                if sha is None:
                    return None
            else:
                sha = parse_commit(repo, base.encode("utf-8")).id
        except (KeyError, ValueError, NotImplementedError):
            return None
        for suffix in suffixes:
            if suffix == "^{commit}":
                continue
            if suffix.startswith("~"):
                steps = int(suffix[1:] or 1)
                for _ in range(steps):
                    parents = repo[sha].parents
                    if not parents:
                        return None
                    sha = parents[0]
            else:
                nth = int(suffix[1:] or 1)
                if nth == 0:
                    continue
                parents = repo[sha].parents
                if len(parents) < nth:
                    return None
                sha = parents[nth - 1]
        return sha

    def _require(self, repo: Repo, ref: str) -> bytes:
        sha = self._resolve(repo, ref)
        if sha is None:
            msg = f"fatal: bad revision '{ref}'"
            raise BackendError(msg, exit_code=128, stderr=msg)
        return sha

    def _flatten(self, repo: Repo, tree_id: bytes | None, prefix: bytes = b"") -> Entries:
        entries: Entries = {}
        if tree_id is None:
            return entries
        for item in repo[tree_id].items():
            path = prefix + item.path
            if stat.S_ISDIR(item.mode):
                entries.update(self._flatten(repo, item.sha, path + b"/"))
            else:
                entries[path] = (item.mode, item.sha)
        return entries

    def _commit_entries(self, repo: Repo, sha: bytes | None) -> Entries:
        if sha is None:
            return {}
        return self._flatten(repo, repo[sha].tree)

    def _index_entries(self, repo: Repo) -> Entries:
        entries: Entries = {}
        for path, entry in repo.open_index().items():
            # Conflicted entries carry no single sha
            if isinstance(entry, IndexEntry):
                entries[path] = (entry.mode, entry.sha)
        return entries

    def _blob_id_of(self, full: Path) -> bytes | None:
        try:
            st = full.lstat()
        except FileNotFoundError:
            return None
        if stat.S_ISLNK(st.st_mode):
            return Blob.from_string(os.readlink(full).encode("utf-8")).id
        if not stat.S_ISREG(st.st_mode):
            return None
        return Blob.from_string(full.read_bytes()).id

    def _write_index(self, repo: Repo, entries: Entries) -> None:
        index = Index(repo.index_path(), read=False)
        for path, (mode, sha) in sorted(entries.items()):
            full = self.root / path.decode("utf-8")
            st = None
            if mode != MODE_GITLINK and self._blob_id_of(full) == sha:
                st = full.lstat()
            if st is not None:
                index[path] = IndexEntry(
                    ctime=(int(st.st_ctime), 0),
                    mtime=(int(st.st_mtime), 0),
                    dev=st.st_dev,
                    ino=st.st_ino,
                    mode=mode,
                    uid=st.st_uid,
                    gid=st.st_gid,
                    size=st.st_size,
                    sha=sha,
                    flags=0,
                )
            else:
                # Zeroed stat forces a rehash on the next status
                index[path] = IndexEntry(
                    ctime=(0, 0), mtime=(0, 0), dev=0, ino=0, mode=mode,
                    uid=0, gid=0, size=0, sha=sha, flags=0,
                )
        index.write()

    def _write_file(self, repo: Repo, path: bytes, mode: int, sha: bytes) -> None:
        if mode == MODE_GITLINK:
            return
        self._write_bytes(path, repo[sha].data, mode)

    def _write_bytes(self, path: bytes, data: bytes, mode: int = MODE_FILE) -> None:
        full = self.root / path.decode("utf-8")
        full.parent.mkdir(parents=True, exist_ok=True)
        if full.is_symlink() or (full.exists() and mode == MODE_LINK):
            full.unlink()
        if mode == MODE_LINK:
            os.symlink(data.decode("utf-8"), full)
            return
        full.write_bytes(data)
        current = full.stat().st_mode
        if mode == MODE_EXEC:
            full.chmod(current | 0o111)
        else:
            full.chmod(current & ~0o111)

    def _remove_file(self, path: bytes) -> None:
        full = self.root / path.decode("utf-8")
        if full.is_symlink() or full.exists():
            full.unlink()
        parent = full.parent
        while parent != self.root and parent.exists() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    def _switch(self, repo: Repo, old: Entries, new: Entries, overrides: dict[bytes, bytes] | None = None) -> None:
        """Move the worktree and index from `old` to `new`, then write `overrides` verbatim."""
        for path in old:
            if path not in new:
                self._remove_file(path)
        for path, entry in new.items():
            full = self.root / path.decode("utf-8")
            if old.get(path) != entry or not (full.exists() or full.is_symlink()):
                self._write_file(repo, path, *entry)
        for path, data in (overrides or {}).items():
            self._write_bytes(path, data, new.get(path, (MODE_FILE, b""))[0])
        self._write_index(repo, new)

    def _ignore_manager(self, repo: Repo) -> IgnoreFilterManager:
        return IgnoreFilterManager.from_repo(repo)

    def _worktree_files(self, repo: Repo) -> dict[bytes, Path]:
        """Non-ignored files under the root, keyed by repo-relative path."""
        ignore = self._ignore_manager(repo)
        tracked = set(self._index_entries(repo))
        files: dict[bytes, Path] = {}
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root)
            kept = []
            for d in dirnames:
                if d == ".git":
                    continue
                rel = (rel_dir / d).as_posix()
                if ignore.is_ignored(rel + "/"):
                    continue
                kept.append(d)
            dirnames[:] = kept
            for name in filenames:
                rel = (rel_dir / name).as_posix()
                key = rel.encode("utf-8")
                if key not in tracked and ignore.is_ignored(rel):
                    continue
                files[key] = Path(dirpath) / name
        return files

    def _read_lines(self, repo: Repo, name: str) -> list[str]:
        path = self._control(repo) / name
        if not path.exists():
            return []
        return [line for line in path.read_text().splitlines() if line.strip()]

    def _write_marker(self, repo: Repo, name: str, content: str) -> None:
        (self._control(repo) / name).write_text(content)

    def _clear_markers(self, repo: Repo) -> None:
        for name in _MARKERS:
            path = self._control(repo) / name
            if path.exists():
                path.unlink()

    def _identity(self, repo: Repo, author: Author | None) -> Author:
        if author is not None:
            return author
        found = self._config_author(repo)
        if found is None:
            msg = "Author identity unknown\n\n*** Please tell me who you are."
            raise BackendError(msg, exit_code=128, stderr=msg)
        return found

    def _config_author(self, repo: Repo) -> Author | None:
        config = repo.get_config_stack()
        try:
            name = config.get((b"user",), b"name").decode("utf-8")
            email = config.get((b"user",), b"email").decode("utf-8")
        except KeyError:
            return None
        return Author(name=name, email=email)

    def _new_commit(
        self,
        repo: Repo,
        tree: bytes,
        parents: list[bytes],
        message: str,
        committer: Author,
        author: bytes | None = None,
        author_time: int | None = None,
        author_tz: int | None = None,
    ) -> bytes:
        now = int(time.time())
        tz = _local_tz()
        commit = DulwichCommit()
        commit.tree = tree
        commit.parents = parents
        commit.committer = _ident(committer)
        commit.author = author if author is not None else commit.committer
        commit.commit_time = now
        commit.author_time = author_time if author_time is not None else now
        commit.commit_timezone = tz
        commit.author_timezone = author_tz if author_tz is not None else tz
        commit.encoding = b"UTF-8"
        if not message.endswith("\n"):
            message += "\n"
        commit.message = message.encode("utf-8")
        repo.object_store.add_object(commit)
        return commit.id

    def _to_commit(self, c: DulwichCommit) -> Commit:
        name, email = _split_ident(c.author)
        return Commit(
            id=c.id.decode("ascii"),
            message=c.message.decode("utf-8", "replace").rstrip("\n"),
            author=name,
            author_email=email,
            date=c.author_time,
            parents=[p.decode("ascii") for p in c.parents],
            tree_id=c.tree.decode("ascii"),
        )

    def _ancestors(self, repo: Repo, sha: bytes) -> set[bytes]:
        seen: set[bytes] = set()
        queue = deque([sha])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(repo[current].parents)
        return seen

    def _merge_base(self, repo: Repo, a: bytes, b: bytes) -> bytes | None:
        ours = self._ancestors(repo, a)
        for entry in Walker(repo.object_store, [b]):
            if entry.commit.id in ours:
                return entry.commit.id
        return None

    def _require_no_operation(self, repo: Repo, operation: str) -> None:
        control = self._control(repo)
        if (control / CHERRY_PICK_HEAD).exists():
            raise BackendError("error: cherry-pick is already in progress", exit_code=128,
                               stderr="error: cherry-pick is already in progress")
        if (control / REVERT_HEAD).exists():
            raise BackendError("error: revert is already in progress", exit_code=128,
                               stderr="error: revert is already in progress")
        if (control / MERGE_HEAD).exists():
            msg = "fatal: You have not concluded your merge (MERGE_HEAD exists)."
            raise BackendError(msg, exit_code=128, stderr=msg)

    def _local_changes(self, repo: Repo) -> tuple[Entries, Entries, set[bytes]]:
        """(head entries, index entries, paths whose worktree differs from the index)."""
        head = self._commit_entries(repo, self._head_sha(repo))
        index = self._index_entries(repo)
        dirty = set()
        for path, (mode, sha) in index.items():
            if mode == MODE_GITLINK:
                continue
            if self._blob_id_of(self.root / path.decode("utf-8")) != sha:
                dirty.add(path)
        return head, index, dirty

    def _merge_trees(
        self,
        repo: Repo,
        base: Entries,
        ours: Entries,
        theirs: Entries,
        theirs_label: str,
    ) -> tuple[Entries, dict[bytes, bytes], list[bytes]]:
        """
        Three-way merge of flattened trees.

        Returns (index entries, worktree overrides for conflicted files,
        conflicted paths). Conflicted paths keep our version in the index.
        """
        merged: Entries = {}
        overrides: dict[bytes, bytes] = {}
        conflicts: list[bytes] = []
        for path in sorted(set(base) | set(ours) | set(theirs)):
            b, o, t = base.get(path), ours.get(path), theirs.get(path)
            if o == t:
                result = o
            elif o == b:
                result = t
            elif t == b:
                result = o
            elif o is not None and t is not None:
                base_data = repo[b[1]].data if b is not None else b""
                outcome = merge_blobs(
                    base_data, repo[o[1]].data, repo[t[1]].data,
                    ours_label="HEAD", theirs_label=theirs_label,
                )
                mode = t[0] if b is not None and o[0] == b[0] else o[0]
                if outcome.clean:
                    blob = Blob.from_string(outcome.content)
                    repo.object_store.add_object(blob)
                    result = (mode, blob.id)
                else:
                    result = o
                    overrides[path] = outcome.content
                    conflicts.append(path)
            else:
                # modify/delete
                result = o if o is not None else t
                conflicts.append(path)
            if result is not None:
                merged[path] = result
        return merged, overrides, conflicts

    def _conflict_error(self, headline: str, conflicts: list[bytes], tail: str = "") -> BackendError:
        lines = [headline] + [
            f"CONFLICT (content): Merge conflict in {p.decode('utf-8')}" for p in conflicts
        ]
        if tail:
            lines.append(tail)
        msg = "\n".join(lines)
        return BackendError(msg, exit_code=1, stderr=msg)

    def _apply_merge(
        self,
        repo: Repo,
        base: Entries,
        theirs: Entries,
        theirs_label: str,
        operation: str,
    ) -> tuple[Entries, list[bytes]]:
        """Merge `theirs` into HEAD's tree in index and worktree. No commit is made."""
        head, index, dirty = self._local_changes(repo)
        if index != head:
            msg = (f"error: your local changes would be overwritten by {operation}.\n"
                   "hint: commit your changes or stash them to proceed.")
            raise BackendError(msg, exit_code=128, stderr=msg)

        merged, overrides, conflicts = self._merge_trees(repo, base, head, theirs, theirs_label)
        touched = {p for p in set(head) | set(merged) if head.get(p) != merged.get(p)} | set(conflicts)
        blocked = sorted(touched & dirty)
        if blocked:
            listing = "\n\t".join(p.decode("utf-8") for p in blocked)
            msg = (f"error: Your local changes to the following files would be overwritten by {operation}:"
                   f"\n\t{listing}\nPlease commit your changes or stash them before you {operation}.")
            raise BackendError(msg, exit_code=128, stderr=msg)

        self._switch(repo, head, merged, overrides)
        return merged, conflicts

    # --- refs and history ----------------------------------------------

    def resolve_ref(self, ref: str) -> str | None:
        with self._open() as repo:
            sha = self._resolve(repo, ref)
            return sha.decode("ascii") if sha else None

    def current_branch(self) -> str:
        with self._open() as repo:
            ref = self._head_ref(repo)
            if ref is None or not ref.startswith(b"refs/heads/"):
                return DETACHED_HEAD
            return ref[len(b"refs/heads/"):].decode("utf-8")

    def list_branches(self) -> list[Branch]:
        with self._open() as repo:
            head_ref = self._head_ref(repo)
            branches = [
                Branch(
                    name=name.decode("utf-8"),
                    commit_id=sha.decode("ascii"),
                    active=head_ref == b"refs/heads/" + name,
                )
                for name, sha in sorted(repo.refs.as_dict(b"refs/heads/").items())
            ]
            branches += [
                Branch(name=name.decode("utf-8"), commit_id=sha.decode("ascii"), is_remote=True)
                for name, sha in sorted(repo.refs.as_dict(b"refs/remotes/").items())
                if not name.endswith(b"/HEAD")
            ]
            if head_ref is None:
                head = self._head_sha(repo)
                if head is not None:
                    branches.insert(0, Branch(name=DETACHED_HEAD, commit_id=head.decode("ascii"), active=True))
            return branches

    def branch_exists(self, name: str) -> bool:
        with self._open() as repo:
            return b"refs/heads/" + name.encode("utf-8") in repo.refs

    def log(self, ref: str, max_count: int, path: str | None = None) -> list[Commit]:
        with self._open() as repo:
            sha = self._require(repo, ref)
            kwargs = {"include": [sha], "max_entries": max_count}
            if path:
                kwargs["paths"] = [path.encode("utf-8")]
            return [self._to_commit(entry.commit) for entry in repo.get_walker(**kwargs)]

    def commit_changes(self, commit: Commit) -> list[FileChange]:
        with self._open() as repo:
            c = repo[commit.id.encode("ascii")]
            parent_tree = repo[c.parents[0]].tree if c.parents else None
            changes = []
            detector = RenameDetector(repo.object_store)
            for change in tree_changes(repo.object_store, parent_tree, c.tree, rename_detector=detector):
                # Either side may be None (or a null entry on older dulwich) for adds and deletes
                old_data = repo[change.old.sha].data if change.old and change.old.sha else b""
                new_data = repo[change.new.sha].data if change.new and change.new.sha else b""
                additions, deletions = _line_counts(old_data, new_data)
                if change.type == CHANGE_ADD:
                    fc = FileChange(filename=change.new.path.decode("utf-8"), status=ADDED)
                elif change.type == CHANGE_DELETE:
                    fc = FileChange(filename=change.old.path.decode("utf-8"), status=DELETED)
                elif change.type == CHANGE_RENAME:
                    fc = FileChange(
                        filename=change.new.path.decode("utf-8"),
                        status=RENAMED,
                        old_filename=change.old.path.decode("utf-8"),
                    )
                else:
                    fc = FileChange(filename=change.new.path.decode("utf-8"), status=MODIFIED)
                fc.additions, fc.deletions = additions, deletions
                changes.append(fc)
            return changes

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        with self._open() as repo:
            a = self._require(repo, ancestor)
            d = self._require(repo, descendant)
            return a in self._ancestors(repo, d)

    def has_marker(self, name: str) -> bool:
        with self._open() as repo:
            return (self._control(repo) / name).exists()

    def list_tags(self) -> list[str]:
        with self._open() as repo:
            return sorted(name.decode("utf-8") for name in repo.refs.as_dict(b"refs/tags/"))

    def list_remotes(self) -> list[Remote]:
        with self._open() as repo:
            config = repo.get_config()
            remotes = []
            for section in config.sections():
                if len(section) != 2 or section[0] != b"remote":
                    continue
                try:
                    url = config.get(section, b"url").decode("utf-8")
                except KeyError:
                    continue
                try:
                    push_url = config.get(section, b"pushurl").decode("utf-8")
                except KeyError:
                    push_url = url
                remotes.append(Remote(name=section[1].decode("utf-8"), fetch_url=url, push_url=push_url))
            return remotes

    # --- content -------------------------------------------------------

    def status(self) -> list[FileChange]:
        with self._open() as repo:
            head = self._commit_entries(repo, self._head_sha(repo))
            index = self._index_entries(repo)
            worktree = self._worktree_files(repo)
            conflicted = {p.encode("utf-8") for p in self._read_lines(repo, CONFLICTS_FILE)}

            staged_added, staged_deleted, changes = [], [], []
            for path in sorted(set(head) | set(index)):
                if path in conflicted:
                    continue
                h, i = head.get(path), index.get(path)
                if h == i:
                    continue
                if h is None:
                    staged_added.append(path)
                elif i is None:
                    staged_deleted.append(path)
                else:
                    changes.append(FileChange(filename=path.decode("utf-8"), status=MODIFIED, staged=True))

            # Exact renames: a staged delete and a staged add of the same blob
            by_sha = {head[p][1]: p for p in staged_deleted}
            renamed_from = set()
            for path in staged_added:
                source = by_sha.get(index[path][1])
                if source is not None and source not in renamed_from:
                    renamed_from.add(source)
                    changes.append(FileChange(filename=path.decode("utf-8"), status=RENAMED, staged=True,
                                              old_filename=source.decode("utf-8")))
                else:
                    changes.append(FileChange(filename=path.decode("utf-8"), status=ADDED, staged=True))
            for path in staged_deleted:
                if path not in renamed_from:
                    changes.append(FileChange(filename=path.decode("utf-8"), status=DELETED, staged=True))

            for path in sorted(conflicted):
                changes.append(FileChange(filename=path.decode("utf-8"), status=CONFLICTED, staged=False))

            for path, (mode, sha) in sorted(index.items()):
                if path in conflicted or mode == MODE_GITLINK:
                    continue
                full = worktree.get(path)
                if full is None:
                    changes.append(FileChange(filename=path.decode("utf-8"), status=DELETED, staged=False))
                    continue
                if self._blob_id_of(full) != sha or _worktree_mode(full.lstat()) != mode:
                    changes.append(FileChange(filename=path.decode("utf-8"), status=MODIFIED, staged=False))

            for path in sorted(set(worktree) - set(index) - conflicted):
                changes.append(FileChange(filename=path.decode("utf-8"), status=ADDED, staged=False))
            return changes

    def list_files(self) -> list[str]:
        with self._open() as repo:
            paths = set(self._index_entries(repo)) | set(self._worktree_files(repo))
            return sorted(p.decode("utf-8") for p in paths)

    def read_file_at(self, ref: str, path: str) -> str | None:
        with self._open() as repo:
            sha = self._resolve(repo, ref)
            if sha is None:
                return None
            try:
                _, blob_sha = tree_lookup_path(repo.__getitem__, repo[sha].tree, path.encode("utf-8"))
            except KeyError:
                return None
            return repo[blob_sha].data.decode("utf-8", "replace")

    def read_staged_file(self, path: str) -> str | None:
        with self._open() as repo:
            entry = self._index_entries(repo).get(path.encode("utf-8"))
            if entry is None:
                return None
            return repo[entry[1]].data.decode("utf-8", "replace")

    def native_blame(self, path: str, ref: str) -> list[BlameLine] | None:
        # No line attribution in-process; callers fall back to history replay
        return None

    # --- index and worktree --------------------------------------------

    def _stage(self, repo: Repo, entries: Entries, path: bytes) -> None:
        full = self.root / path.decode("utf-8")
        if full.is_symlink() or full.is_file():
            if full.is_symlink():
                data = os.readlink(full).encode("utf-8")
            else:
                data = full.read_bytes()
            blob = Blob.from_string(data)
            repo.object_store.add_object(blob)
            entries[path] = (_worktree_mode(full.lstat()), blob.id)
        else:
            entries.pop(path, None)

    def _mark_resolved(self, repo: Repo, paths: set[str] | None) -> None:
        remaining = [] if paths is None else [
            p for p in self._read_lines(repo, CONFLICTS_FILE) if p not in paths
        ]
        if remaining:
            self._write_marker(repo, CONFLICTS_FILE, "\n".join(remaining) + "\n")
        elif (self._control(repo) / CONFLICTS_FILE).exists():
            (self._control(repo) / CONFLICTS_FILE).unlink()

    def stage_path(self, path: str) -> None:
        with self._open() as repo:
            entries = self._index_entries(repo)
            self._stage(repo, entries, path.encode("utf-8"))
            self._write_index(repo, entries)
            self._mark_resolved(repo, {path})

    def stage_all(self) -> None:
        with self._open() as repo:
            entries = self._index_entries(repo)
            for path in set(entries) | set(self._worktree_files(repo)):
                self._stage(repo, entries, path)
            self._write_index(repo, entries)
            self._mark_resolved(repo, None)

    def unstage_path(self, path: str) -> None:
        key = path.encode("utf-8")
        with self._open() as repo:
            head = self._commit_entries(repo, self._head_sha(repo))
            entries = self._index_entries(repo)
            if key in head:
                entries[key] = head[key]
            else:
                entries.pop(key, None)
            self._write_index(repo, entries)

    def unstage_all(self) -> None:
        with self._open() as repo:
            self._write_index(repo, self._commit_entries(repo, self._head_sha(repo)))

    def discard_path(self, path: str) -> None:
        key = path.encode("utf-8")
        with self._open() as repo:
            head = self._commit_entries(repo, self._head_sha(repo))
            entries = self._index_entries(repo)
            if key in head:
                self._write_file(repo, key, *head[key])
                entries[key] = head[key]
            else:
                entries.pop(key, None)
                self._remove_file(key)
            self._write_index(repo, entries)

    def discard_all(self) -> None:
        with self._open() as repo:
            head = self._commit_entries(repo, self._head_sha(repo))
            index = self._index_entries(repo)
            untracked = set(self._worktree_files(repo)) - set(index)
            for path in set(index) | set(head):
                if path not in head:
                    self._remove_file(path)
            for path, entry in head.items():
                self._write_file(repo, path, *entry)
            for path in untracked - set(head):
                self._remove_file(path)
            self._write_index(repo, head)
            self._clear_markers(repo)

    # --- commits and refs ----------------------------------------------

    def commit(self, message: str, author: Author | None = None, amend: bool = False) -> str:
        with self._open() as repo:
            if self._read_lines(repo, CONFLICTS_FILE):
                msg = "error: Committing is not possible because you have unmerged files."
                raise BackendError(msg, exit_code=128, stderr=msg)
            committer = self._identity(repo, author)
            head = self._head_sha(repo)
            index = self._index_entries(repo)
            tree = commit_tree(repo.object_store, [(p, sha, mode) for p, (mode, sha) in index.items()])
            control = self._control(repo)

            if amend:
                if head is None:
                    msg = "fatal: You have nothing to amend."
                    raise BackendError(msg, exit_code=128, stderr=msg)
                tip = repo[head]
                parents = list(tip.parents)
                if author is not None:
                    author_raw, author_time, author_tz = _ident(author), None, None
                else:
                    author_raw, author_time, author_tz = tip.author, tip.author_time, tip.author_timezone
            else:
                parents = [head] if head is not None else []
                merge_head = control / MERGE_HEAD
                if merge_head.exists():
                    parents.append(merge_head.read_text().strip().encode("ascii"))
                elif head is not None and repo[head].tree == tree:
                    msg = "nothing to commit, working tree clean"
                    raise BackendError(msg, exit_code=1, stderr=msg)
                author_raw, author_time, author_tz = None, None, None
                picked = control / CHERRY_PICK_HEAD
                if picked.exists() and author is None:
                    source = repo[picked.read_text().strip().encode("ascii")]
                    author_raw, author_time, author_tz = source.author, source.author_time, source.author_timezone

            sha = self._new_commit(repo, tree, parents, message, committer,
                                   author=author_raw, author_time=author_time, author_tz=author_tz)
            self._advance_head(repo, sha)
            self._clear_markers(repo)
            return sha.decode("ascii")

    def reset(self, ref: str, mode: ResetMode) -> None:
        with self._open() as repo:
            target = self._require(repo, ref)
            head = self._head_sha(repo)
            if head is not None:
                self._write_marker(repo, ORIG_HEAD, head.decode("ascii") + "\n")
            if mode == ResetMode.HARD:
                current = self._index_entries(repo)
                current.update(self._commit_entries(repo, head))
                new = self._commit_entries(repo, target)
                for path in current:
                    if path not in new:
                        self._remove_file(path)
                for path, entry in new.items():
                    if self._blob_id_of(self.root / path.decode("utf-8")) != entry[1]:
                        self._write_file(repo, path, *entry)
                self._write_index(repo, new)
                self._clear_markers(repo)
            elif mode == ResetMode.MIXED:
                self._write_index(repo, self._commit_entries(repo, target))
                self._clear_markers(repo)
            self._advance_head(repo, target)

    def _switch_head_tree(self, repo: Repo, target: bytes) -> None:
        head, index, dirty = self._local_changes(repo)
        new = self._commit_entries(repo, target)
        changing = {p for p in set(head) | set(new) if head.get(p) != new.get(p)}
        staged = {p for p in set(head) | set(index) if head.get(p) != index.get(p)}
        blocked = sorted(changing & (dirty | staged))
        if blocked:
            listing = "\n\t".join(p.decode("utf-8") for p in blocked)
            msg = ("error: Your local changes to the following files would be overwritten by checkout:"
                   f"\n\t{listing}\nPlease commit your changes or stash them before you switch branches.")
            raise BackendError(msg, exit_code=1, stderr=msg)
        updated = dict(index)
        for path in changing:
            if path in new:
                self._write_file(repo, path, *new[path])
                updated[path] = new[path]
            else:
                self._remove_file(path)
                updated.pop(path, None)
        self._write_index(repo, updated)

    def checkout(self, ref: str, detach: bool = False) -> None:
        with self._open() as repo:
            branch = b"refs/heads/" + ref.encode("utf-8")
            if not detach and branch in repo.refs:
                self._switch_head_tree(repo, repo.refs[branch])
                self._write_head(repo, branch)
                return
            target = self._resolve(repo, ref)
            if target is None:
                msg = f"error: pathspec '{ref}' did not match any file(s) known to git"
                raise BackendError(msg, exit_code=1, stderr=msg)
            self._switch_head_tree(repo, target)
            self._write_head(repo, target)

    def force_checkout_branch(self, name: str, ref: str) -> None:
        with self._open() as repo:
            target = self._require(repo, ref)
            self._switch_head_tree(repo, target)
            branch = b"refs/heads/" + name.encode("utf-8")
            repo.refs[branch] = target
            self._write_head(repo, branch)

    def create_branch(self, name: str, start: str | None = None) -> None:
        with self._open() as repo:
            branch = b"refs/heads/" + name.encode("utf-8")
            if branch in repo.refs:
                msg = f"fatal: a branch named '{name}' already exists"
                raise BackendError(msg, exit_code=128, stderr=msg)
            target = self._resolve(repo, start or "HEAD")
            if target is None:
                msg = f"fatal: not a valid object name: '{start or 'HEAD'}'"
                raise BackendError(msg, exit_code=128, stderr=msg)
            repo.refs[branch] = target

    def delete_branch(self, name: str) -> None:
        with self._open() as repo:
            branch = b"refs/heads/" + name.encode("utf-8")
            if branch not in repo.refs:
                msg = f"error: branch '{name}' not found"
                raise BackendError(msg, exit_code=1, stderr=msg)
            if self._head_ref(repo) == branch:
                msg = f"error: cannot delete branch '{name}' used by worktree at '{self.root}'"
                raise BackendError(msg, exit_code=1, stderr=msg)
            del repo.refs[branch]

    def rename_branch(self, old: str, new: str) -> None:
        with self._open() as repo:
            source = b"refs/heads/" + old.encode("utf-8")
            target = b"refs/heads/" + new.encode("utf-8")
            if source not in repo.refs:
                msg = f"error: refname refs/heads/{old} not found"
                raise BackendError(msg, exit_code=1, stderr=msg)
            if target in repo.refs:
                msg = f"fatal: a branch named '{new}' already exists"
                raise BackendError(msg, exit_code=128, stderr=msg)
            repo.refs[target] = repo.refs[source]
            if self._head_ref(repo) == source:
                self._write_head(repo, target)
            del repo.refs[source]

    def set_branch(self, name: str, ref: str) -> None:
        with self._open() as repo:
            branch = b"refs/heads/" + name.encode("utf-8")
            if self._head_ref(repo) == branch:
                msg = f"fatal: cannot force update the branch '{name}' used by worktree at '{self.root}'"
                raise BackendError(msg, exit_code=128, stderr=msg)
            repo.refs[branch] = self._require(repo, ref)

    def create_tag(self, name: str, ref: str, message: str | None = None) -> None:
        with self._open() as repo:
            tag_ref = b"refs/tags/" + name.encode("utf-8")
            if tag_ref in repo.refs:
                msg = f"fatal: tag '{name}' already exists"
                raise BackendError(msg, exit_code=128, stderr=msg)
            target = self._require(repo, ref)
            if not message:
                repo.refs[tag_ref] = target
                return
            tagger = self._identity(repo, None)
            tag = Tag()
            tag.tagger = _ident(tagger)
            tag.message = (message if message.endswith("\n") else message + "\n").encode("utf-8")
            tag.name = name.encode("utf-8")
            tag.object = (DulwichCommit, target)
            tag.tag_time = int(time.time())
            tag.tag_timezone = _local_tz()
            repo.object_store.add_object(tag)
            repo.refs[tag_ref] = tag.id

    def delete_tag(self, name: str) -> None:
        with self._open() as repo:
            tag_ref = b"refs/tags/" + name.encode("utf-8")
            if tag_ref not in repo.refs:
                msg = f"error: tag '{name}' not found."
                raise BackendError(msg, exit_code=1, stderr=msg)
            del repo.refs[tag_ref]

    # --- merge family --------------------------------------------------

    def cherry_pick(self, commit_id: str, author: Author | None = None, mainline: int | None = None) -> None:
        with self._open() as repo:
            self._require_no_operation(repo, "cherry-pick")
            sha = self._require(repo, commit_id)
            picked = repo[sha]
            parent_index = (mainline or 1) - 1
            parent = picked.parents[parent_index] if len(picked.parents) > parent_index else None
            head = self._head_sha(repo)
            committer = self._identity(repo, author)
            summary = picked.message.decode("utf-8", "replace").split("\n", 1)[0]
            label = f"{sha.decode('ascii')[:7]} ({summary})"

            merged, conflicts = self._apply_merge(
                repo,
                self._commit_entries(repo, parent),
                self._commit_entries(repo, sha),
                label,
                "cherry-pick",
            )
            head_entries = self._commit_entries(repo, head)
            if conflicts:
                self._write_marker(repo, CHERRY_PICK_HEAD, sha.decode("ascii") + "\n")
                self._write_marker(repo, ORIG_HEAD, (head or b"").decode("ascii") + "\n")
                self._write_marker(repo, MERGE_MSG, picked.message.decode("utf-8", "replace"))
                self._write_marker(repo, CONFLICTS_FILE, "\n".join(p.decode("utf-8") for p in conflicts) + "\n")
                raise self._conflict_error(
                    f"error: could not apply {sha.decode('ascii')[:7]}... {summary}", conflicts
                )
            if merged == head_entries:
                self._write_marker(repo, CHERRY_PICK_HEAD, sha.decode("ascii") + "\n")
                self._write_marker(repo, ORIG_HEAD, (head or b"").decode("ascii") + "\n")
                msg = ("The previous cherry-pick is now empty, possibly due to conflict resolution.\n"
                       "If you wish to commit it anyway, use:\n\n    git commit --allow-empty")
                raise BackendError(msg, exit_code=1, stderr=msg)

            tree = commit_tree(repo.object_store, [(p, s, m) for p, (m, s) in merged.items()])
            new = self._new_commit(
                repo, tree, [head] if head else [],
                picked.message.decode("utf-8", "replace"), committer,
                author=picked.author, author_time=picked.author_time, author_tz=picked.author_timezone,
            )
            self._advance_head(repo, new)

    def revert_no_commit(self, commit_id: str, mainline: int | None = None) -> None:
        with self._open() as repo:
            self._require_no_operation(repo, "revert")
            sha = self._require(repo, commit_id)
            target = repo[sha]
            parent_index = (mainline or 1) - 1
            parent = target.parents[parent_index] if len(target.parents) > parent_index else None
            head = self._head_sha(repo)
            label = f"parent of {sha.decode('ascii')[:7]}"
            merged, conflicts = self._apply_merge(
                repo,
                self._commit_entries(repo, sha),
                self._commit_entries(repo, parent),
                label,
                "revert",
            )
            if conflicts:
                self._write_marker(repo, REVERT_HEAD, sha.decode("ascii") + "\n")
                self._write_marker(repo, ORIG_HEAD, (head or b"").decode("ascii") + "\n")
                self._write_marker(repo, CONFLICTS_FILE, "\n".join(p.decode("utf-8") for p in conflicts) + "\n")
                raise self._conflict_error(f"error: could not revert {sha.decode('ascii')[:7]}", conflicts)

    def merge_no_ff(self, branch: str, message: str | None = None, author: Author | None = None) -> None:
        with self._open() as repo:
            self._require_no_operation(repo, "merge")
            theirs = self._require(repo, branch)
            head = self._head_sha(repo)
            if head is None:
                msg = "fatal: cannot merge into an unborn branch"
                raise BackendError(msg, exit_code=128, stderr=msg)
            committer = self._identity(repo, author)
            base = self._merge_base(repo, head, theirs)
            merged, conflicts = self._apply_merge(
                repo,
                self._commit_entries(repo, base),
                self._commit_entries(repo, theirs),
                branch,
                "merge",
            )
            text = message or f"Merge branch '{branch}'"
            if conflicts:
                self._write_marker(repo, MERGE_HEAD, theirs.decode("ascii") + "\n")
                self._write_marker(repo, ORIG_HEAD, head.decode("ascii") + "\n")
                self._write_marker(repo, MERGE_MSG, text + "\n")
                self._write_marker(repo, CONFLICTS_FILE, "\n".join(p.decode("utf-8") for p in conflicts) + "\n")
                raise self._conflict_error(
                    f"Auto-merging {', '.join(p.decode('utf-8') for p in conflicts)}",
                    conflicts,
                    "Automatic merge failed; fix conflicts and then commit the result.",
                )
            tree = commit_tree(repo.object_store, [(p, s, m) for p, (m, s) in merged.items()])
            new = self._new_commit(repo, tree, [head, theirs], text, committer)
            self._advance_head(repo, new)

    def _reset_merge(self, repo: Repo, target: bytes) -> None:
        """
        Return index and worktree to `target` for paths the interrupted
        operation touched (staged against HEAD or conflicted). Unrelated
        worktree edits are kept.
        """
        head = self._commit_entries(repo, self._head_sha(repo))
        index = self._index_entries(repo)
        new = self._commit_entries(repo, target)
        touched = {p for p in set(head) | set(index) | set(new) if index.get(p) != new.get(p)}
        touched |= {p.encode("utf-8") for p in self._read_lines(repo, CONFLICTS_FILE)}
        updated = dict(index)
        for path in touched:
            if path in new:
                self._write_file(repo, path, *new[path])
                updated[path] = new[path]
            else:
                self._remove_file(path)
                updated.pop(path, None)
        self._write_index(repo, updated)
        self._advance_head(repo, target)
        self._clear_markers(repo)

    def rebase(self, onto: str) -> None:
        raise UnsupportedOperation(self.name, "rebase")

    def sequencer(self, operation: str, action: str) -> None:
        with self._open() as repo:
            control = self._control(repo)
            marker = {"cherry-pick": CHERRY_PICK_HEAD, "revert": REVERT_HEAD, "merge": MERGE_HEAD}.get(operation)
            if marker is None or not (control / marker).exists():
                msg = f"error: no {operation} in progress"
                raise BackendError(msg, exit_code=128, stderr=msg)
            if action == "abort":
                orig = (control / ORIG_HEAD).read_text().strip() if (control / ORIG_HEAD).exists() else ""
                self._reset_merge(repo, self._require(repo, orig or "HEAD"))
                return
            if action == "skip" and operation != "merge":
                self._reset_merge(repo, self._require(repo, "HEAD"))
                return
            if action != "continue":
                msg = f"error: unknown option `{action}' for {operation}"
                raise BackendError(msg, exit_code=129, stderr=msg)

            msg_file = control / MERGE_MSG
            if msg_file.exists():
                message = msg_file.read_text()
            else:
                reverted = repo[(control / marker).read_text().strip().encode("ascii")]
                summary = reverted.message.decode("utf-8", "replace").split("\n", 1)[0]
                message = f'Revert "{summary}"\n\nThis reverts commit {reverted.id.decode("ascii")}.'
        self.commit(message.rstrip("\n"))

    def conflicted_files(self) -> list[str]:
        with self._open() as repo:
            return self._read_lines(repo, CONFLICTS_FILE)

    # --- stash and reflog ----------------------------------------------

    def stash_push(self, message: str | None, include_untracked: bool = False) -> None:
        raise UnsupportedOperation(self.name, "stash")

    def stash_push_path(self, path: str, message: str, include_untracked: bool = False) -> None:
        raise UnsupportedOperation(self.name, "stash")

    def stash_list(self) -> list[Stash]:
        raise UnsupportedOperation(self.name, "stash")

    def stash_files(self, index: int) -> list[str]:
        raise UnsupportedOperation(self.name, "stash")

    def stash_apply(self, index: int) -> None:
        raise UnsupportedOperation(self.name, "stash")

    def stash_pop(self, index: int) -> None:
        raise UnsupportedOperation(self.name, "stash")

    def stash_drop(self, index: int) -> None:
        raise UnsupportedOperation(self.name, "stash")

    def reflog(self, max_count: int) -> list[ReflogEntry]:
        raise UnsupportedOperation(self.name, "reflog")

    # --- remotes -------------------------------------------------------

    def add_remote(self, name: str, url: str) -> None:
        with self._open() as repo:
            config = repo.get_config()
            section = (b"remote", name.encode("utf-8"))
            if config.has_section(section):
                msg = f"error: remote {name} already exists."
                raise BackendError(msg, exit_code=3, stderr=msg)
            config.set(section, b"url", url.encode("utf-8"))
            config.set(section, b"fetch", f"+refs/heads/*:refs/remotes/{name}/*".encode("utf-8"))
            config.write_to_path()

    def remove_remote(self, name: str) -> None:
        with self._open() as repo:
            config = repo.get_config()
            section = (b"remote", name.encode("utf-8"))
            if not config.has_section(section):
                msg = f"error: No such remote: '{name}'"
                raise BackendError(msg, exit_code=2, stderr=msg)
            del config[section]
            config.write_to_path()
            for ref in list(repo.refs.as_dict(b"refs/remotes/" + name.encode("utf-8") + b"/")):
                del repo.refs[b"refs/remotes/" + name.encode("utf-8") + b"/" + ref]

    def _network(self, fn, progress, cancel, *args, **kwargs):
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("network operation cancelled before start")
        stream = _ProgressStream(progress, cancel)
        try:
            result = fn(*args, errstream=stream, **kwargs)
        except OperationCancelled:
            raise
        except Exception as e:
            raise BackendError(f"fatal: {e}", exit_code=128, stderr=f"fatal: {e}") from e
        finally:
            stream.flush()
        return result

    def fetch(self, remote: str, prune: bool, token: str | None,
              progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        self._network(porcelain.fetch, progress, cancel, str(self.root), remote,
                      prune=prune, **_credentials(token))

    def pull(self, remote: str, branch: str, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        self.fetch(remote, False, token, progress, cancel)
        tracking = f"{remote}/{branch}"
        theirs = self.resolve_ref(f"refs/remotes/{tracking}")
        if theirs is None:
            msg = f"fatal: couldn't find remote ref {branch}"
            raise BackendError(msg, exit_code=1, stderr=msg)
        head = self.resolve_ref("HEAD")
        if head is None or self.is_ancestor(head, theirs):
            self.reset(theirs, ResetMode.HARD)
        elif not self.is_ancestor(theirs, head):
            self.merge_no_ff(f"refs/remotes/{tracking}", message=f"Merge branch '{branch}' of {remote}")

    def push(self, remote: str, branch: str, set_upstream: bool, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        refspec = f"refs/heads/{branch}:refs/heads/{branch}".encode("utf-8")
        self._network(porcelain.push, progress, cancel, str(self.root), remote, [refspec],
                      **_credentials(token))
        if set_upstream:
            with self._open() as repo:
                config = repo.get_config()
                section = (b"branch", branch.encode("utf-8"))
                config.set(section, b"remote", remote.encode("utf-8"))
                config.set(section, b"merge", f"refs/heads/{branch}".encode("utf-8"))
                config.write_to_path()

    def push_tag(self, remote: str, tag: str, token: str | None) -> None:
        refspec = f"refs/tags/{tag}:refs/tags/{tag}".encode("utf-8")
        self._network(porcelain.push, None, None, str(self.root), remote, [refspec], **_credentials(token))

    # --- repository lifecycle ------------------------------------------

    @classmethod
    def init_repository(cls, path: Path, config: EngineConfig, default_branch: str = "main") -> "EmbeddedBackend":
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        backend = cls(path, config)
        with porcelain.init(str(path)) as repo:
            backend._write_head(repo, f"refs/heads/{default_branch}".encode("utf-8"))
        return backend

    @classmethod
    def clone(cls, url: str, dest: Path, config: EngineConfig, token: str | None = None,
              progress: ProgressFn | None = None, cancel: threading.Event | None = None) -> "EmbeddedBackend":
        backend = cls(Path(dest), config)
        repo = backend._network(porcelain.clone, progress, cancel, url, str(dest), **_credentials(token))
        repo.close()
        return backend

    @staticmethod
    def is_repository(path: Path, config: EngineConfig) -> bool:
        try:
            Repo(str(path)).close()
        except NotGitRepository:
            return False
        return True


def _line_counts(old: bytes, new: bytes) -> tuple[int, int]:
    """(added, removed) line counts between two blobs."""
    if b"\0" in old[:8000] or b"\0" in new[:8000]:
        return 0, 0
    a = old.splitlines()
    b = new.splitlines()
    added = removed = 0
    for tag, i1, i2, j1, j2 in SequenceMatcher(None, a, b, autojunk=False).get_opcodes():
        if tag in ("replace", "delete"):
            removed += i2 - i1
        if tag in ("replace", "insert"):
            added += j2 - j1
    return added, removed
