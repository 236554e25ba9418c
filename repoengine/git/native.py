"""
Native backend: drives the git executable.

Every call is an argument list handed to run_git(); porcelain output is
parsed by repoengine.git.parsers.
"""

import logging
import threading
from pathlib import Path

from repoengine.errors import BackendError
from repoengine.git import parsers
from repoengine.git.backend import ProgressFn
from repoengine.git.runner import GitResult, run_git, run_git_streaming, transient_credential
from repoengine.lib.config import EngineConfig
from repoengine.lib.constants import DETACHED_HEAD
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

# Sequencer commands must never wait on an editor
_NO_EDITOR = {"GIT_EDITOR": "true"}


def _identity_env(author: Author | None, committer_only: bool = False) -> dict[str, str]:
    if author is None:
        return {}
    env = {"GIT_COMMITTER_NAME": author.name, "GIT_COMMITTER_EMAIL": author.email}
    if not committer_only:
        env.update({"GIT_AUTHOR_NAME": author.name, "GIT_AUTHOR_EMAIL": author.email})
    return env


class NativeBackend:
    """Backend that shells out to git (argument arrays only, no shell)."""

    name = "native"

    def __init__(self, root: Path, config: EngineConfig | None = None):
        self.root = Path(root)
        self.config = config or EngineConfig()
        self._git_dir: Path | None = None

    # --- raw execution -------------------------------------------------

    def _exec(self, args: list[str], env: dict[str, str] | None = None, stdin: str | None = None) -> GitResult:
        return run_git(
            args,
            self.root,
            timeout=self.config.git_timeout,
            env=env,
            git=self.config.git_binary,
            stdin=stdin,
        )

    def _check(self, result: GitResult, args: list[str]) -> str:
        if not result.success:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise BackendError(
                f"git {args[0]} failed: {stderr}",
                exit_code=result.returncode,
                stderr=stderr,
                args=args,
            )
        return result.stdout

    def run(self, args: list[str], env: dict[str, str] | None = None) -> str:
        """Run git with args in the repository; return stdout or raise BackendError."""
        return self._check(self._exec(args, env=env), args)

    def run_with_credential(self, args: list[str], token: str | None) -> str:
        """Run git with a transient askpass credential."""
        with transient_credential(token) as env:
            return self.run(args, env=env)

    def _stream(self, args, token, progress, cancel, cwd: Path | None = None) -> str:
        with transient_credential(token) as env:
            result = run_git_streaming(
                args,
                cwd or self.root,
                on_progress=progress,
                cancel=cancel,
                timeout=self.config.network_timeout,
                env=env,
                git=self.config.git_binary,
            )
        return self._check(result, args)

    @property
    def git_dir(self) -> Path:
        if self._git_dir is None:
            self._git_dir = Path(self.run(["rev-parse", "--absolute-git-dir"]).strip())
        return self._git_dir

    # --- refs and history ----------------------------------------------

    def resolve_ref(self, ref: str) -> str | None:
        result = self._exec(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
        if result.success and result.stdout.strip():
            return result.stdout.strip()
        return None

    def current_branch(self) -> str:
        result = self._exec(["symbolic-ref", "--short", "-q", "HEAD"])
        if result.success and result.stdout.strip():
            return result.stdout.strip()
        return DETACHED_HEAD

    def list_branches(self) -> list[Branch]:
        args = [
            "for-each-ref",
            f"--format={parsers.BRANCH_FORMAT}",
            "refs/heads",
            "refs/remotes",
        ]
        branches = parsers.parse_branch_refs(self.run(args))
        if self.current_branch() == DETACHED_HEAD:
            head = self.resolve_ref("HEAD")
            if head:
                branches.insert(0, Branch(name=DETACHED_HEAD, commit_id=head, active=True))
        return branches

    def branch_exists(self, name: str) -> bool:
        return self._exec(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"]).success

    def log(self, ref: str, max_count: int, path: str | None = None) -> list[Commit]:
        args = ["log", f"--format={parsers.LOG_FORMAT}", f"--max-count={max_count}", ref]
        if path:
            args += ["--", path]
        return parsers.parse_log(self.run(args))

    def commit_changes(self, commit: Commit) -> list[FileChange]:
        if commit.parents:
            span = [commit.parents[0], commit.id]
        else:
            span = ["--root", commit.id]
        names = parsers.parse_name_status(
            self.run(["diff-tree", "-r", "-M", "--no-commit-id", "--name-status"] + span)
        )
        counts = parsers.parse_numstat(
            self.run(["diff-tree", "-r", "--no-renames", "--no-commit-id", "--numstat"] + span)
        )
        for change in names:
            change.additions, change.deletions = counts.get(change.filename, (0, 0))
        return names

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        args = ["merge-base", "--is-ancestor", ancestor, descendant]
        result = self._exec(args)
        if result.returncode in (0, 1) and not result.timed_out:
            return result.returncode == 0
        self._check(result, args)
        return False

    def has_marker(self, name: str) -> bool:
        return (self.git_dir / name).exists()

    def list_tags(self) -> list[str]:
        return [t for t in self.run(["tag", "--list"]).splitlines() if t.strip()]

    def list_remotes(self) -> list[Remote]:
        return parsers.parse_remotes(self.run(["remote", "-v"]))

    # --- content -------------------------------------------------------

    def status(self) -> list[FileChange]:
        out = self.run(["status", "--porcelain", "-z", "-uall", "--ignore-submodules=none"])
        return parsers.parse_status_porcelain(out)

    def list_files(self) -> list[str]:
        out = self.run(["ls-files", "--cached", "--others", "--exclude-standard", "-z"])
        return sorted({p for p in out.split("\0") if p})

    def read_file_at(self, ref: str, path: str) -> str | None:
        result = self._exec(["show", f"{ref}:{path}"])
        return result.stdout if result.success else None

    def read_staged_file(self, path: str) -> str | None:
        result = self._exec(["show", f":{path}"])
        return result.stdout if result.success else None

    def native_blame(self, path: str, ref: str) -> list[BlameLine] | None:
        out = self.run(["blame", "--porcelain", ref, "--", path])
        return parsers.parse_blame_porcelain(out)

    # --- index and worktree --------------------------------------------

    def stage_path(self, path: str) -> None:
        self.run(["add", "-A", "--", path])

    def stage_all(self) -> None:
        self.run(["add", "-A"])

    def unstage_path(self, path: str) -> None:
        if self.resolve_ref("HEAD") is not None:
            result = self._exec(["reset", "-q", "HEAD", "--", path])
            if result.success:
                return
            logger.debug(f"reset HEAD -- {path} failed, falling back to rm --cached")
        self.run(["rm", "--cached", "-q", "--ignore-unmatch", "--", path])

    def unstage_all(self) -> None:
        if self.resolve_ref("HEAD") is not None:
            self.run(["reset", "-q"])
        else:
            self.run(["rm", "-r", "--cached", "-q", "--ignore-unmatch", "."])

    def discard_path(self, path: str) -> None:
        if self._exec(["cat-file", "-e", f"HEAD:{path}"]).success:
            self.run(["checkout", "-q", "HEAD", "--", path])
            return
        self.run(["rm", "--cached", "-q", "--ignore-unmatch", "--", path])
        target = self.root / path
        if target.exists():
            target.unlink()

    def discard_all(self) -> None:
        if self.resolve_ref("HEAD") is not None:
            self.run(["reset", "--hard", "-q", "HEAD"])
        else:
            self.run(["rm", "-r", "--cached", "-q", "--ignore-unmatch", "."])
        self.run(["clean", "-fd", "-q"])

    # --- commits and refs ----------------------------------------------

    def commit(self, message: str, author: Author | None = None, amend: bool = False) -> str:
        args = ["commit", "-q", "-m", message]
        env = _identity_env(author)
        if amend:
            args.append("--amend")
            if author is not None:
                args.append(f"--author={author}")
        self.run(args, env=env)
        return self.run(["rev-parse", "HEAD"]).strip()

    def reset(self, ref: str, mode: ResetMode) -> None:
        self.run(["reset", f"--{mode.value}", "-q", ref])

    def checkout(self, ref: str, detach: bool = False) -> None:
        args = ["checkout", "-q"]
        if detach:
            args.append("--detach")
        self.run(args + [ref])

    def force_checkout_branch(self, name: str, ref: str) -> None:
        self.run(["checkout", "-q", "-B", name, ref])

    def create_branch(self, name: str, start: str | None = None) -> None:
        self.run(["branch", name] + ([start] if start else []))

    def delete_branch(self, name: str) -> None:
        self.run(["branch", "-D", name])

    def rename_branch(self, old: str, new: str) -> None:
        self.run(["branch", "-m", old, new])

    def set_branch(self, name: str, ref: str) -> None:
        self.run(["branch", "-f", name, ref])

    def create_tag(self, name: str, ref: str, message: str | None = None) -> None:
        args = ["tag"]
        if message:
            args += ["-a", "-m", message]
        self.run(args + [name, ref])

    def delete_tag(self, name: str) -> None:
        self.run(["tag", "-d", name])

    # --- merge family --------------------------------------------------

    def cherry_pick(self, commit_id: str, author: Author | None = None, mainline: int | None = None) -> None:
        args = ["cherry-pick"]
        if mainline:
            args += ["-m", str(mainline)]
        env = dict(_NO_EDITOR, **_identity_env(author, committer_only=True))
        self.run(args + [commit_id], env=env)

    def revert_no_commit(self, commit_id: str, mainline: int | None = None) -> None:
        args = ["revert", "--no-commit"]
        if mainline:
            args += ["-m", str(mainline)]
        self.run(args + [commit_id], env=_NO_EDITOR)

    def merge_no_ff(self, branch: str, message: str | None = None, author: Author | None = None) -> None:
        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args += ["-m", message]
        self.run(args + [branch], env=dict(_NO_EDITOR, **_identity_env(author)))

    def rebase(self, onto: str) -> None:
        self.run(["rebase", onto], env=_NO_EDITOR)

    def sequencer(self, operation: str, action: str) -> None:
        self.run([operation, f"--{action}"], env=_NO_EDITOR)

    def conflicted_files(self) -> list[str]:
        out = self.run(["diff", "--name-only", "--diff-filter=U"])
        return [p for p in out.splitlines() if p.strip()]

    # --- stash and reflog ----------------------------------------------

    def stash_push(self, message: str | None, include_untracked: bool = False) -> None:
        args = ["stash", "push"]
        if include_untracked:
            args.append("--include-untracked")
        if message:
            args += ["-m", message]
        self.run(args)

    def stash_push_path(self, path: str, message: str, include_untracked: bool = False) -> None:
        args = ["stash", "push"]
        if include_untracked:
            args.append("--include-untracked")
        self.run(args + ["-m", message, "--", path])

    def stash_list(self) -> list[Stash]:
        return parsers.parse_stash_list(self.run(["stash", "list", f"--format={parsers.REFLOG_FORMAT}"]))

    def stash_files(self, index: int) -> list[str]:
        result = self._exec(["stash", "show", "--name-only", f"stash@{{{index}}}"])
        if not result.success:
            return []
        return [p for p in result.stdout.splitlines() if p.strip()]

    def stash_apply(self, index: int) -> None:
        self.run(["stash", "apply", f"stash@{{{index}}}"])

    def stash_pop(self, index: int) -> None:
        self.run(["stash", "pop", f"stash@{{{index}}}"])

    def stash_drop(self, index: int) -> None:
        self.run(["stash", "drop", f"stash@{{{index}}}"])

    def reflog(self, max_count: int) -> list[ReflogEntry]:
        args = ["reflog", "show", "--all", f"--max-count={max_count}", f"--format={parsers.REFLOG_FORMAT}"]
        return parsers.parse_reflog(self.run(args))

    # --- remotes -------------------------------------------------------

    def add_remote(self, name: str, url: str) -> None:
        self.run(["remote", "add", name, url])

    def remove_remote(self, name: str) -> None:
        self.run(["remote", "remove", name])

    def fetch(self, remote: str, prune: bool, token: str | None,
              progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        args = ["fetch", "--progress"] + (["--prune"] if prune else []) + [remote]
        self._stream(args, token, progress, cancel)

    def pull(self, remote: str, branch: str, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        args = ["pull", "--no-rebase", "--no-edit", "--progress", remote, branch]
        self._stream(args, token, progress, cancel)

    def push(self, remote: str, branch: str, set_upstream: bool, token: str | None,
             progress: ProgressFn | None, cancel: threading.Event | None) -> None:
        args = ["push", "--progress"] + (["--set-upstream"] if set_upstream else []) + [remote, branch]
        self._stream(args, token, progress, cancel)

    def push_tag(self, remote: str, tag: str, token: str | None) -> None:
        self.run_with_credential(["push", remote, f"refs/tags/{tag}"], token)

    # --- repository lifecycle ------------------------------------------

    @classmethod
    def init_repository(cls, path: Path, config: EngineConfig, default_branch: str = "main") -> "NativeBackend":
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        backend = cls(path, config)
        backend.run(["init", "-q", f"--initial-branch={default_branch}"])
        return backend

    @classmethod
    def clone(cls, url: str, dest: Path, config: EngineConfig, token: str | None = None,
              progress: ProgressFn | None = None, cancel: threading.Event | None = None) -> "NativeBackend":
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        backend = cls(dest, config)
        backend._stream(["clone", "--progress", url, str(dest)], token, progress, cancel, cwd=dest.parent)
        return backend

    @staticmethod
    def is_repository(path: Path, config: EngineConfig) -> bool:
        result = run_git(["rev-parse", "--is-inside-work-tree"], Path(path), git=config.git_binary)
        return result.success and result.stdout.strip() == "true"
