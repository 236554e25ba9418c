"""
Parsers for git's script-oriented output formats.

Each function takes raw text and returns typed records. None of them run
git, so every grammar here is testable from literal samples.
"""

import re

from repoengine.lib.types import (
    ADDED,
    CONFLICTED,
    DELETED,
    MODIFIED,
    RENAMED,
    BlameLine,
    Branch,
    Commit,
    FileChange,
    ReflogEntry,
    Remote,
    Stash,
)

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"

# git log --format for parse_log()
LOG_FORMAT = "%H%x1f%an%x1f%ae%x1f%at%x1f%P%x1f%T%x1f%B%x1e"

# git reflog / stash list --format for parse_reflog() and parse_stash_list()
REFLOG_FORMAT = "%H%x1f%gd%x1f%gs%x1f%ct"

# git for-each-ref --format for parse_branch_refs()
BRANCH_FORMAT = "%(refname)%1f%(objectname)%1f%(HEAD)"

# Unmerged XY combinations in porcelain v1
CONFLICT_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}

_STATUS_LETTERS = {
    "A": ADDED,
    "C": ADDED,
    "D": DELETED,
    "R": RENAMED,
    "M": MODIFIED,
    "T": MODIFIED,
    "U": CONFLICTED,
}

_BLAME_HEADER = re.compile(r'^([0-9a-f]{40}) (\d+) (\d+)(?: (\d+))?$')
_REFLOG_SELECTOR = re.compile(r'^(.+?)@\{(\d+)\}$')
_REFLOG_ACTION = re.compile(r'^([\w-]+):')
_STASH_SUBJECT = re.compile(r'^(?:WIP on|On) ([^:]+): ?(.*)$', re.DOTALL)
_STASH_LINE = re.compile(r'^stash@\{(\d+)\}:\s+(.+)$')
_REMOTE_LINE = re.compile(r'^(\S+)\s+(\S+)\s+\((fetch|push)\)$')


def status_from_letter(letter: str) -> str:
    """Map a single git status letter to a FileChange status."""
    return _STATUS_LETTERS.get(letter, MODIFIED)


def parse_status_porcelain(output: str) -> list[FileChange]:
    """
    Parse `git status --porcelain -z` output.

    Column X is the index (staged) delta, column Y the worktree delta.
    Renames carry a second NUL-separated field with the source path.
    Unmerged paths become one unstaged `conflicted` entry.
    """
    changes: list[FileChange] = []
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue

        xy = entry[:2]
        path = entry[3:]
        x, y = xy[0], xy[1]

        old_path = None
        if x in ("R", "C") and i < len(entries):
            old_path = entries[i]
            i += 1

        if xy == "!!":
            continue
        if xy in CONFLICT_CODES:
            changes.append(FileChange(filename=path, status=CONFLICTED, staged=False))
            continue
        if xy == "??":
            changes.append(FileChange(filename=path, status=ADDED, staged=False))
            continue

        if x not in (" ", "?"):
            changes.append(FileChange(
                filename=path,
                status=status_from_letter(x),
                staged=True,
                old_filename=old_path if x == "R" else None,
            ))
        if y not in (" ", "?"):
            changes.append(FileChange(filename=path, status=status_from_letter(y), staged=False))

    return changes


def parse_log(output: str) -> list[Commit]:
    """Parse `git log --format=LOG_FORMAT` output, newest first."""
    commits = []
    for record in output.split(RECORD_SEP):
        record = record.lstrip("\n")
        if not record.strip():
            continue
        parts = record.split(FIELD_SEP, 6)
        if len(parts) < 7:
            continue
        sha, author, email, timestamp, parents, tree, body = parts
        commits.append(Commit(
            id=sha,
            message=body.rstrip("\n"),
            author=author,
            author_email=email,
            date=int(timestamp) if timestamp.isdigit() else 0,
            parents=parents.split(),
            tree_id=tree,
        ))
    return commits


def parse_blame_porcelain(output: str) -> list[BlameLine]:
    """
    Parse `git blame --porcelain` output.

    Header lines for a commit appear only the first time it is seen; later
    groups reuse the remembered metadata.
    """
    info: dict[str, dict[str, str]] = {}
    lines: list[BlameLine] = []
    current_sha = None
    current_line = 0

    for raw in output.split("\n"):
        if raw.startswith("\t"):
            if current_sha is None:
                continue
            meta = info.get(current_sha, {})
            lines.append(BlameLine(
                line_no=current_line,
                content=raw[1:],
                commit_id=current_sha,
                author=meta.get("author", ""),
                date=int(meta.get("author-time", "0") or 0),
                summary=meta.get("summary", ""),
            ))
            continue

        header = _BLAME_HEADER.match(raw)
        if header:
            current_sha = header.group(1)
            current_line = int(header.group(3))
            info.setdefault(current_sha, {})
            continue

        if current_sha is not None and " " in raw:
            key, _, value = raw.partition(" ")
            info[current_sha].setdefault(key, value)

    return lines


def parse_reflog(output: str) -> list[ReflogEntry]:
    """Parse `git reflog --format=REFLOG_FORMAT` output, most recent first."""
    entries = []
    for line in output.splitlines():
        parts = line.split(FIELD_SEP)
        if len(parts) < 4:
            continue
        sha, selector, message, timestamp = parts[0], parts[1], parts[2], parts[3]
        match = _REFLOG_SELECTOR.match(selector)
        ref = match.group(1) if match else selector
        index = int(match.group(2)) if match else 0
        action = _REFLOG_ACTION.match(message)
        entries.append(ReflogEntry(
            short_id=sha[:7],
            ref=ref,
            index=index,
            action=action.group(1) if action else "unknown",
            message=message.strip(),
            timestamp=int(timestamp) if timestamp.isdigit() else 0,
        ))
    entries.sort(key=lambda e: e.timestamp, reverse=True)
    return entries


def parse_stash_list(output: str) -> list[Stash]:
    """
    Parse `git stash list`.

    Accepts the REFLOG_FORMAT layout and git's default
    "stash@{N}: On branch: message" layout.
    """
    stashes = []
    for line in output.splitlines():
        if not line.strip():
            continue
        if FIELD_SEP in line:
            parts = line.split(FIELD_SEP)
            if len(parts) < 4:
                continue
            sha, selector, subject, timestamp = parts[0], parts[1], parts[2], parts[3]
            match = _REFLOG_SELECTOR.match(selector)
            index = int(match.group(2)) if match else len(stashes)
            date = int(timestamp) if timestamp.isdigit() else 0
        else:
            match = _STASH_LINE.match(line)
            if not match:
                continue
            sha, index, subject, date = "", int(match.group(1)), match.group(2), 0

        branch, message = "", subject
        described = _STASH_SUBJECT.match(subject)
        if described:
            branch, message = described.group(1), described.group(2)
        stashes.append(Stash(index=index, message=message, branch=branch, commit_id=sha, date=date))
    return stashes


def parse_remotes(output: str) -> list[Remote]:
    """Parse `git remote -v` output into one Remote per name."""
    remotes: dict[str, Remote] = {}
    for line in output.splitlines():
        match = _REMOTE_LINE.match(line.strip())
        if not match:
            continue
        name, url, kind = match.groups()
        remote = remotes.setdefault(name, Remote(name=name, fetch_url=""))
        if kind == "fetch":
            remote.fetch_url = url
        else:
            remote.push_url = url
    return list(remotes.values())


def parse_branch_refs(output: str) -> list[Branch]:
    """
    Parse `git for-each-ref --format=BRANCH_FORMAT refs/heads refs/remotes`.

    Symbolic remote HEADs (origin/HEAD) are skipped. Local branches come first.
    """
    local, remote = [], []
    for line in output.splitlines():
        parts = line.split(FIELD_SEP)
        if len(parts) < 3:
            continue
        refname, sha, head = parts[0], parts[1], parts[2]
        if refname.startswith("refs/heads/"):
            local.append(Branch(name=refname[len("refs/heads/"):], commit_id=sha, active=head.strip() == "*"))
        elif refname.startswith("refs/remotes/"):
            name = refname[len("refs/remotes/"):]
            if name.endswith("/HEAD"):
                continue
            remote.append(Branch(name=name, commit_id=sha, is_remote=True))
    return local + remote


def parse_name_status(output: str) -> list[FileChange]:
    """Parse `git diff-tree --name-status` lines (e.g. "M\\tpath", "R100\\told\\tnew")."""
    changes = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2 or not parts[0]:
            continue
        code = parts[0][0]
        if code == "R" and len(parts) >= 3:
            changes.append(FileChange(filename=parts[2], status=RENAMED, old_filename=parts[1]))
        else:
            changes.append(FileChange(filename=parts[-1], status=status_from_letter(code)))
    return changes


def parse_numstat(output: str) -> dict[str, tuple[int, int]]:
    """Parse `--numstat` lines into {path: (additions, deletions)}. Binary files count as 0."""
    counts = {}
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, deleted, path = parts[0], parts[1], parts[2]
        counts[path] = (
            int(added) if added.isdigit() else 0,
            int(deleted) if deleted.isdigit() else 0,
        )
    return counts
