"""
Shared data types for the repository engine.

Plain dataclasses returned by every backend and operation module, kept
here to avoid circular imports between git/ and ops/.
"""

from dataclasses import dataclass, field
from enum import Enum

# FileChange.status values
ADDED = "added"
MODIFIED = "modified"
DELETED = "deleted"
RENAMED = "renamed"
CONFLICTED = "conflicted"

FILE_STATUSES = (ADDED, MODIFIED, DELETED, RENAMED, CONFLICTED)


@dataclass
class FileChange:
    """One delta for one path.

    A path may appear twice in a status listing: once staged (index vs
    HEAD) and once unstaged (worktree vs index).
    """
    filename: str
    status: str
    staged: bool = False
    additions: int = 0
    deletions: int = 0
    patch: str | None = None
    old_filename: str | None = None  # Set for renames


@dataclass
class Commit:
    id: str
    message: str
    author: str
    date: int  # Author time, epoch seconds
    parents: list[str] = field(default_factory=list)
    tree_id: str = ""
    author_email: str = ""
    changes: list[FileChange] | None = None

    @property
    def short_id(self) -> str:
        return self.id[:7]

    @property
    def summary(self) -> str:
        return self.message.split("\n", 1)[0]

    @property
    def is_root(self) -> bool:
        return not self.parents

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1


@dataclass
class Branch:
    name: str
    commit_id: str
    is_remote: bool = False
    active: bool = False


@dataclass
class Author:
    """Identity used for commits created by the engine."""
    name: str
    email: str

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


@dataclass
class IntraRange:
    """Character range [start, end) that changed within a line."""
    start: int
    end: int


@dataclass
class DiffLine:
    type: str  # "add", "remove", "context"
    content: str
    old_line_no: int | None = None
    new_line_no: int | None = None
    intra_changes: list[IntraRange] = field(default_factory=list)


@dataclass
class DiffHunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: list[DiffLine] = field(default_factory=list)

    @property
    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_lines} +{self.new_start},{self.new_lines} @@"


@dataclass
class SplitRow:
    """One row of a two-column diff. Either side may be empty."""
    left: DiffLine | None
    right: DiffLine | None


@dataclass
class Stash:
    index: int
    message: str
    branch: str = ""
    commit_id: str = ""
    date: int = 0
    files: list[str] = field(default_factory=list)

    @property
    def ref(self) -> str:
        return f"stash@{{{self.index}}}"


@dataclass
class Snapshot:
    index: int
    message: str
    timestamp: int  # Epoch milliseconds
    files: list[str] = field(default_factory=list)

    @property
    def ref(self) -> str:
        return f"stash@{{{self.index}}}"


@dataclass
class BlameLine:
    line_no: int
    content: str
    commit_id: str
    author: str
    date: int
    summary: str


@dataclass
class AheadBehind:
    ahead: int
    behind: int
    has_remote: bool = True


@dataclass
class ReflogEntry:
    short_id: str
    ref: str
    index: int
    action: str
    message: str
    timestamp: int  # Epoch seconds


@dataclass
class Remote:
    name: str
    fetch_url: str
    push_url: str = ""


class ResetMode(Enum):
    SOFT = "soft"
    MIXED = "mixed"
    HARD = "hard"


class OperationState(Enum):
    """Lifecycle of a history mutation. Values match OperationFSM states."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    CONFLICT_PENDING = "conflict_pending"
    ABORTED = "aborted"


@dataclass
class OperationResult:
    """Outcome of a completed history mutation."""
    operation: str
    state: OperationState
    head: str | None = None  # Tip after the operation
    skipped: list[str] = field(default_factory=list)  # Commits that were no-ops
    message: str = ""


@dataclass
class ConflictRegion:
    """One <<<<<<< ... >>>>>>> block in a conflicted file. Line numbers are 0-based."""
    start_line: int
    separator_line: int
    end_line: int
    ours: str
    theirs: str
    ours_label: str = ""
    theirs_label: str = ""
    base: str | None = None  # Only present in diff3-style markers
    base_line: int | None = None
