"""
Line-level three-way merge for the embedded backend.

Region detection comes from the merge3 library (the same one dulwich's
own merge support wraps). Output is assembled here so conflict markers
carry git's labels: "<<<<<<< HEAD" on our side and the short id of the
applied commit on theirs.
"""

from dataclasses import dataclass

from merge3 import Merge3


@dataclass
class MergeResult:
    lines: list[bytes]
    conflicts: int

    @property
    def clean(self) -> bool:
        return self.conflicts == 0

    @property
    def content(self) -> bytes:
        return b"".join(self.lines)


def _terminated(lines: list[bytes]) -> list[bytes]:
    if lines and not lines[-1].endswith(b"\n"):
        return lines[:-1] + [lines[-1] + b"\n"]
    return lines


def merge_lines(
    base: list[bytes],
    ours: list[bytes],
    theirs: list[bytes],
    ours_label: str = "HEAD",
    theirs_label: str = "theirs",
) -> MergeResult:
    """Merge three versions given as lists of lines (with line endings)."""
    out: list[bytes] = []
    conflicts = 0

    for region in Merge3(base, ours, theirs).merge_regions():
        kind = region[0]
        if kind == "unchanged":
            out.extend(base[region[1]:region[2]])
        elif kind in ("a", "same"):
            out.extend(ours[region[1]:region[2]])
        elif kind == "b":
            out.extend(theirs[region[1]:region[2]])
        elif kind == "conflict":
            _, _, _, o_start, o_end, t_start, t_end = region
            conflicts += 1
            out.append(f"<<<<<<< {ours_label}\n".encode())
            out.extend(_terminated(ours[o_start:o_end]))
            out.append(b"=======\n")
            out.extend(_terminated(theirs[t_start:t_end]))
            out.append(f">>>>>>> {theirs_label}\n".encode())
        else:
            raise ValueError(f"unknown merge region {kind!r}")

    return MergeResult(lines=out, conflicts=conflicts)


def is_binary(data: bytes) -> bool:
    return b"\0" in data[:8000]


def merge_blobs(
    base: bytes,
    ours: bytes,
    theirs: bytes,
    ours_label: str = "HEAD",
    theirs_label: str = "theirs",
) -> MergeResult:
    """Merge three file contents. Binary content conflicts unless one side is unchanged."""
    if is_binary(base) or is_binary(ours) or is_binary(theirs):
        if ours == base:
            return MergeResult(lines=[theirs], conflicts=0)
        if theirs == base or ours == theirs:
            return MergeResult(lines=[ours], conflicts=0)
        return MergeResult(lines=[ours], conflicts=1)
    return merge_lines(
        base.splitlines(keepends=True),
        ours.splitlines(keepends=True),
        theirs.splitlines(keepends=True),
        ours_label=ours_label,
        theirs_label=theirs_label,
    )
