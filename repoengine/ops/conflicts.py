"""
Conflict markers in working files.

A conflicted file holds one or more regions:

    <<<<<<< HEAD
    our lines
    ||||||| base          (diff3 style only)
    base lines
    =======
    their lines
    >>>>>>> abc1234

Resolution rewrites the chosen regions with one side (or both sides,
ours first) and stages the file once no markers remain, which is what
continue_operation needs before it can commit.
"""

import logging
from dataclasses import dataclass, field

from repoengine.errors import ValidationError
from repoengine.git.backend import Backend
from repoengine.lib.types import ConflictRegion
from repoengine.ops.diff import join_lines, split_lines
from repoengine.ops.status import get_working_file_content, safe_path, write_working_file

logger = logging.getLogger(__name__)

OURS = "ours"
THEIRS = "theirs"
BOTH = "both"
BASE = "base"
SIDES = (OURS, THEIRS, BOTH, BASE)

_START = "<<<<<<<"
_BASE = "|||||||"
_SEPARATOR = "======="
_END = ">>>>>>>"


@dataclass
class _OpenRegion:
    start: int
    label: str
    section: str = OURS
    base_line: int | None = None
    separator: int | None = None
    lines: dict[str, list[str]] = field(default_factory=lambda: {OURS: [], BASE: [], THEIRS: []})


def _label(line: str, marker: str) -> str:
    return line[len(marker):].strip()


def parse_conflict_regions(content: str) -> list[ConflictRegion]:
    """Every complete marker block in content, in file order.

    A start marker inside an open block starts the block over; a block
    with no end marker is not reported.
    """
    regions = []
    open_region: _OpenRegion | None = None
    for i, line in enumerate(split_lines(content)):
        if line.startswith(_START):
            open_region = _OpenRegion(start=i, label=_label(line, _START))
        elif open_region is None:
            continue
        elif line.startswith(_BASE) and open_region.section == OURS:
            open_region.section = BASE
            open_region.base_line = i
        elif line.startswith(_SEPARATOR) and open_region.section in (OURS, BASE):
            open_region.section = THEIRS
            open_region.separator = i
        elif line.startswith(_END) and open_region.section == THEIRS:
            regions.append(ConflictRegion(
                start_line=open_region.start,
                separator_line=open_region.separator,
                end_line=i,
                ours="\n".join(open_region.lines[OURS]),
                theirs="\n".join(open_region.lines[THEIRS]),
                ours_label=open_region.label,
                theirs_label=_label(line, _END),
                base="\n".join(open_region.lines[BASE]) if open_region.base_line is not None else None,
                base_line=open_region.base_line,
            ))
            open_region = None
        else:
            open_region.lines[open_region.section].append(line)
    return regions


def _side_lines(lines: list[str], region: ConflictRegion, side: str) -> list[str]:
    ours_end = region.base_line if region.base_line is not None else region.separator_line
    ours = lines[region.start_line + 1:ours_end]
    theirs = lines[region.separator_line + 1:region.end_line]
    if side == OURS:
        return ours
    if side == THEIRS:
        return theirs
    if side == BOTH:
        return ours + theirs
    # Without diff3 markers there is no base text, so the region goes away
    if region.base_line is None:
        return []
    return lines[region.base_line + 1:region.separator_line]


def resolve_conflict_text(content: str, side: str, region_index: int | None = None) -> str:
    """
    Replace conflict regions with the chosen side.

    With region_index only that region is resolved and every other
    region keeps its markers.

    Raises:
        ValidationError: unknown side or region index out of range
    """
    if side not in SIDES:
        raise ValidationError(f"Invalid side '{side}', expected one of {', '.join(SIDES)}")
    regions = parse_conflict_regions(content)
    if region_index is not None:
        if not 0 <= region_index < len(regions):
            raise ValidationError(f"Conflict region {region_index} out of range ({len(regions)} regions)")
        regions = [regions[region_index]]

    lines = split_lines(content)
    out: list[str] = []
    at = 0
    for region in regions:
        out.extend(lines[at:region.start_line])
        out.extend(_side_lines(lines, region, side))
        at = region.end_line + 1
    out.extend(lines[at:])
    return join_lines(out)


def get_conflict_regions(backend: Backend, path: str) -> list[ConflictRegion]:
    return parse_conflict_regions(get_working_file_content(backend.root, path))


def list_conflicts(backend: Backend) -> dict[str, list[ConflictRegion]]:
    """Marker regions of every conflicted file, keyed by path."""
    return {path: get_conflict_regions(backend, path) for path in backend.conflicted_files()}


def resolve_conflict(backend: Backend, path: str, side: str, region_index: int | None = None) -> str:
    """
    Resolve conflict regions in a working file and stage it when no markers remain.

    Returns:
        The new working file content
    """
    safe_path(backend.root, path)
    content = get_working_file_content(backend.root, path)
    if not parse_conflict_regions(content):
        raise ValidationError(f"{path} has no conflict markers")
    resolved = resolve_conflict_text(content, side, region_index)
    scope = "all regions" if region_index is None else f"region {region_index}"
    logger.info(f"[CONFLICT] {path}: took {side} for {scope}")
    write_working_file(backend.root, path, resolved)
    if not parse_conflict_regions(resolved):
        backend.stage_path(path)
    return resolved
