"""Shared constants for the repository engine."""

import re

# Branch names accepted by create/rename
BRANCH_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9\-_/]+$')

# Same character set for tags, plus dots
TAG_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9\-_/.]+$')

FULL_SHA_PATTERN = re.compile(r'^[0-9a-f]{40}$')

# Sentinel returned by current_branch() for a detached HEAD
DETACHED_HEAD = "HEAD"

# Unified diff context window
DIFF_CONTEXT = 3

# Cache kinds
CACHE_BRANCHES = "branches"
CACHE_WORKDIR = "workdir"
CACHE_STATUS = "status_matrix"

# Stash messages carrying this prefix are snapshots
SNAPSHOT_PREFIX = "gk-snapshot:"

# Marker files under .git/ that mean a multi-step operation is unfinished
CHERRY_PICK_HEAD = "CHERRY_PICK_HEAD"
REVERT_HEAD = "REVERT_HEAD"
MERGE_HEAD = "MERGE_HEAD"
# A rebase in progress leaves one of these directories under .git/
REBASE_MERGE = "rebase-merge"
REBASE_APPLY = "rebase-apply"
