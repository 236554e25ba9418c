"""Repository access for the repoengine.

Two backends implement the same Backend protocol:
- NativeBackend: drives the git executable (repoengine.git.native)
- EmbeddedBackend: works in-process through dulwich (repoengine.git.embedded)

Use open_backend() to get the configured one for a repository root.
Backend mutations raise BackendError with git-style stderr text; use
repoengine.errors.classify_backend_error to map it to an engine error.
"""

from repoengine.git.runner import (
    GitResult,
    run_git,
    run_git_streaming,
    transient_credential,
)
from repoengine.git.backend import (
    Backend,
    backend_class,
    native_available,
    open_backend,
)
from repoengine.git.merge3 import (
    MergeResult,
    merge_blobs,
    merge_lines,
)

__all__ = [
    # runner
    "GitResult",
    "run_git",
    "run_git_streaming",
    "transient_credential",
    # backend
    "Backend",
    "backend_class",
    "native_available",
    "open_backend",
    # merge3
    "MergeResult",
    "merge_blobs",
    "merge_lines",
]
