"""
Remote management and network operations.

fetch/pull/push/clone report progress lines through `progress` and stop
when `cancel` is set. A token, when given, reaches git only through a
transient credential helper and never appears in URLs or arguments.
"""

import logging
import re
import threading
from pathlib import Path

from repoengine.errors import BackendError, NoRemoteConfigured, RefNotFound, ValidationError, classify_backend_error
from repoengine.git.backend import Backend, ProgressFn, backend_class
from repoengine.lib.config import EngineConfig
from repoengine.lib.constants import DETACHED_HEAD
from repoengine.lib.types import Remote

logger = logging.getLogger(__name__)

_REMOTE_NAME = re.compile(r'^[A-Za-z0-9._-]+$')


def list_remotes(backend: Backend) -> list[Remote]:
    return backend.list_remotes()


def add_remote(backend: Backend, name: str, url: str) -> None:
    if not name or not _REMOTE_NAME.match(name):
        raise ValidationError(f"Invalid remote name '{name}'")
    if not url or not url.strip():
        raise ValidationError("Remote URL must not be empty")
    if any(r.name == name for r in backend.list_remotes()):
        raise ValidationError(f"Remote '{name}' already exists")
    logger.info(f"Adding remote {name}")
    backend.add_remote(name, url)


def remove_remote(backend: Backend, name: str) -> None:
    if not any(r.name == name for r in backend.list_remotes()):
        raise ValidationError(f"No such remote: '{name}'")
    logger.info(f"Removing remote {name}")
    backend.remove_remote(name)


def default_remote(backend: Backend) -> str:
    """origin when configured, else the first remote. Raises NoRemoteConfigured."""
    names = [r.name for r in backend.list_remotes()]
    if not names:
        raise NoRemoteConfigured()
    return "origin" if "origin" in names else names[0]


def _branch(backend: Backend, branch: str | None) -> str:
    branch = branch or backend.current_branch()
    if branch == DETACHED_HEAD:
        raise ValidationError("Cannot sync a detached HEAD; checkout a branch first")
    return branch


def fetch(
    backend: Backend,
    remote: str | None = None,
    prune: bool = False,
    token: str | None = None,
    progress: ProgressFn | None = None,
    cancel: threading.Event | None = None,
) -> None:
    remote = remote or default_remote(backend)
    logger.info(f"Fetching {remote}{' (prune)' if prune else ''}")
    try:
        backend.fetch(remote, prune, token, progress, cancel)
    except BackendError as e:
        raise classify_backend_error(e, "fetch") from e


def pull(
    backend: Backend,
    branch: str | None = None,
    fetch_first: bool = False,
    remote: str | None = None,
    token: str | None = None,
    progress: ProgressFn | None = None,
    cancel: threading.Event | None = None,
) -> None:
    """Fetch and merge the remote branch into the current one (never rebase)."""
    remote = remote or default_remote(backend)
    branch = _branch(backend, branch)
    if fetch_first:
        fetch(backend, remote, False, token, progress, cancel)
    logger.info(f"Pulling {remote}/{branch}")
    try:
        backend.pull(remote, branch, token, progress, cancel)
    except BackendError as e:
        raise classify_backend_error(e, "pull") from e


def push(
    backend: Backend,
    branch: str | None = None,
    set_upstream: bool = False,
    remote: str | None = None,
    token: str | None = None,
    progress: ProgressFn | None = None,
    cancel: threading.Event | None = None,
) -> None:
    remote = remote or default_remote(backend)
    branch = _branch(backend, branch)
    logger.info(f"Pushing {branch} to {remote}")
    try:
        backend.push(remote, branch, set_upstream, token, progress, cancel)
    except BackendError as e:
        raise classify_backend_error(e, "push") from e


def clone(
    url: str,
    dest: Path,
    config: EngineConfig,
    token: str | None = None,
    progress: ProgressFn | None = None,
    cancel: threading.Event | None = None,
) -> Backend:
    """Clone url into dest with the configured backend and return it."""
    if not url or not url.strip():
        raise ValidationError("Clone URL must not be empty")
    dest = Path(dest)
    if dest.exists() and any(dest.iterdir()):
        raise ValidationError(f"Destination {dest} exists and is not empty")
    logger.info(f"Cloning into {dest}")
    return backend_class(config).clone(url, dest, config, token=token, progress=progress, cancel=cancel)


def push_tag(
    backend: Backend,
    tag: str,
    remote: str | None = None,
    token: str | None = None,
) -> None:
    """Publish one local tag to a remote."""
    if tag not in backend.list_tags():
        raise RefNotFound(tag)
    remote = remote or default_remote(backend)
    logger.info(f"Pushing tag {tag} to {remote}")
    try:
        backend.push_tag(remote, tag, token)
    except BackendError as e:
        raise classify_backend_error(e, "push tag", ref=tag) from e
