"""
In-process locking per repository path.

Mutations on one repository are serialized; reads on it may overlap each
other but never a mutation. Different repositories never contend. The
on-disk locks git keeps for itself are left to git.
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer: int | None = None
        self._writer_depth = 0
        self._waiting_writers = 0

    def _wait(self, ready, timeout: float, lock_name: str) -> None:
        deadline = time.monotonic() + timeout
        while not ready():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            self._cond.wait(remaining)

    @contextmanager
    def read(self, timeout: float = 60, lock_name: str = "read lock"):
        me = threading.get_ident()
        with self._cond:
            # A writer may read what it is writing
            if self._writer == me:
                reentrant = True
            else:
                reentrant = False
                self._wait(lambda: self._writer is None and not self._waiting_writers, timeout, lock_name)
                self._readers += 1
        try:
            yield
        finally:
            if not reentrant:
                with self._cond:
                    self._readers -= 1
                    self._cond.notify_all()

    @contextmanager
    def write(self, timeout: float = 60, lock_name: str = "write lock"):
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
            else:
                self._waiting_writers += 1
                try:
                    self._wait(lambda: self._writer is None and self._readers == 0, timeout, lock_name)
                finally:
                    self._waiting_writers -= 1
                    # Readers held back by this writer re-check on timeout
                    self._cond.notify_all()
                self._writer = me
                self._writer_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._writer_depth -= 1
                if self._writer_depth == 0:
                    self._writer = None
                    self._cond.notify_all()


class RepoLockRegistry:
    """One ReadWriteLock per normalized repository path."""

    def __init__(self, timeout: float = 60):
        self.timeout = timeout
        self._locks: dict[str, ReadWriteLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, repo_path) -> ReadWriteLock:
        key = str(Path(repo_path).resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = ReadWriteLock()
            return lock

    @contextmanager
    def read_lock(self, repo_path):
        """Shared lock for queries on one repository."""
        with self.lock_for(repo_path).read(self.timeout, f"read lock for {repo_path}"):
            yield

    @contextmanager
    def write_lock(self, repo_path):
        """Exclusive lock for mutations on one repository."""
        with self.lock_for(repo_path).write(self.timeout, f"write lock for {repo_path}"):
            yield
