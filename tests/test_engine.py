"""Tests for repoengine.engine module."""

from concurrent.futures import Future
from unittest.mock import MagicMock, patch

import pytest

from repoengine.engine import RepositoryEngine
from repoengine.errors import ConflictPending, PathTraversalRejected, ResourceLocked, ValidationError
from repoengine.lib.config import EngineConfig
from repoengine.lib.types import FileChange, OperationState
from repoengine.runner.locking import LockTimeout

from conftest import make_commit

R = "r" * 40


@pytest.fixture
def counting_backend(tmp_path):
    backend = MagicMock()
    backend.name = "mock"
    backend.root = tmp_path
    backend.status.return_value = [FileChange(filename="f.txt", status="modified")]
    return backend


@pytest.fixture
def engine():
    eng = RepositoryEngine(EngineConfig(status_ttl_ms=60_000))
    yield eng
    eng.close()


class TestCache:
    """Test read caching and mutation invalidation."""

    def test_status_computed_once_within_ttl(self, engine, counting_backend, tmp_path):
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            first = engine.get_working_tree_status(tmp_path)
            second = engine.get_working_tree_status(tmp_path)
        assert first == second
        assert counting_backend.status.call_count == 1

    def test_mutation_invalidates(self, engine, counting_backend, tmp_path):
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            engine.get_working_tree_status(tmp_path)
            engine.stage_file(tmp_path, "f.txt")
            engine.get_working_tree_status(tmp_path)
        counting_backend.stage_path.assert_called_once_with("f.txt")
        assert counting_backend.status.call_count == 2

    def test_failed_mutation_still_invalidates(self, engine, counting_backend, tmp_path):
        counting_backend.stage_path.side_effect = RuntimeError("boom")
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            engine.get_working_tree_status(tmp_path)
            with pytest.raises(RuntimeError):
                engine.stage_file(tmp_path, "f.txt")
            engine.get_working_tree_status(tmp_path)
        assert counting_backend.status.call_count == 2

    def test_backend_opened_once_per_path(self, engine, counting_backend, tmp_path):
        with patch("repoengine.engine.open_backend", return_value=counting_backend) as opener:
            engine.get_working_tree_status(tmp_path)
            engine.get_working_tree_status(str(tmp_path) + "/.")
        opener.assert_called_once()


class TestGuards:
    """Test validation done before any backend work."""

    def test_traversal_rejected_before_open(self, engine, tmp_path):
        with patch("repoengine.engine.open_backend") as opener:
            with pytest.raises(PathTraversalRejected):
                engine.get_working_file_content(tmp_path, "../outside.txt")
        opener.assert_not_called()

    def test_squash_of_one_commit_rejected_before_open(self, engine, tmp_path):
        with patch("repoengine.engine.open_backend") as opener:
            with pytest.raises(ValidationError):
                engine.squash(tmp_path, [R], "msg")
        opener.assert_not_called()

    def test_empty_commit_message(self, engine, tmp_path):
        with pytest.raises(ValidationError):
            engine.commit(tmp_path, "   ")

    def test_lock_timeout_becomes_resource_locked(self, engine, tmp_path):
        engine.locks = MagicMock()
        engine.locks.read_lock.side_effect = LockTimeout("Could not acquire read lock within 60s")
        with pytest.raises(ResourceLocked, match="read lock"):
            engine.current_branch(tmp_path)


class TestPendingPicks:
    """Test continuing a multi-commit cherry-pick across calls."""

    def test_continue_picks_the_rest(self, engine, linear_repo, tmp_path):
        side = ["1" * 40, "2" * 40, "3" * 40]
        for sha in side:
            linear_repo.commits[sha] = make_commit(sha, [R], files={"f.txt": f"side {sha[0]}\n"})
        linear_repo.conflict_on = {side[1]}

        with patch("repoengine.engine.open_backend", return_value=linear_repo):
            with pytest.raises(ConflictPending) as exc:
                engine.cherry_pick(tmp_path, side)
            assert exc.value.step == 2
            linear_repo.unresolved = []
            result = engine.continue_operation(tmp_path)

        assert result.state is OperationState.COMMITTED
        picked = [c[1] for c in linear_repo.calls if c[0] == "cherry_pick"]
        assert picked == side
        assert engine._pending_picks == {}

    def test_abort_forgets_pending(self, engine, linear_repo, tmp_path):
        side = "1" * 40
        linear_repo.commits[side] = make_commit(side, [R])
        linear_repo.conflict_on = {side}
        with patch("repoengine.engine.open_backend", return_value=linear_repo):
            with pytest.raises(ConflictPending):
                engine.cherry_pick(tmp_path, [side])
            engine.abort_operation(tmp_path)
        assert engine._pending_picks == {}


class TestSubmit:
    """Test running operations on the worker pool."""

    def test_returns_future(self, engine, linear_repo, tmp_path):
        with patch("repoengine.engine.open_backend", return_value=linear_repo):
            future = engine.submit("current_branch", tmp_path)
            assert isinstance(future, Future)
            assert future.result(timeout=5) == "main"

    @pytest.mark.parametrize("name", ["_read", "nope", "submit", "config"])
    def test_rejects_non_operations(self, engine, name):
        with pytest.raises(ValidationError):
            engine.submit(name)

    def test_errors_surface_through_future(self, engine, tmp_path):
        with patch("repoengine.engine.open_backend") as opener:
            future = engine.submit("get_working_file_content", tmp_path, "../x")
            with pytest.raises(PathTraversalRejected):
                future.result(timeout=5)
        opener.assert_not_called()


class TestDirtyAndConflicts:
    """Test the working-tree summaries built on status."""

    def test_is_dirty_shares_the_status_cache(self, engine, counting_backend, tmp_path):
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            assert engine.is_dirty(tmp_path) is True
            engine.get_working_tree_status(tmp_path)
        assert counting_backend.status.call_count == 1

    def test_clean_tree(self, engine, counting_backend, tmp_path):
        counting_backend.status.return_value = []
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            assert engine.is_dirty(tmp_path) is False

    def test_resolve_conflict_invalidates_status(self, engine, counting_backend, tmp_path):
        (tmp_path / "f.txt").write_text("<<<<<<< HEAD\nmine\n=======\nyours\n>>>>>>> x\n")
        with patch("repoengine.engine.open_backend", return_value=counting_backend):
            engine.get_working_tree_status(tmp_path)
            assert engine.resolve_conflict(tmp_path, "f.txt", "theirs") == "yours\n"
            engine.get_working_tree_status(tmp_path)
        counting_backend.stage_path.assert_called_once_with("f.txt")
        assert counting_backend.status.call_count == 2
