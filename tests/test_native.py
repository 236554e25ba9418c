"""End-to-end tests through the engine against a real git executable."""

import shutil

import pytest

from repoengine.engine import RepositoryEngine
from repoengine.errors import ConflictPending, ValidationError
from repoengine.lib.config import BACKEND_NATIVE, EngineConfig
from repoengine.lib.types import ADDED, MODIFIED, Author, OperationState

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")

AUTHOR = Author(name="Test User", email="test@example.com")


@pytest.fixture
def engine():
    eng = RepositoryEngine(EngineConfig(backend=BACKEND_NATIVE))
    yield eng
    eng.close()


@pytest.fixture
def repo(engine, tmp_path):
    path = tmp_path / "repo"
    engine.init_repository(path)
    backend = engine.backend(path)
    backend.run(["config", "user.name", AUTHOR.name])
    backend.run(["config", "user.email", AUTHOR.email])
    backend.run(["config", "commit.gpgsign", "false"])
    engine.write_working_file(path, "f.txt", "one\n")
    engine.stage_file(path, "f.txt")
    engine.commit(path, "initial", AUTHOR)
    return path


class TestWorkingTree:
    """Test status, staging and commits."""

    def test_initial_commit(self, engine, repo):
        commits = engine.get_commits(repo)
        assert [c.message for c in commits] == ["initial"]
        assert engine.current_branch(repo) == "main"
        assert engine.get_working_tree_status(repo) == []

    def test_status_after_edits(self, engine, repo):
        engine.write_working_file(repo, "f.txt", "two\n")
        engine.write_working_file(repo, "new.txt", "n\n")
        found = {(c.filename, c.status, c.staged) for c in engine.get_working_tree_status(repo)}
        assert found == {("f.txt", MODIFIED, False), ("new.txt", ADDED, False)}

    def test_stage_single_line(self, engine, repo):
        engine.write_working_file(repo, "f.txt", "zero\none\nlast\n")
        engine.stage_line(repo, "f.txt", "one\n", "zero\none\nlast\n", 0, 0)
        assert engine.get_staged_content(repo, "f.txt") == "zero\none\n"
        assert engine.get_file_content_at(repo, "HEAD", "f.txt") == "one\n"

    def test_native_blame(self, engine, repo):
        lines = engine.blame(repo, "f.txt")
        assert lines[0].content == "one"
        assert lines[0].commit_id == engine.resolve_ref(repo, "HEAD")


class TestSnapshots:
    """Test snapshot creation and restore through git stash."""

    def test_create_and_restore(self, engine, repo):
        engine.write_working_file(repo, "f.txt", "two\n")
        engine.create_snapshot(repo, "checkpoint")
        assert (repo / "f.txt").read_text() == "one\n"
        snapshots = engine.list_snapshots(repo)
        assert [s.message for s in snapshots] == ["checkpoint"]
        assert engine.list_stashes(repo) == []
        engine.restore_snapshot(repo, snapshots[0].index)
        assert (repo / "f.txt").read_text() == "two\n"


class TestCherryPickConflict:
    """Test a conflicting pick left in place, then aborted."""

    def test_conflict_then_abort(self, engine, repo):
        engine.create_branch(repo, "topic", checkout=True)
        engine.write_working_file(repo, "f.txt", "topic\n")
        engine.stage_file(repo, "f.txt")
        picked = engine.commit(repo, "topic edit", AUTHOR)
        engine.checkout(repo, "main")
        engine.write_working_file(repo, "f.txt", "main\n")
        engine.stage_file(repo, "f.txt")
        tip = engine.commit(repo, "main edit", AUTHOR)

        with pytest.raises(ConflictPending) as exc:
            engine.cherry_pick(repo, [picked])
        assert exc.value.files == ["f.txt"]

        result = engine.abort_operation(repo)
        assert result.state is OperationState.ABORTED
        assert engine.resolve_ref(repo, "HEAD") == tip
        assert (repo / "f.txt").read_text() == "main\n"


class TestRebase:
    """Test rebase through git, including a stop on conflicts."""

    def diverge(self, engine, repo, topic_path, topic_content):
        engine.create_branch(repo, "topic", checkout=True)
        engine.write_working_file(repo, topic_path, topic_content)
        engine.stage_file(repo, topic_path)
        topic = engine.commit(repo, "topic edit", AUTHOR)
        engine.checkout(repo, "main")
        engine.write_working_file(repo, "f.txt", "main\n")
        engine.stage_file(repo, "f.txt")
        main = engine.commit(repo, "main edit", AUTHOR)
        engine.checkout(repo, "topic")
        return topic, main

    def test_clean_rebase(self, engine, repo):
        _, main = self.diverge(engine, repo, "t.txt", "t\n")
        result = engine.rebase(repo, "main")
        assert result.state is OperationState.COMMITTED
        commits = engine.get_commits(repo)
        assert [c.message for c in commits] == ["topic edit", "main edit", "initial"]
        assert commits[0].parents == [main]
        assert engine.current_branch(repo) == "topic"

    def test_conflict_resolved_and_continued(self, engine, repo):
        self.diverge(engine, repo, "f.txt", "topic\n")
        with pytest.raises(ConflictPending) as exc:
            engine.rebase(repo, "main")
        assert exc.value.operation == "rebase"
        assert exc.value.files == ["f.txt"]

        engine.resolve_conflict(repo, "f.txt", "theirs")
        result = engine.continue_operation(repo)
        assert result.operation == "rebase"
        assert result.state is OperationState.COMMITTED
        assert engine.current_branch(repo) == "topic"
        assert [c.message for c in engine.get_commits(repo)] == ["topic edit", "main edit", "initial"]
        assert (repo / "f.txt").read_text() == "topic\n"

    def test_conflict_then_abort(self, engine, repo):
        topic, _ = self.diverge(engine, repo, "f.txt", "topic\n")
        with pytest.raises(ConflictPending):
            engine.rebase(repo, "main")
        result = engine.abort_operation(repo)
        assert result.state is OperationState.ABORTED
        assert engine.current_branch(repo) == "topic"
        assert engine.resolve_ref(repo, "HEAD") == topic
        assert (repo / "f.txt").read_text() == "topic\n"

    def test_dirty_tree_rejected(self, engine, repo):
        self.diverge(engine, repo, "t.txt", "t\n")
        engine.write_working_file(repo, "t.txt", "edited\n")
        with pytest.raises(ValidationError, match="uncommitted"):
            engine.rebase(repo, "main")


class TestStashFile:
    """Test stashing one path while other changes stay."""

    def test_tracked_file(self, engine, repo):
        engine.write_working_file(repo, "f.txt", "two\n")
        engine.write_working_file(repo, "u.txt", "u\n")
        engine.stash_file(repo, "f.txt")
        assert (repo / "f.txt").read_text() == "one\n"
        assert (repo / "u.txt").exists()
        [entry] = engine.list_stashes(repo)
        assert "WIP: f.txt" in entry.message

    def test_untracked_file(self, engine, repo):
        engine.write_working_file(repo, "f.txt", "two\n")
        engine.write_working_file(repo, "u.txt", "u\n")
        engine.stash_file(repo, "u.txt", "park u")
        assert not (repo / "u.txt").exists()
        assert (repo / "f.txt").read_text() == "two\n"
        assert "park u" in engine.list_stashes(repo)[0].message
