"""Tests for repoengine.git.embedded module against real dulwich repositories."""

import pytest

from repoengine.errors import BackendError, UnsupportedOperation
from repoengine.git.embedded import EmbeddedBackend
from repoengine.lib.config import EngineConfig
from repoengine.lib.constants import CHERRY_PICK_HEAD
from repoengine.lib.types import ADDED, CONFLICTED, MODIFIED, Author

AUTHOR = Author(name="Test User", email="test@example.com")


@pytest.fixture
def repo(tmp_path):
    backend = EmbeddedBackend.init_repository(tmp_path / "repo", EngineConfig())
    (backend.root / "f.txt").write_text("a\n")
    backend.stage_path("f.txt")
    backend.commit("initial", author=AUTHOR)
    return backend


def changes(backend):
    return {(c.filename, c.status, c.staged) for c in backend.status()}


class TestLifecycle:
    """Test init, detection and the first commit."""

    def test_init_points_head_at_default_branch(self, tmp_path):
        backend = EmbeddedBackend.init_repository(tmp_path / "new", EngineConfig(), default_branch="trunk")
        assert EmbeddedBackend.is_repository(tmp_path / "new", EngineConfig())
        assert backend.current_branch() == "trunk"
        assert backend.resolve_ref("HEAD") is None

    def test_plain_directory_is_not_a_repository(self, tmp_path):
        assert not EmbeddedBackend.is_repository(tmp_path, EngineConfig())

    def test_first_commit(self, repo):
        log = repo.log("HEAD", 10)
        assert len(log) == 1
        assert log[0].message == "initial"
        assert log[0].author == "Test User"
        assert log[0].parents == []
        assert repo.read_file_at("HEAD", "f.txt") == "a\n"
        assert changes(repo) == set()

    def test_nothing_to_commit(self, repo):
        with pytest.raises(BackendError, match="nothing to commit"):
            repo.commit("again", author=AUTHOR)


class TestStatusAndIndex:
    """Test the HEAD/index/worktree matrix."""

    def test_untracked_then_staged(self, repo):
        (repo.root / "new.txt").write_text("n\n")
        assert changes(repo) == {("new.txt", ADDED, False)}
        repo.stage_path("new.txt")
        assert changes(repo) == {("new.txt", ADDED, True)}
        assert repo.read_staged_file("new.txt") == "n\n"

    def test_modified_staged_and_unstaged(self, repo):
        (repo.root / "f.txt").write_text("b\n")
        repo.stage_path("f.txt")
        (repo.root / "f.txt").write_text("c\n")
        assert changes(repo) == {("f.txt", MODIFIED, True), ("f.txt", MODIFIED, False)}

    def test_unstage_restores_head_entry(self, repo):
        (repo.root / "f.txt").write_text("b\n")
        repo.stage_path("f.txt")
        repo.unstage_path("f.txt")
        assert changes(repo) == {("f.txt", MODIFIED, False)}
        assert (repo.root / "f.txt").read_text() == "b\n"

    def test_discard_path(self, repo):
        (repo.root / "f.txt").write_text("b\n")
        repo.discard_path("f.txt")
        assert (repo.root / "f.txt").read_text() == "a\n"
        assert changes(repo) == set()

    def test_gitignore_respected(self, repo):
        (repo.root / ".gitignore").write_text("*.log\n")
        (repo.root / "debug.log").write_text("noise\n")
        assert ("debug.log", ADDED, False) not in changes(repo)
        assert "debug.log" not in repo.list_files()


class TestRefs:
    """Test branches and checkout."""

    def test_branch_and_checkout(self, repo):
        repo.create_branch("topic")
        repo.checkout("topic")
        assert repo.current_branch() == "topic"
        (repo.root / "g.txt").write_text("g\n")
        repo.stage_path("g.txt")
        sha = repo.commit("add g", author=AUTHOR)
        repo.checkout("main")
        assert not (repo.root / "g.txt").exists()
        assert repo.resolve_ref("topic") == sha
        names = {b.name for b in repo.list_branches()}
        assert names == {"main", "topic"}

    def test_checkout_blocked_by_local_changes(self, repo):
        repo.create_branch("topic")
        repo.checkout("topic")
        (repo.root / "f.txt").write_text("topic\n")
        repo.stage_path("f.txt")
        repo.commit("topic edit", author=AUTHOR)
        (repo.root / "f.txt").write_text("dirty\n")
        with pytest.raises(BackendError, match="would be overwritten"):
            repo.checkout("main")

    def test_parent_suffix(self, repo):
        first = repo.resolve_ref("HEAD")
        (repo.root / "f.txt").write_text("b\n")
        repo.stage_path("f.txt")
        repo.commit("second", author=AUTHOR)
        assert repo.resolve_ref("HEAD~1") == first
        assert repo.resolve_ref("HEAD^") == first


class TestCherryPick:
    """Test the in-process three-way pick."""

    def branch_edit(self, repo, content):
        repo.create_branch("topic")
        repo.checkout("topic")
        (repo.root / "f.txt").write_text(content)
        repo.stage_path("f.txt")
        sha = repo.commit("topic edit", author=AUTHOR)
        repo.checkout("main")
        return sha

    def test_clean_pick(self, repo):
        sha = self.branch_edit(repo, "b\n")
        (repo.root / "g.txt").write_text("g\n")
        repo.stage_path("g.txt")
        main_tip = repo.commit("main edit", author=AUTHOR)

        repo.cherry_pick(sha, author=AUTHOR)
        tip = repo.log("HEAD", 1)[0]
        assert tip.message == "topic edit"
        assert tip.parents == [main_tip]
        assert repo.resolve_ref("main") == tip.id
        assert repo.resolve_ref("topic") == sha
        assert repo.read_file_at("HEAD", "f.txt") == "b\n"
        assert repo.read_file_at("HEAD", "g.txt") == "g\n"
        assert (repo.root / "f.txt").read_text() == "b\n"
        assert changes(repo) == set()

    def test_conflict_then_abort(self, repo):
        sha = self.branch_edit(repo, "b\n")
        (repo.root / "f.txt").write_text("c\n")
        repo.stage_path("f.txt")
        before = repo.commit("main edit", author=AUTHOR)

        with pytest.raises(BackendError, match="could not apply"):
            repo.cherry_pick(sha, author=AUTHOR)
        assert repo.has_marker(CHERRY_PICK_HEAD)
        assert repo.conflicted_files() == ["f.txt"]
        assert ("f.txt", CONFLICTED, False) in changes(repo)
        content = (repo.root / "f.txt").read_text()
        assert content.startswith("<<<<<<< HEAD\nc\n=======\nb\n>>>>>>> ")

        repo.sequencer("cherry-pick", "abort")
        assert not repo.has_marker(CHERRY_PICK_HEAD)
        assert repo.resolve_ref("HEAD") == before
        assert (repo.root / "f.txt").read_text() == "c\n"

    def test_empty_pick(self, repo):
        sha = self.branch_edit(repo, "b\n")
        repo.cherry_pick(sha, author=AUTHOR)
        with pytest.raises(BackendError, match="now empty"):
            repo.cherry_pick(sha, author=AUTHOR)


class TestUnsupported:
    """Test capabilities the embedded backend does not provide."""

    def test_stash(self, repo):
        with pytest.raises(UnsupportedOperation):
            repo.stash_push("wip")

    def test_stash_single_path(self, repo):
        (repo.root / "f.txt").write_text("b\n")
        with pytest.raises(UnsupportedOperation):
            repo.stash_push_path("f.txt", "WIP: f.txt")

    def test_rebase(self, repo):
        with pytest.raises(UnsupportedOperation):
            repo.rebase("main")

    def test_reflog(self, repo):
        with pytest.raises(UnsupportedOperation):
            repo.reflog(10)

    def test_native_blame_defers_to_history(self, repo):
        assert repo.native_blame("f.txt", "HEAD") is None
