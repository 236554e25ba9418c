"""Tests for repoengine.git.runner module."""

import io
import os
import subprocess
import threading
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from repoengine.errors import OperationCancelled
from repoengine.git.runner import run_git, run_git_streaming, transient_credential, GitResult


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        result = GitResult(returncode=0, stdout="ok", stderr="")
        assert result.success is True

    def test_failure_when_returncode_nonzero(self):
        result = GitResult(returncode=1, stdout="", stderr="error")
        assert result.success is False

    def test_failure_when_timed_out(self):
        result = GitResult(returncode=0, stdout="ok", stderr="", timed_out=True)
        assert result.success is False


class TestRunGit:
    """Test run_git function."""

    @patch("repoengine.git.runner.subprocess.run")
    def test_returns_result_on_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"output", stderr=b"")
        result = run_git(["status"], Path("/tmp"))
        assert result.success
        assert result.stdout == "output"
        mock_run.assert_called_once()

    @patch("repoengine.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("repoengine.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        run_git(["status", "--porcelain"], Path("/my/repo"))
        call_args = mock_run.call_args[0][0]
        assert call_args == ["git", "-C", "/my/repo", "status", "--porcelain"]

    @patch("repoengine.git.runner.subprocess.run")
    def test_arguments_are_never_joined_into_a_shell_string(self, mock_run):
        """Messages with shell metacharacters stay a single argv element."""
        mock_run.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        run_git(["commit", "-m", "fix; rm -rf / $(whoami)"], Path("/r"))
        cmd = mock_run.call_args[0][0]
        assert cmd[-1] == "fix; rm -rf / $(whoami)"
        assert "shell" not in mock_run.call_args[1]

    @patch("repoengine.git.runner.subprocess.run")
    def test_forces_untranslated_output(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        run_git(["status"], Path("/r"), env={"EXTRA": "1"})
        env = mock_run.call_args[1]["env"]
        assert env["LC_ALL"] == "C"
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["EXTRA"] == "1"

    @patch("repoengine.git.runner.subprocess.run")
    def test_crlf_output_kept(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"one\r\ntwo\r\n", stderr=b"")
        result = run_git(["show", "HEAD:f.txt"], Path("/r"))
        assert result.stdout == "one\r\ntwo\r\n"
        assert "text" not in mock_run.call_args[1]

    @patch("repoengine.git.runner.subprocess.run")
    def test_stdin_sent_as_utf8(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        run_git(["hash-object", "--stdin"], Path("/r"), stdin="café\r\n")
        assert mock_run.call_args[1]["input"] == "café\r\n".encode("utf-8")

    @patch("repoengine.git.runner.subprocess.run")
    def test_invalid_utf8_replaced(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout=None, stderr=b"bad \xff byte")
        result = run_git(["status"], Path("/r"))
        assert result.stdout == ""
        assert result.stderr == "bad � byte"

    @patch("repoengine.git.runner.subprocess.run")
    def test_custom_binary(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        run_git(["status"], Path("/r"), git="/opt/git/bin/git")
        assert mock_run.call_args[0][0][0] == "/opt/git/bin/git"


class TestRunGitStreaming:
    """Test run_git_streaming cancellation."""

    def test_cancelled_before_start_never_spawns(self):
        cancel = threading.Event()
        cancel.set()
        with patch("repoengine.git.runner.subprocess.Popen") as mock_popen:
            with pytest.raises(OperationCancelled):
                run_git_streaming(["fetch"], Path("/r"), cancel=cancel)
        mock_popen.assert_not_called()

    def test_progress_lines_split_on_carriage_returns(self):
        proc = MagicMock(returncode=0)
        proc.stdout = io.BytesIO(b"done\r\n")
        proc.stderr = io.BytesIO(b"Receiving 50%\rReceiving 100%\nhttps://tok@host/r.git\n")
        seen = []
        with patch("repoengine.git.runner.subprocess.Popen", return_value=proc):
            result = run_git_streaming(["fetch"], Path("/r"), on_progress=seen.append)
        assert seen == ["Receiving 50%", "Receiving 100%", "https://***@host/r.git"]
        assert result.stdout == "done\r\n"
        assert result.success


class TestTransientCredential:
    """Test the askpass helper lifecycle."""

    def test_no_token_yields_empty_env(self):
        with transient_credential(None) as env:
            assert env == {}

    def test_helper_deleted_after_use(self):
        with transient_credential("s3cret") as env:
            script = env["GIT_ASKPASS"]
            assert os.path.exists(script)
            assert "s3cret" not in " ".join(env.values())
        assert not os.path.exists(script)

    def test_helper_deleted_on_error(self):
        with pytest.raises(RuntimeError):
            with transient_credential("s3cret") as env:
                script = env["GIT_ASKPASS"]
                raise RuntimeError("boom")
        assert not os.path.exists(script)
