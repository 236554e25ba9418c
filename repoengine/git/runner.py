"""Git command runner with timeout handling."""

import logging
import os
import subprocess
import sys
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from repoengine.errors import OperationCancelled, redact_credentials

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
GIT_BINARY = "git"

# Interval at which a streaming command checks its cancel event
_POLL_INTERVAL = 0.1


@dataclass
class GitResult:
    """Result of a git command."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _decode(raw: bytes | None) -> str:
    # No newline translation: blob content keeps its CRLF line endings
    return raw.decode("utf-8", "replace") if raw else ""


def _base_env(extra: dict[str, str] | None) -> dict[str, str]:
    env = dict(os.environ)
    # Parsers depend on untranslated messages
    env["LC_ALL"] = "C"
    env["GIT_TERMINAL_PROMPT"] = "0"
    if extra:
        env.update(extra)
    return env


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
    env: dict[str, str] | None = None,
    git: str = GIT_BINARY,
    stdin: str | None = None,
) -> GitResult:
    """
    Run a git command with timeout handling.

    Arguments go to the process as a list; nothing is ever interpolated
    through a shell.

    Args:
        args: Git command arguments (e.g., ["status", "--porcelain"])
        cwd: Working directory for the command
        timeout: Timeout in seconds
        env: Extra environment variables for this call
        git: Git executable
        stdin: Text written to stdin

    Returns:
        GitResult with returncode, stdout, stderr, and timed_out flag
    """
    cmd = [git, "-C", str(cwd)] + args
    logger.debug(f"[GIT] {' '.join(redact_credentials(a) for a in args)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            timeout=timeout,
            env=_base_env(env),
            input=stdin.encode("utf-8") if stdin is not None else None,
        )
        return GitResult(
            returncode=result.returncode,
            stdout=_decode(result.stdout),
            stderr=_decode(result.stderr),
        )
    except subprocess.TimeoutExpired:
        return GitResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )


def _pump_progress(stream, on_line: Callable[[str], None], sink: list[str]) -> None:
    """Read stderr, splitting on both \\r and \\n so progress meters stream."""
    buf = bytearray()

    def flush():
        if buf:
            line = redact_credentials(_decode(bytes(buf)))
            sink.append(line)
            on_line(line)
            buf.clear()

    while True:
        chunk = stream.read(1)
        if not chunk:
            break
        if chunk in (b"\r", b"\n"):
            flush()
        else:
            buf += chunk
    flush()


def run_git_streaming(
    args: list[str],
    cwd: Path,
    on_progress: Callable[[str], None] | None = None,
    cancel: threading.Event | None = None,
    timeout: int = 600,
    env: dict[str, str] | None = None,
    git: str = GIT_BINARY,
) -> GitResult:
    """
    Run a long git command, forwarding stderr progress lines as they arrive.

    Raises:
        OperationCancelled: cancel was set before the command finished
    """
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"git {args[0]} cancelled before start")

    cmd = [git, "-C", str(cwd)] + args
    logger.debug(f"[GIT] {' '.join(redact_credentials(a) for a in args)} (streaming)")
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=_base_env(env),
    )
    stderr_lines: list[str] = []
    out_chunks: list[bytes] = []
    err_reader = threading.Thread(
        target=_pump_progress,
        args=(proc.stderr, on_progress or (lambda _line: None), stderr_lines),
        daemon=True,
    )
    out_reader = threading.Thread(target=lambda: out_chunks.append(proc.stdout.read()), daemon=True)
    err_reader.start()
    out_reader.start()

    waited = 0.0
    try:
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                waited += _POLL_INTERVAL
                if cancel is not None and cancel.is_set():
                    proc.terminate()
                    proc.wait()
                    raise OperationCancelled(f"git {args[0]} cancelled")
                if waited >= timeout:
                    proc.kill()
                    proc.wait()
                    return GitResult(
                        returncode=-1,
                        stdout="",
                        stderr=f"Command timed out after {timeout}s",
                        timed_out=True,
                    )
    finally:
        err_reader.join(timeout=5)
        out_reader.join(timeout=5)

    return GitResult(
        returncode=proc.returncode,
        stdout=_decode(b"".join(out_chunks)),
        stderr="\n".join(stderr_lines),
    )


@contextmanager
def transient_credential(token: str | None) -> Iterator[dict[str, str]]:
    """
    Yield environment variables that hand `token` to git out of band.

    An askpass helper script is written right before the call and deleted on
    every exit path. The token never appears in argv or in a remote URL.
    With no token, yields an empty mapping.
    """
    if not token:
        yield {}
        return

    if sys.platform == "win32":
        suffix, body = ".bat", f"@echo off\r\necho {token}\r\n"
    else:
        suffix, body = ".sh", f"#!/bin/sh\necho '{_sh_quote(token)}'\n"

    fd, script = tempfile.mkstemp(prefix="repoengine-askpass-", suffix=suffix)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(body)
        os.chmod(script, 0o700)
        yield {"GIT_ASKPASS": script, "GIT_TERMINAL_PROMPT": "0"}
    finally:
        try:
            os.unlink(script)
        except FileNotFoundError:
            pass


def _sh_quote(value: str) -> str:
    return value.replace("'", "'\\''")
