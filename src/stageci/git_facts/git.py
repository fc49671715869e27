# git.py
# Small, focused wrapper around the Git CLI.
# Used to build the trigger event for a locally started run, so the rest
# of the codebase never needs to call subprocess("git ...") directly.

from __future__ import annotations

import getpass
import subprocess
from typing import Optional

from ..model import TriggerEvent


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    If git exits with a non-zero status, subprocess.CalledProcessError is raised.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,   # return output as str instead of bytes
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def parent_sha(cwd: Optional[str] = None) -> str:
    """SHA of HEAD~1, or "" on the first commit."""
    try:
        return _git(["rev-parse", "HEAD~1"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref of the checked out branch (refs/heads/<branch>).
    A detached HEAD is reported as its commit SHA.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def actor(cwd: Optional[str] = None) -> str:
    """Who is triggering: git user.name, falling back to the OS user."""
    try:
        name = _git(["config", "user.name"], cwd=cwd)
    except subprocess.CalledProcessError:
        name = ""
    return name or getpass.getuser()


def trigger_from_repo(
    cwd: Optional[str] = None,
    *,
    ref: Optional[str] = None,
    who: Optional[str] = None,
) -> TriggerEvent:
    """
    Build a push-like TriggerEvent from the local repository.

    Raises subprocess.CalledProcessError / FileNotFoundError when not in a
    git repository or git is missing.
    """
    return TriggerEvent(
        ref=ref or current_ref(cwd),
        before=parent_sha(cwd),
        after=head_sha(cwd),
        actor=who or actor(cwd),
    )
