# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    Every other function builds on top of this to ensure:
    - consistent invocation of git
    - consistent text output (not bytes)
    - minimal parsing logic duplicated elsewhere

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Return the checked-out branch name.

    A detached HEAD has no branch; the short SHA is returned instead so the
    caller always gets something it can show or match against.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if name == "HEAD":
        return _git(["rev-parse", "--short", "HEAD"], cwd)
    return name


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes
    (modified, staged or untracked files).
    """
    # `git status --porcelain` prints nothing for a clean tree
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Return a list of files changed between two Git references,
    relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """
    Return the merge-base (common ancestor) between HEAD and another ref:
    the point where the current branch diverged from `with_ref`.
    """
    return _git(["merge-base", "HEAD", with_ref], cwd)


def working_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files a CI run should consider "changed".

    Dirty tree: staged + unstaged + untracked files.
    Clean tree: files changed since the merge-base with `compare_ref`
    (falls back to HEAD~1, then to every tracked file on a first commit).
    """
    if is_dirty(cwd):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, cwd)
            if out:
                files.update(out.splitlines())
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        tracked = _git(["ls-files"], cwd)
        return tracked.splitlines() if tracked else []


def latest_tag(prefix: str = "v", cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Return the most recent tag reachable from HEAD that starts with `prefix`,
    or None when the history has no such tag yet.
    """
    try:
        return _git(["describe", "--tags", "--abbrev=0", "--match", f"{prefix}*"], cwd) or None
    except subprocess.CalledProcessError:
        # `git describe` fails when no tag matches
        return None


def commit_subjects(since: Optional[str] = None, cwd: Optional[str | Path] = None) -> List[str]:
    """
    Return commit messages (subject + body) from `since` (exclusive) to HEAD,
    newest first. With since=None the whole history is returned.
    """
    rev_range = f"{since}..HEAD" if since else "HEAD"
    # NUL-separated so multi-line bodies survive the split
    out = _git(["log", "--format=%B%x00", rev_range], cwd)
    return [m.strip() for m in out.split("\x00") if m.strip()]
