# git.py
# Thin wrapper around the Git CLI. Trigger facts (ref, sha, changed files)
# are read here so nothing else shells out to git directly.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Run git with *args* and return stdout with surrounding whitespace removed.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD; exported to conditions as ``vars.sha``."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Common ancestor of HEAD and *with_ref*."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Paths (relative to the repo root) changed between *base* and *head*.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref of the checkout: ``refs/heads/<branch>``, or the
    bare commit SHA on a detached HEAD.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)
