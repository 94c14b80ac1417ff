# git.py
# Small, focused wrapper around the Git CLI.
# The engine reads repository facts (sha, ref, changed files) from here to
# build the event of a local run; nothing else calls git directly.

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import List, Optional

from ..triggers import Event


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this
    file. A non-zero exit raises subprocess.CalledProcessError; callers that
    can live without the fact catch it.

    Args:
        args: git arguments (e.g. ["status", "--porcelain"])
        cwd: directory to run in, when the caller is not inside the repo

    Returns:
        Stdout with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository root (`git rev-parse --show-toplevel`)."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Becomes `github.sha`."""
    return _git(["rev-parse", "HEAD"], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    True when the working tree has modified, staged or untracked files.
    `git status --porcelain` prints nothing for a clean tree.
    """
    return _git(["status", "--porcelain"], cwd) != ""


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    The fully qualified ref HEAD points at:
      refs/heads/<branch> on a branch
      refs/tags/<tag>     on a detached HEAD exactly at a tag
      the bare sha        otherwise
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        pass
    try:
        return "refs/tags/" + _git(["describe", "--tags", "--exact-match", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.
    Feeds `paths` / `paths-ignore` trigger filters.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    return out.splitlines() if out else []


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths of a dirty tree."""
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


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and with_ref; where the current branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> Optional[str]:
    try:
        return _git(["remote", "get-url", remote], cwd) or None
    except subprocess.CalledProcessError:
        return None


_SLUG_RE = re.compile(r"[:/]([^/:]+/[^/]+?)(?:\.git)?/?$")


def repository_slug(url: Optional[str]) -> str:
    """`git@github.com:octo/app.git` -> `octo/app`. Becomes `github.repository`."""
    if not url:
        return ""
    m = _SLUG_RE.search(url)
    return m.group(1) if m else ""


def actor(cwd: Optional[str | Path] = None) -> str:
    try:
        return _git(["config", "user.name"], cwd)
    except subprocess.CalledProcessError:
        return ""


def local_event(
    event_name: str = "push",
    *,
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> Event:
    """
    Build the event of a local run from the repository at cwd.

    Changed files: the dirty working tree if there is one, otherwise the
    diff against the merge-base with compare_ref (HEAD~1 when there is no
    such ref). Unknown (None) when even that fails, so path filters pass.
    """
    root = repo_root(cwd)
    sha = head_sha(root)

    changed: Optional[List[str]]
    if is_dirty(root):
        changed = working_tree_changes(root)
    else:
        try:
            base = merge_base(compare_ref, root)
        except subprocess.CalledProcessError:
            base = "HEAD~1"
        try:
            changed = changed_files(base, "HEAD", root)
        except subprocess.CalledProcessError:
            changed = None

    return Event(
        name=event_name,
        ref=current_ref(root),
        sha=sha,
        actor=actor(root),
        changed_files=changed,
    )
