# hashing.py
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, List, Optional

# ---------------------------------------------------------------------
# hashFiles()
# ---------------------------------------------------------------------
#   digest = sha256( sha256(file_1) + sha256(file_2) + ... )
#
# Files are the union of all positive patterns minus every `!pattern`,
# relative to the workspace, in sorted path order. No match -> "".
# ---------------------------------------------------------------------

EXCLUDED_PREFIXES = (".git/",)


def _hash_file_contents(path: Path) -> bytes:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.digest()


def _relpath(p: Path, root: Path) -> Optional[str]:
    try:
        return str(p.resolve().relative_to(root)).replace("\\", "/")
    except ValueError:
        # outside the workspace
        return None


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _expand(root: Path, pattern: str) -> List[Path]:
    """
    Expand one pattern into files.
    Supports:
      - file path: "package-lock.json"
      - dir path:  "src/" (every file below it)
      - glob:      "**/package-lock.json", "src/**/*.py"
    """
    pattern = pattern.strip()
    if not pattern:
        return []
    direct = root / pattern
    if direct.is_file():
        return [direct]
    if direct.is_dir():
        return list(_iter_files_under(direct))
    try:
        matches = sorted(root.glob(pattern))
    except (ValueError, NotImplementedError):
        # e.g. absolute or otherwise unsupported pattern
        return []
    out: List[Path] = []
    for m in matches:
        if m.is_file():
            out.append(m)
        elif m.is_dir():
            out.extend(_iter_files_under(m))
    return out


def resolve_files(patterns: List[str], root: str | Path) -> List[str]:
    """Return workspace-relative paths matched by patterns, sorted."""
    root_p = Path(root).resolve()
    include: set[str] = set()
    exclude: set[str] = set()

    for pat in patterns:
        for line in str(pat).splitlines():
            line = line.strip()
            if not line:
                continue
            target = exclude if line.startswith("!") else include
            for f in _expand(root_p, line.lstrip("!")):
                rel = _relpath(f, root_p)
                if rel is None or rel.startswith(EXCLUDED_PREFIXES):
                    continue
                target.add(rel)

    return sorted(include - exclude)


def hash_files(patterns: List[str], root: str | Path = ".") -> str:
    root_p = Path(root).resolve()
    files = resolve_files(patterns, root_p)
    if not files:
        return ""
    h = hashlib.sha256()
    for rel in files:
        h.update(_hash_file_contents(root_p / rel))
    return h.hexdigest()
