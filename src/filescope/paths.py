"""Path normalization shared by every component.

All node keys, dependency edges, and watcher timer keys go through
normalize_path so lookups compare like with like:
  - absolute (relative input is anchored at ``base`` or the cwd)
  - ``.``/``..`` collapsed, duplicate separators removed
  - forward slashes only
  - case folded on case-insensitive platforms (Windows)

Symlinks are not resolved here; the scanner tracks real paths separately to
detect loops.
"""

import os
from pathlib import Path
from typing import Optional, Union

from .errors import FileScopeError

PathLike = Union[str, os.PathLike]

_CASE_INSENSITIVE = os.name == "nt"


class PathTraversalError(FileScopeError):
    """Raised when a user supplied path escapes the project root."""
    pass


def normalize_path(path: PathLike, base: Optional[PathLike] = None) -> str:
    """Return the canonical string key for ``path``.

    Args:
        path: Absolute or relative path. Backslashes are accepted.
        base: Directory relative paths are anchored at (default: cwd)

    Returns:
        Absolute, separator-normalized path string.
    """
    raw = os.fspath(path).strip()
    if not raw:
        raise ValueError("Cannot normalize an empty path")
    raw = os.path.expanduser(raw.replace("\\", "/"))

    if not os.path.isabs(raw) and not _is_drive_path(raw):
        anchor = os.fspath(base) if base is not None else os.getcwd()
        raw = os.path.join(anchor, raw)

    normalized = os.path.normpath(raw).replace("\\", "/")
    if _CASE_INSENSITIVE:
        normalized = normalized.lower()
    # normpath keeps a leading '//' (POSIX allows it); collapse it
    while normalized.startswith("//"):
        normalized = normalized[1:]
    return normalized


def _is_drive_path(raw: str) -> bool:
    return len(raw) > 2 and raw[1] == ":" and raw[2] == "/"


def paths_equal(a: PathLike, b: PathLike) -> bool:
    return normalize_path(a) == normalize_path(b)


def is_within(path: PathLike, root: PathLike) -> bool:
    """True if ``path`` equals ``root`` or lies underneath it."""
    path_n = normalize_path(path)
    root_n = normalize_path(root)
    if path_n == root_n:
        return True
    prefix = root_n if root_n.endswith("/") else root_n + "/"
    return path_n.startswith(prefix)


def relative_to(path: PathLike, root: PathLike) -> str:
    """Root-relative form of ``path`` with forward slashes ("" for the root)."""
    path_n = normalize_path(path)
    root_n = normalize_path(root)
    if path_n == root_n:
        return ""
    if not is_within(path_n, root_n):
        raise ValueError(f"{path_n} is not under {root_n}")
    return path_n[len(root_n):].lstrip("/")


def resolve_user_path(project_root: PathLike, user_path: str) -> str:
    """Normalize a caller supplied path and keep it inside the project.

    Relative paths are taken relative to ``project_root``.

    Raises:
        PathTraversalError: If the path escapes project_root
    """
    resolved = normalize_path(user_path, base=project_root)
    if not is_within(resolved, project_root):
        raise PathTraversalError(
            f"Path {user_path} escapes project root {project_root}", path=resolved
        )
    return resolved


def real_path(path: PathLike) -> str:
    """Symlink-resolved key, used only for loop detection."""
    return normalize_path(Path(path).resolve())
