"""Exclusion rules for scans and watcher events.

Patterns use gitignore syntax (pathspec) and are matched against paths
relative to the project root. Three sources are merged, in order:
  - built-in defaults (VCS metadata, dependency and build directories)
  - the standing exclusion list kept in config.json (grown by exclude_and_remove)
  - an optional .filescopeignore file at the project root
Later sources may negate earlier ones with ``!pattern``.

Dot-files and dot-directories can additionally be skipped wholesale.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

import pathspec

logger = logging.getLogger(__name__)


def compile_patterns(patterns: Iterable[str]) -> pathspec.GitIgnoreSpec:
    return pathspec.GitIgnoreSpec.from_lines(list(patterns))


class IgnoreFilter:
    """Decides whether a project-relative path is excluded from the tree."""

    DEFAULT_PATTERNS = [
        ".git/",
        ".hg/",
        ".svn/",
        "node_modules/",
        "bower_components/",
        "__pycache__/",
        "*.pyc",
        "*.pyo",
        ".venv/",
        "venv/",
        "*.egg-info/",
        ".tox/",
        ".mypy_cache/",
        ".pytest_cache/",
        "dist/",
        "build/",
        "out/",
        "coverage/",
        ".next/",
        ".idea/",
        ".vscode/",
        "*.swp",
        ".DS_Store",
        "*.log",
        "FileScope-tree-*.json",
    ]

    def __init__(
        self,
        project_root: str,
        exclude_patterns: Optional[List[str]] = None,
        ignore_dot_files: bool = False,
        ignore_file: str = ".filescopeignore",
    ):
        """Build the filter for a project.

        Args:
            project_root: Root directory of the scanned project
            exclude_patterns: Standing exclusion list from the settings file
            ignore_dot_files: Skip any path with a component starting with '.'
            ignore_file: Name of the optional per-project ignore file
        """
        self.project_root = Path(project_root)
        self.ignore_file = ignore_file
        self.ignore_dot_files = ignore_dot_files
        self.exclude_patterns = list(exclude_patterns or [])
        self._file_patterns = self._read_ignore_file()
        self._spec = self._compile()

    def _read_ignore_file(self) -> List[str]:
        ignore_path = self.project_root / self.ignore_file
        if not ignore_path.is_file():
            return []

        patterns = []
        try:
            with open(ignore_path, "r", encoding="utf-8") as f:
                for line in f:
                    stripped = line.strip()
                    if stripped and not stripped.startswith("#"):
                        patterns.append(stripped)
        except OSError as e:
            logger.warning("Failed to read %s: %s", ignore_path, e)
        return patterns

    def _compile(self) -> pathspec.GitIgnoreSpec:
        return compile_patterns(
            self.DEFAULT_PATTERNS + self.exclude_patterns + self._file_patterns
        )

    @property
    def patterns(self) -> List[str]:
        """Every active pattern, defaults first."""
        return self.DEFAULT_PATTERNS + self.exclude_patterns + self._file_patterns

    def add_pattern(self, pattern: str) -> bool:
        """Append a standing exclusion. Returns False if it was already present."""
        pattern = pattern.strip()
        if not pattern or pattern in self.exclude_patterns:
            return False
        self.exclude_patterns.append(pattern)
        self._spec = self._compile()
        return True

    def should_ignore(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check a path relative to the project root.

        Args:
            rel_path: Project-relative path, forward or back slashes
            is_dir: Whether the path is a directory (enables 'dir/' patterns)

        Returns:
            True if the entry must be skipped.
        """
        rel_path = rel_path.replace(os.sep, "/").strip("/")
        if not rel_path:
            return False

        if self.ignore_dot_files and any(
            part.startswith(".") for part in rel_path.split("/")
        ):
            return True

        candidate = rel_path + "/" if is_dir else rel_path
        return self._spec.match_file(candidate)
