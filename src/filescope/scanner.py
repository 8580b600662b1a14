"""Directory scanner: builds the FileNode tree for a project root.

The walk itself is sequential and creates every node up front, in tree
order. Dependency extraction (file reads + parsing) is fanned out to a
bounded thread pool and each result is written onto the node it was
submitted for, so completion order never affects the tree shape.
"""

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .errors import IOFailure, NotFound
from .extractor import extract_file
from .ignore import IgnoreFilter
from .models import FileNode
from .paths import normalize_path, real_path, relative_to

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


@dataclass
class ScanStats:
    """Counters for one scan."""
    directories: int = 0
    files: int = 0
    skipped: int = 0
    failed: int = 0
    time_elapsed: float = 0.0


def make_node(path: str, is_directory: bool) -> FileNode:
    return FileNode(path=path, name=os.path.basename(path) or path, is_directory=is_directory)


def apply_extraction(node: FileNode, project_root: str) -> None:
    """Populate ``node``'s dependency fields from disk.

    Raises:
        IOFailure: If the file cannot be read
    """
    result = extract_file(node.path, project_root)
    node.dependencies = result.dependencies
    node.unresolved_dependencies = result.unresolved
    node.last_modified = result.last_modified


class Scanner:
    """Walks one project root. Use scan_directory for the one-shot form."""

    def __init__(
        self,
        root: str,
        ignore_filter: Optional[IgnoreFilter] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.root = normalize_path(root)
        self.ignore_filter = ignore_filter or IgnoreFilter(self.root)
        self.max_workers = max(1, max_workers)
        self.stats = ScanStats()
        self._visited: Set[str] = set()

    def scan(self) -> FileNode:
        """Build the tree. Raises NotFound if the root is not a directory."""
        if not os.path.isdir(self.root):
            raise NotFound(f"Directory not found: {self.root}", path=self.root)

        start = time.perf_counter()
        tree = make_node(self.root, True)
        pending: List[Tuple[FileNode, FileNode]] = []  # (parent, file node)

        self._visited = {real_path(self.root)}
        self._walk(tree, pending)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures: List[Tuple[FileNode, FileNode, Future]] = [
                (parent, node, pool.submit(apply_extraction, node, self.root))
                for parent, node in pending
            ]
            unreadable = []
            for parent, node, future in futures:
                try:
                    future.result()
                except IOFailure as e:
                    logger.warning("Skipping unreadable file %s: %s", node.path, e)
                    unreadable.append((parent, node))

        for parent, node in unreadable:
            parent.children = [c for c in parent.children if c is not node]
            self.stats.files -= 1
            self.stats.failed += 1

        self.stats.time_elapsed = time.perf_counter() - start
        logger.info(
            "Scanned %s: %d directories, %d files, %d skipped, %d failed in %.2fs",
            self.root, self.stats.directories, self.stats.files,
            self.stats.skipped, self.stats.failed, self.stats.time_elapsed,
        )
        return tree

    def _walk(self, directory: FileNode, pending: List[Tuple[FileNode, FileNode]]) -> None:
        stack = [directory]
        while stack:
            current = stack.pop()
            self.stats.directories += 1
            try:
                with os.scandir(current.path) as it:
                    entries = list(it)
            except OSError as e:
                logger.warning("Cannot list directory %s: %s", current.path, e)
                self.stats.failed += 1
                continue

            for entry in entries:
                child = self._visit_entry(entry, current.path)
                if child is None:
                    continue
                current.children.append(child)
                if not child.is_directory:
                    pending.append((current, child))

            current.sort_children()
            stack.extend(reversed([c for c in current.children if c.is_directory]))

    def _visit_entry(self, entry: os.DirEntry, parent_path: str) -> Optional[FileNode]:
        path = normalize_path(os.path.join(parent_path, entry.name))
        try:
            is_dir = entry.is_dir()
            is_file = entry.is_file()
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            self.stats.failed += 1
            return None

        if not is_dir and not is_file:
            # Broken symlink, socket, device...
            logger.debug("Skipping non-regular entry %s", path)
            self.stats.skipped += 1
            return None

        if self.ignore_filter.should_ignore(relative_to(path, self.root), is_dir=is_dir):
            self.stats.skipped += 1
            return None

        if is_dir:
            try:
                key = real_path(path)
            except (OSError, RuntimeError) as e:
                logger.warning("Cannot resolve %s: %s", path, e)
                self.stats.failed += 1
                return None
            if key in self._visited:
                logger.warning("Skipping symlink loop at %s", path)
                self.stats.skipped += 1
                return None
            self._visited.add(key)
            return make_node(path, True)

        self.stats.files += 1
        return make_node(path, False)


def scan_directory(
    root: str,
    ignore_filter: Optional[IgnoreFilter] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> FileNode:
    """Scan ``root`` and return the populated tree (dependents not yet derived)."""
    return Scanner(root, ignore_filter=ignore_filter, max_workers=max_workers).scan()
