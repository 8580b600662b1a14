"""Targeted edits to an existing tree, without rescanning.

These functions change tree structure and per-node fields only. Deriving
dependents, rescoring, saving, and locking are the caller's job
(see ProjectContext), so several edits can share one recompute.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFound
from .graph import check_importance
from .ignore import compile_patterns
from .models import FileNode
from .paths import PathTraversalError, is_within, normalize_path, relative_to
from .scanner import apply_extraction, make_node

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"summary", "importance", "dependencies"}


def get_node(tree: FileNode, path: str) -> Optional[FileNode]:
    """Find a node by path (any form normalize_path accepts)."""
    target = normalize_path(path, base=tree.path)
    if not is_within(target, tree.path):
        return None
    for node in tree.iter_nodes():
        if node.path == target:
            return node
    return None


def list_all(tree: FileNode) -> List[FileNode]:
    """Every file node, in tree order."""
    return list(tree.iter_files())


def _find_with_parent(tree: FileNode, target: str) -> Tuple[Optional[FileNode], Optional[FileNode]]:
    stack: List[Tuple[FileNode, Optional[FileNode]]] = [(tree, None)]
    while stack:
        node, parent = stack.pop()
        if node.path == target:
            return node, parent
        # Only descend into directories on the way to the target
        for child in node.children:
            if child.path == target or (child.is_directory and is_within(target, child.path)):
                stack.append((child, node))
    return None, None


def add_file_node(tree: FileNode, file_path: str) -> FileNode:
    """Insert (or re-extract) a file, creating missing directory nodes.

    Raises:
        NotFound: If the file does not exist on disk
        PathTraversalError: If it lies outside the tree root
        IOFailure: If it exists but cannot be read
    """
    path = normalize_path(file_path, base=tree.path)
    if not os.path.isfile(path):
        raise NotFound(f"File not found: {path}", path=path)
    if not is_within(path, tree.path) or path == tree.path:
        raise PathTraversalError(f"{path} is outside the tree root {tree.path}", path=path)

    existing = get_node(tree, path)
    if existing is not None and not existing.is_directory:
        apply_extraction(existing, tree.path)
        logger.debug("Re-extracted existing node %s", path)
        return existing

    # Extract before touching the tree so a read failure leaves it unchanged
    node = make_node(path, False)
    apply_extraction(node, tree.path)

    parent = tree
    parts = relative_to(path, tree.path).split("/")
    for part in parts[:-1]:
        dir_path = normalize_path(os.path.join(parent.path, part))
        child = next((c for c in parent.children if c.path == dir_path), None)
        if child is None:
            child = make_node(dir_path, True)
            parent.children.append(child)
            parent.sort_children()
        elif not child.is_directory:
            raise NotFound(f"{dir_path} is tracked as a file, not a directory", path=dir_path)
        parent = child

    parent.children = [c for c in parent.children if c.path != path]
    parent.children.append(node)
    parent.sort_children()
    logger.debug("Added node %s", path)
    return node


def remove_file_node(tree: FileNode, file_path: str) -> List[str]:
    """Detach a node (and its subtree) and scrub its paths from all edges.

    Returns:
        Every removed path, the node's own first.

    Raises:
        NotFound: If the path is not in the tree
    """
    path = normalize_path(file_path, base=tree.path)
    if path == tree.path:
        raise NotFound(f"Refusing to remove the tree root {path}", path=path)

    node, parent = _find_with_parent(tree, path)
    if node is None or parent is None:
        raise NotFound(f"File not found in tree: {path}", path=path)

    parent.children = [c for c in parent.children if c is not node]
    removed = [n.path for n in node.iter_nodes()]
    gone = set(removed)

    for other in tree.iter_nodes():
        if any(p in gone for p in other.dependencies):
            other.dependencies = [p for p in other.dependencies if p not in gone]
        if any(p in gone for p in other.dependents):
            other.dependents = [p for p in other.dependents if p not in gone]

    logger.debug("Removed %d node(s) under %s", len(removed), path)
    return removed


def pattern_to_gitignore(pattern: str, project_root: str) -> str:
    """Turn an absolute path into a root-anchored pattern; pass globs through."""
    pattern = pattern.strip().replace("\\", "/")
    if os.path.isabs(pattern):
        normalized = normalize_path(pattern)
        if is_within(normalized, project_root) and normalized != normalize_path(project_root):
            return "/" + relative_to(normalized, project_root)
    return pattern


def match_nodes(tree: FileNode, pattern: str) -> List[FileNode]:
    """Nodes whose root-relative path matches a gitignore-style pattern.

    A matched directory stands for its whole subtree, so its descendants are
    not listed separately.
    """
    spec = compile_patterns([pattern_to_gitignore(pattern, tree.path)])
    matches = []
    stack = list(reversed(tree.children))
    while stack:
        node = stack.pop()
        rel = relative_to(node.path, tree.path)
        if spec.match_file(rel + "/" if node.is_directory else rel):
            matches.append(node)
            continue
        stack.extend(reversed(node.children))
    return matches


def update_file_node(tree: FileNode, file_path: str, changes: Dict[str, Any]) -> bool:
    """Apply caller-supplied field changes to one node.

    Supported fields: summary, importance (must lie in [0, 10]), dependencies.

    Returns:
        True if the dependency graph changed and needs a recompute.

    Raises:
        NotFound: If the node does not exist
        ValueError: On an unknown field or bad value
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    node = get_node(tree, file_path)
    if node is None:
        raise NotFound(f"File not found in tree: {file_path}", path=file_path)
    importance = check_importance(changes["importance"]) if "importance" in changes else None

    graph_changed = False
    if "summary" in changes:
        summary = changes["summary"]
        if summary is not None and not isinstance(summary, str):
            raise ValueError("summary must be a string")
        node.summary = summary
    if "importance" in changes:
        node.importance = importance
    if "dependencies" in changes:
        dependencies = sorted({normalize_path(p, base=tree.path) for p in changes["dependencies"]})
        graph_changed = dependencies != node.dependencies
        node.dependencies = dependencies
    return graph_changed


def refresh_file_node(tree: FileNode, file_path: str, force: bool = False) -> bool:
    """Re-extract a tracked file whose contents may have changed.

    Extraction is skipped when the file's mtime matches ``last_modified``.

    Returns:
        True if the node's dependencies changed.

    Raises:
        NotFound: If the node is not tracked or the file is gone
        IOFailure: If it cannot be read
    """
    node = get_node(tree, file_path)
    if node is None or node.is_directory:
        raise NotFound(f"File not found in tree: {file_path}", path=file_path)

    try:
        mtime = os.stat(node.path).st_mtime
    except FileNotFoundError:
        raise NotFound(f"File not found: {node.path}", path=node.path)
    except OSError as e:
        logger.warning("Cannot stat %s: %s", node.path, e)
        mtime = None

    if not force and mtime is not None and mtime == node.last_modified:
        return False

    before = list(node.dependencies)
    apply_extraction(node, tree.path)
    return node.dependencies != before
