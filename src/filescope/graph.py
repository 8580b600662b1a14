"""Dependency graph over the file tree: reverse edges and importance scores.

Provides:
  - build_dependent_map: derive every node's dependents from all dependencies
  - calculate_importance: bounded 0-10 centrality score for every file
  - importance_scores: the scoring function on plain in/out degree arrays

Importance formula (files only, self-loops and dangling edges ignored):

    if max_in == 0:  importance = 0 for every file
    else:
        step       = 10 / max_in
        importance = step * in_degree
                     + OUT_DEGREE_SHARE * step * out_degree / max_out
        clamped to [0, 10], rounded to 2 decimals

The out-degree bonus is worth less than one step of in-degree, so a file with
more dependents always outranks one with fewer. The file(s) with the highest
in-degree land on 10, files with no edges on 0.
"""

import logging
import time
from typing import Dict, List, Tuple

import numpy as np
import scipy.sparse

from .models import FileNode

logger = logging.getLogger(__name__)

MIN_IMPORTANCE = 0.0
MAX_IMPORTANCE = 10.0
OUT_DEGREE_SHARE = 0.4


def check_importance(value: float) -> float:
    """Return ``value`` as a float, or raise ValueError outside [0, 10] (NaN included)."""
    value = float(value)
    if not MIN_IMPORTANCE <= value <= MAX_IMPORTANCE:
        raise ValueError(
            f"importance must be between {MIN_IMPORTANCE:g} and {MAX_IMPORTANCE:g}, got {value:g}"
        )
    return value


def build_dependent_map(tree: FileNode) -> None:
    """Recompute ``dependents`` for every node from all ``dependencies``.

    Existing dependents are cleared first, so running it twice gives the same
    result. Edges whose target is not in the tree stay in the source's
    dependencies but produce no dependent entry.
    """
    nodes: Dict[str, FileNode] = {}
    for node in tree.iter_nodes():
        node.dependents = []
        nodes[node.path] = node

    dependents: Dict[str, set] = {}
    for node in tree.iter_files():
        for target in node.dependencies:
            if target in nodes:
                dependents.setdefault(target, set()).add(node.path)

    for target, sources in dependents.items():
        nodes[target].dependents = sorted(sources)


def _adjacency(files: List[FileNode]) -> scipy.sparse.csr_matrix:
    """CSR matrix with [i, j] = 1 when file i depends on file j (i != j)."""
    index = {node.path: i for i, node in enumerate(files)}
    rows, cols = [], []
    for i, node in enumerate(files):
        for target in set(node.dependencies):
            j = index.get(target)
            if j is not None and j != i:
                rows.append(i)
                cols.append(j)

    n = len(files)
    return scipy.sparse.csr_matrix(
        (np.ones(len(rows), dtype=np.float32), (rows, cols)),
        shape=(n, n),
        dtype=np.float32,
    )


def degree_arrays(files: List[FileNode]) -> Tuple[np.ndarray, np.ndarray]:
    """(in_degree, out_degree) per file, in the order given."""
    if not files:
        return np.zeros(0), np.zeros(0)
    adjacency = _adjacency(files)
    in_degree = np.asarray(adjacency.sum(axis=0)).ravel()
    out_degree = np.asarray(adjacency.sum(axis=1)).ravel()
    return in_degree, out_degree


def importance_scores(in_degree: np.ndarray, out_degree: np.ndarray) -> np.ndarray:
    """Apply the importance formula (see module docstring) to degree arrays."""
    scores = np.zeros(len(in_degree), dtype=np.float64)
    if len(in_degree) == 0:
        return scores

    max_in = float(in_degree.max())
    if max_in <= 0:
        return scores

    step = MAX_IMPORTANCE / max_in
    scores = step * in_degree.astype(np.float64)

    max_out = float(out_degree.max()) if len(out_degree) else 0.0
    if max_out > 0:
        scores += OUT_DEGREE_SHARE * step * (out_degree.astype(np.float64) / max_out)

    return np.clip(np.round(scores, 2), MIN_IMPORTANCE, MAX_IMPORTANCE)


def calculate_importance(tree: FileNode) -> None:
    """Score every file in the tree. Always global: one new edge can move the max."""
    start = time.perf_counter()
    files = list(tree.iter_files())
    in_degree, out_degree = degree_arrays(files)
    scores = importance_scores(in_degree, out_degree)

    for node, score in zip(files, scores):
        node.importance = float(score)
    for node in tree.iter_nodes():
        if node.is_directory:
            node.importance = 0.0

    elapsed = time.perf_counter() - start
    if elapsed > 0.5:
        logger.warning("Importance calculation took %.1fms for %d files",
                       elapsed * 1000, len(files))


def recalculate(tree: FileNode) -> None:
    """Dependents then importance: the full derived-state refresh."""
    build_dependent_map(tree)
    calculate_importance(tree)


def directory_importance(directory: FileNode) -> float:
    """Display-only aggregate for a directory: the max of the files below it."""
    return max((f.importance for f in directory.iter_files()), default=0.0)
