"""Test configuration and fixtures for FileScope.

Provides:
  - an autouse redirect of the data dir so tests never touch ~/.filescope
  - write_files: build a small project on disk from a {relative path: text} dict
  - ts_project: the two-file TypeScript project used across components
"""

import os

import pytest

from filescope.paths import normalize_path


@pytest.fixture(autouse=True)
def _isolate_data_dir(tmp_path, monkeypatch):
    """Redirect saved trees and config.json to a temp dir."""
    data_dir = tmp_path / "filescope-data"
    monkeypatch.setenv("FILESCOPE_DATA_DIR", str(data_dir))
    return data_dir


@pytest.fixture
def data_dir(_isolate_data_dir):
    return str(_isolate_data_dir)


@pytest.fixture
def write_files():
    """Return a helper that writes files under a root and returns the normalized root."""
    def _write(root, files):
        for rel_path, content in files.items():
            path = os.path.join(str(root), rel_path)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        return normalize_path(str(root))
    return _write


@pytest.fixture
def project_dir(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def ts_project(project_dir, write_files):
    """a.ts imports ./b; b.ts imports nothing."""
    return write_files(project_dir, {
        "a.ts": "import { x } from './b';\nconsole.log(x);\n",
        "b.ts": "export const x = 1;\n",
    })
