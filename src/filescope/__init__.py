"""FileScope: dependency-aware file tree and importance ranking for codebases.

Scans a project, extracts cross-file dependencies, ranks files by how much of
the codebase relies on them, and keeps the model in sync with the filesystem.
Exposed to agents as an MCP server.
"""

__version__ = "0.1.0"
