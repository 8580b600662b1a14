"""MCP server implementation for FileScope.

Exposes 20 tools via stdio transport:
  Project:
  - set_project_path: Scan (or reload) a project and make it active
  - list_files / debug_list_all_files: The tree, or a flat list of file paths
  - read_file_content: Read a file inside the project

  Ranking and summaries:
  - get_file_importance, find_important_files, recalculate_importance
  - set_file_importance, get_file_summary, set_file_summary

  Saved trees:
  - list_saved_trees, create_file_tree, select_file_tree, delete_file_tree

  Tree edits:
  - add_file_node, remove_file_node, exclude_and_remove

  File watching:
  - toggle_file_watching, get_file_watching_status, update_file_watching_config

Every tool except set_project_path returns an error until a project is set.
Tools return JSON on success and an "Error: ..." string on failure.
"""

import asyncio
import json
import logging
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .context import ProjectContext
from .errors import FileScopeError
from .paths import resolve_user_path

logger = logging.getLogger(__name__)

PROJECT_NOT_SET = (
    "Error: Project path not set. Call 'set_project_path' or start the server with --base-dir."
)

# Set during create_server
_context: Optional[ProjectContext] = None


def _project_error() -> Optional[str]:
    if _context is None or not _context.is_initialized:
        return PROJECT_NOT_SET
    return None


def _error(e: Exception) -> str:
    return f"Error: {e}"


def create_server(base_dir: Optional[str] = None, data_dir: Optional[str] = None) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        base_dir: Optional project to initialize right away
        data_dir: Where trees and config.json are stored (default ~/.filescope)
    """
    global _context

    if _context is not None:
        _context.shutdown()
    _context = ProjectContext(data_dir)

    if base_dir:
        try:
            _context.initialize(base_dir)
            logger.info("Initialized project at %s", _context.project_root)
        except FileScopeError as e:
            logger.warning("Could not initialize %s: %s", base_dir, e)
    elif _context.app_config.base_directory:
        logger.info("Last project was %s; waiting for set_project_path",
                    _context.app_config.base_directory)

    mcp = FastMCP("filescope")

    # --- Project ---

    @mcp.tool()
    async def set_project_path(path: str) -> str:
        """Sets the project directory to analyze."""
        try:
            config = await asyncio.to_thread(_context.initialize, path)
            files = await asyncio.to_thread(_context.list_all)
            return json.dumps({
                "message": f"Project path set to {config.base_directory}",
                "config": config.to_dict(),
                "fileCount": len(files),
            }, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("set_project_path error")
            return _error(e)

    @mcp.tool()
    async def list_files() -> str:
        """List all files in the project with their importance rankings."""
        err = _project_error()
        if err:
            return err
        try:
            return json.dumps(_context.tree_document(), indent=2)
        except Exception as e:
            logger.exception("list_files error")
            return _error(e)

    @mcp.tool()
    async def debug_list_all_files() -> str:
        """List every tracked file path (flat)."""
        err = _project_error()
        if err:
            return err
        try:
            paths = [node.path for node in _context.list_all()]
            return json.dumps({"count": len(paths), "files": paths}, indent=2)
        except Exception as e:
            logger.exception("debug_list_all_files error")
            return _error(e)

    @mcp.tool()
    async def read_file_content(filepath: str) -> str:
        """Read the content of a specific file inside the project."""
        err = _project_error()
        if err:
            return err
        try:
            path = resolve_user_path(_context.project_root, filepath)

            def _read() -> str:
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    return f.read()

            return await asyncio.to_thread(_read)
        except FileScopeError as e:
            return _error(e)
        except OSError as e:
            return f"Error: Failed to read file {filepath}: {e}"

    # --- Ranking and summaries ---

    @mcp.tool()
    async def get_file_importance(filepath: str) -> str:
        """Get the importance ranking of a specific file."""
        err = _project_error()
        if err:
            return err
        try:
            node = _context.get_node(filepath)
            if node is None:
                return f"Error: File not found: {filepath}"
            return json.dumps({
                "path": node.path,
                "importance": node.importance,
                "dependencies": node.dependencies,
                "unresolvedDependencies": node.unresolved_dependencies,
                "dependents": node.dependents,
                "summary": node.summary,
            }, indent=2)
        except Exception as e:
            logger.exception("get_file_importance error")
            return _error(e)

    @mcp.tool()
    async def find_important_files(limit: int = 10, min_importance: float = 0.0) -> str:
        """Find the most important files in the project."""
        err = _project_error()
        if err:
            return err
        try:
            return json.dumps(_context.find_important_files(limit, min_importance), indent=2)
        except Exception as e:
            logger.exception("find_important_files error")
            return _error(e)

    @mcp.tool()
    async def recalculate_importance() -> str:
        """Recalculate importance values for all files based on dependencies."""
        err = _project_error()
        if err:
            return err
        try:
            stats = await asyncio.to_thread(_context.recalculate)
            return json.dumps({"message": "Importance values recalculated", **stats}, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("recalculate_importance error")
            return _error(e)

    @mcp.tool()
    async def set_file_importance(filepath: str, importance: float) -> str:
        """Manually set the importance ranking (0-10) of a specific file."""
        err = _project_error()
        if err:
            return err
        try:
            node = await asyncio.to_thread(_context.set_importance, filepath, importance)
            return json.dumps({
                "message": f"Importance updated for {filepath}",
                "path": node.path,
                "importance": node.importance,
            }, indent=2)
        except (FileScopeError, ValueError) as e:
            return _error(e)
        except Exception as e:
            logger.exception("set_file_importance error")
            return _error(e)

    @mcp.tool()
    async def get_file_summary(filepath: str) -> str:
        """Get the summary of a specific file."""
        err = _project_error()
        if err:
            return err
        try:
            node = _context.get_node(filepath)
            if node is None:
                return f"Error: File not found: {filepath}"
            if not node.summary:
                return f"No summary available for {filepath}"
            return json.dumps({"path": node.path, "summary": node.summary}, indent=2)
        except Exception as e:
            logger.exception("get_file_summary error")
            return _error(e)

    @mcp.tool()
    async def set_file_summary(filepath: str, summary: str) -> str:
        """Set the summary of a specific file."""
        err = _project_error()
        if err:
            return err
        try:
            node = await asyncio.to_thread(_context.set_summary, filepath, summary)
            return json.dumps({
                "message": f"Summary updated for {filepath}",
                "path": node.path,
                "summary": node.summary,
            }, indent=2)
        except (FileScopeError, ValueError) as e:
            return _error(e)
        except Exception as e:
            logger.exception("set_file_summary error")
            return _error(e)

    # --- Saved trees ---

    @mcp.tool()
    async def list_saved_trees() -> str:
        """List all saved file trees."""
        err = _project_error()
        if err:
            return err
        try:
            return json.dumps(_context.list_saved_trees(), indent=2)
        except Exception as e:
            logger.exception("list_saved_trees error")
            return _error(e)

    @mcp.tool()
    async def create_file_tree(filename: str, base_directory: str) -> str:
        """Scan a directory into a new saved tree and switch to it."""
        err = _project_error()
        if err:
            return err
        try:
            config = await asyncio.to_thread(_context.create_file_tree, filename, base_directory)
            return json.dumps({
                "message": f"File tree created and stored in {config.filename}",
                "config": config.to_dict(),
            }, indent=2)
        except FileScopeError as e:
            return f"Error: Failed to create file tree: {e}"
        except Exception as e:
            logger.exception("create_file_tree error")
            return _error(e)

    @mcp.tool()
    async def select_file_tree(filename: str) -> str:
        """Select an existing saved file tree to work with."""
        err = _project_error()
        if err:
            return err
        try:
            config = await asyncio.to_thread(_context.select_file_tree, filename)
            return json.dumps({
                "message": f"File tree loaded from {filename}",
                "config": config.to_dict(),
            }, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("select_file_tree error")
            return _error(e)

    @mcp.tool()
    async def delete_file_tree(filename: str) -> str:
        """Delete a saved file tree."""
        err = _project_error()
        if err:
            return err
        try:
            path = await asyncio.to_thread(_context.delete_file_tree, filename)
            return json.dumps({"message": f"Successfully deleted {path}"}, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("delete_file_tree error")
            return _error(e)

    # --- Tree edits ---

    @mcp.tool()
    async def add_file_node(filepath: str) -> str:
        """Add a file to the tree and recompute importance."""
        err = _project_error()
        if err:
            return err
        try:
            node = await asyncio.to_thread(_context.add_node, filepath)
            return json.dumps({
                "message": f"Added {node.path}",
                "node": node.to_dict(),
            }, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("add_file_node error")
            return _error(e)

    @mcp.tool()
    async def remove_file_node(filepath: str) -> str:
        """Remove a file or directory from the tree and recompute importance."""
        err = _project_error()
        if err:
            return err
        try:
            removed = await asyncio.to_thread(_context.remove_node, filepath)
            return json.dumps({
                "message": f"Removed {len(removed)} node(s)",
                "removed": removed,
            }, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("remove_file_node error")
            return _error(e)

    @mcp.tool()
    async def exclude_and_remove(filepath: str) -> str:
        """Exclude a file, directory, or glob pattern and remove its nodes."""
        err = _project_error()
        if err:
            return err
        try:
            removed = await asyncio.to_thread(_context.exclude_and_remove, filepath)
            return json.dumps({
                "message": f"Excluded {filepath} and removed {len(removed)} node(s)",
                "removed": removed,
            }, indent=2)
        except (FileScopeError, ValueError) as e:
            return _error(e)
        except Exception as e:
            logger.exception("exclude_and_remove error")
            return _error(e)

    # --- File watching ---

    @mcp.tool()
    async def toggle_file_watching() -> str:
        """Toggle file watching on/off."""
        err = _project_error()
        if err:
            return err
        try:
            enabled = await asyncio.to_thread(_context.toggle_watching)
            return json.dumps({
                "message": f"File watching {'enabled' if enabled else 'disabled'}",
                "enabled": enabled,
            }, indent=2)
        except FileScopeError as e:
            return _error(e)
        except Exception as e:
            logger.exception("toggle_file_watching error")
            return _error(e)

    @mcp.tool()
    async def get_file_watching_status() -> str:
        """Get the current status of file watching."""
        err = _project_error()
        if err:
            return err
        try:
            return json.dumps(_context.watching_status(), indent=2)
        except Exception as e:
            logger.exception("get_file_watching_status error")
            return _error(e)

    @mcp.tool()
    async def update_file_watching_config(config: dict) -> str:
        """Update file watching options (camelCase keys, e.g. debounceMs)."""
        err = _project_error()
        if err:
            return err
        try:
            updated = await asyncio.to_thread(lambda: _context.update_watching_config(**config))
            return json.dumps({
                "message": "File watching configuration updated",
                "config": updated.to_dict(),
            }, indent=2)
        except (FileScopeError, ValueError) as e:
            return _error(e)
        except Exception as e:
            logger.exception("update_file_watching_config error")
            return _error(e)

    return mcp


async def run_server(base_dir: Optional[str] = None, data_dir: Optional[str] = None) -> int:
    """Run the MCP server on stdio transport."""
    mcp = create_server(base_dir, data_dir)

    try:
        await mcp.run_stdio_async()
    except Exception:
        logger.exception("Server error")
        return 1
    finally:
        if _context is not None:
            _context.shutdown()

    return 0
