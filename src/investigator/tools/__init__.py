"""Local (in-process) tool family."""

from .registry import ToolRegistry, Tool, ToolResult
from .file_tools import (
    RepoPaths,
    read_file,
    edit_file,
    list_directory,
    search_files,
    get_repo_index,
)
from .search_tools import grep
from .shell_tools import run_command, run_shell_command
from .catalog import register_local_tools

__all__ = [
    "ToolRegistry",
    "Tool",
    "ToolResult",
    "RepoPaths",
    "read_file",
    "edit_file",
    "list_directory",
    "search_files",
    "get_repo_index",
    "grep",
    "run_command",
    "run_shell_command",
    "register_local_tools",
]
