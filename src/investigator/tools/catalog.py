"""The local tool family: repository file tools bound to one set of paths."""

from functools import partial
from typing import Optional

from .file_tools import RepoPaths, edit_file, get_repo_index, list_directory, read_file, search_files
from .registry import Tool, ToolRegistry
from .search_tools import grep
from .shell_tools import run_command


def register_local_tools(paths: RepoPaths, registry: Optional[ToolRegistry] = None) -> ToolRegistry:
    """Register every local tool, bound to ``paths``, and return the registry."""
    registry = registry or ToolRegistry()

    registry.register(Tool(
        name="read_file",
        description=(
            "Read the contents of a file from the local repository. "
            "Path is relative to the repo base path or absolute."
        ),
        parameters={
            "path": {"type": "string", "description": "File path (relative to repo base or absolute)"},
            "start_line": {"type": "integer", "description": "Start reading from this line (1-based, optional)"},
            "end_line": {"type": "integer", "description": "Stop reading at this line (1-based, optional)"},
        },
        function=partial(read_file, paths),
        required_params=["path"],
    ))

    registry.register(Tool(
        name="edit_file",
        description=(
            "Edit a file by replacing a specific string with another. "
            "The old_string must exist exactly in the file; the first occurrence is replaced."
        ),
        parameters={
            "path": {"type": "string", "description": "File path (relative to repo base or absolute)"},
            "old_string": {"type": "string", "description": "The exact string to find and replace"},
            "new_string": {"type": "string", "description": "The replacement string"},
        },
        function=partial(edit_file, paths),
        required_params=["path", "old_string", "new_string"],
    ))

    registry.register(Tool(
        name="search_files",
        description="Search for files matching a glob pattern in the local repository. Returns file paths.",
        parameters={
            "pattern": {"type": "string", "description": "Glob pattern (e.g. '**/*.al', 'src/**/app.json')"},
            "directory": {"type": "string", "description": "Directory to search in (relative to repo base, optional)"},
        },
        function=partial(search_files, paths),
        required_params=["pattern"],
    ))

    registry.register(Tool(
        name="grep",
        description=(
            "Search file contents for a regex pattern. "
            "Returns matching lines with file paths and line numbers."
        ),
        parameters={
            "pattern": {"type": "string", "description": "Regex pattern to search for"},
            "directory": {"type": "string", "description": "Directory to search in (relative to repo base, optional)"},
            "file_pattern": {"type": "string", "description": "File glob pattern to filter (e.g. '*.al', '*.ps1')"},
            "max_results": {"type": "integer", "description": "Maximum number of matches to return (default: 50)"},
        },
        function=partial(grep, paths),
        required_params=["pattern"],
    ))

    registry.register(Tool(
        name="get_repo_index",
        description="Get the configured repository index file content and lookup roots used for local code search.",
        parameters={},
        function=partial(get_repo_index, paths),
    ))

    registry.register(Tool(
        name="list_directory",
        description="List the contents of a directory in the local repository.",
        parameters={
            "path": {"type": "string", "description": "Directory path (relative to repo base or absolute)"},
        },
        function=partial(list_directory, paths),
        required_params=["path"],
    ))

    registry.register(Tool(
        name="run_command",
        description="Execute a shell command in the local repository. Use for git operations, build checks, etc.",
        parameters={
            "command": {"type": "string", "description": "The shell command to execute"},
            "cwd": {"type": "string", "description": "Working directory (relative to repo base, optional)"},
        },
        function=partial(run_command, paths),
        required_params=["command"],
    ))

    return registry
