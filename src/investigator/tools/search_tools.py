"""Content search over the local repository."""

import re
from pathlib import Path
from typing import List, Optional

import aiofiles

from .file_tools import RepoPaths, matches_any, walk_files

DEFAULT_FILE_PATTERNS = ("*.al", "*.ps1", "*.yml", "*.yaml", "*.json", "*.ts", "*.js", "*.py", "*.cs")

# Files larger than this are skipped; build outputs and binaries are not worth scanning.
MAX_GREP_FILE_BYTES = 2 * 1024 * 1024


async def _grep_file(file_path: Path, regex: "re.Pattern", limit: int) -> List[str]:
    matches: List[str] = []
    try:
        if file_path.stat().st_size > MAX_GREP_FILE_BYTES:
            return matches
        async with aiofiles.open(file_path, "r", encoding="utf-8", errors="replace") as f:
            line_number = 0
            async for line in f:
                line_number += 1
                if "\x00" in line:
                    # Binary file
                    return []
                if regex.search(line):
                    matches.append(f"{file_path}:{line_number}:{line.strip()}")
                    if len(matches) >= limit:
                        break
    except (PermissionError, OSError):
        return []
    return matches


async def grep(
    paths: RepoPaths,
    pattern: str,
    directory: Optional[str] = None,
    file_pattern: Optional[str] = None,
    max_results: int = 50,
) -> str:
    """Search file contents for a regex; one ``path:line:text`` per match."""
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValueError(f"Invalid regex pattern {pattern!r}: {e}") from e

    max_results = max(1, int(max_results or 50))
    file_patterns = [file_pattern] if file_pattern else list(DEFAULT_FILE_PATTERNS)

    results: List[str] = []
    seen = set()
    for search_dir in paths.search_dirs(directory):
        if not search_dir.is_dir():
            continue
        for file_path in walk_files(search_dir):
            if len(results) >= max_results:
                break
            if not matches_any(file_path.name, file_patterns):
                continue
            for match in await _grep_file(file_path, regex, max_results - len(results)):
                if match not in seen:
                    seen.add(match)
                    results.append(match)

    return "\n".join(results) if results else "No matches found."
