"""File operation tools over the local repository."""

import fnmatch
import json
import os
import re
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles

SKIP_DIRS = {".git", "node_modules", ".alpackages", "dist", ".vs"}
MAX_SEARCH_RESULTS = 200


class RepoPaths:
    """Where local tools look for files.

    Relative paths resolve against the first lookup root where they exist,
    falling back to the base path.  Absolute paths are used as-is.
    """

    def __init__(self, base_path, roots: Optional[Sequence] = None, index_path=None):
        self.base_path = Path(base_path).expanduser().resolve()
        unique: List[Path] = []
        for root in roots or [self.base_path]:
            resolved = Path(root).expanduser().resolve()
            if resolved not in unique:
                unique.append(resolved)
        self.roots = unique
        self.index_path = Path(index_path).resolve() if index_path else None

    def resolve(self, file_path: str) -> Path:
        path = Path(file_path).expanduser()
        if path.is_absolute():
            return path.resolve()
        for root in self.roots:
            candidate = (root / path).resolve()
            if candidate.exists():
                return candidate
        return (self.base_path / path).resolve()

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.base_path).as_posix()
        except ValueError:
            return str(path)

    def search_dirs(self, directory: Optional[str]) -> List[Path]:
        return [self.resolve(directory)] if directory else list(self.roots)


async def read_file(
    paths: RepoPaths,
    path: str,
    start_line: Optional[int] = None,
    end_line: Optional[int] = None,
) -> str:
    """Read a file, optionally limited to a 1-based inclusive line range."""
    full_path = paths.resolve(path)
    if not full_path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    async with aiofiles.open(full_path, "r", encoding="utf-8", errors="replace") as f:
        content = await f.read()

    if start_line or end_line:
        lines = content.split("\n")
        start_idx = int(start_line) - 1 if start_line else 0
        end_idx = int(end_line) if end_line else len(lines)
        content = "\n".join(lines[max(0, start_idx):end_idx])

    return content


async def edit_file(paths: RepoPaths, path: str, old_string: str, new_string: str) -> str:
    """Replace the first occurrence of ``old_string`` in a file."""
    full_path = paths.resolve(path)
    if not full_path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    async with aiofiles.open(full_path, "r", encoding="utf-8") as f:
        content = await f.read()

    if old_string not in content:
        raise ValueError(f"Could not find the specified string in {path}")

    new_content = content.replace(old_string, new_string, 1)

    async with aiofiles.open(full_path, "w", encoding="utf-8") as f:
        await f.write(new_content)

    return (
        f"Successfully edited {path}. "
        f"Replaced {len(old_string)} chars with {len(new_string)} chars."
    )


async def list_directory(paths: RepoPaths, path: str) -> str:
    """List a directory as JSON ``[{name, type}]``."""
    full_path = paths.resolve(path)
    if not full_path.exists():
        raise FileNotFoundError(f"Directory not found: {path}")
    if not full_path.is_dir():
        raise NotADirectoryError(f"Not a directory: {path}")

    items = [
        {"name": item.name, "type": "dir" if item.is_dir() else "file"}
        for item in sorted(full_path.iterdir(), key=lambda p: p.name.lower())
    ]
    return json.dumps(items, indent=2)


def glob_to_regex(pattern: str) -> "re.Pattern":
    """``**`` matches across directories, ``*`` within one segment, case-insensitive."""
    pattern = pattern.replace("\\", "/")
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def walk_files(directory: Path):
    """Yield files under ``directory``, skipping build and VCS folders."""
    for root, dirs, files in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        for file_name in sorted(files):
            yield Path(root) / file_name


async def search_files(paths: RepoPaths, pattern: str, directory: Optional[str] = None) -> str:
    """Find files whose name or base-relative path matches a glob."""
    matcher = glob_to_regex(pattern)
    results: List[Path] = []

    for search_dir in paths.search_dirs(directory):
        if not search_dir.is_dir():
            continue
        for file_path in walk_files(search_dir):
            if len(results) >= MAX_SEARCH_RESULTS:
                break
            if file_path in results:
                continue
            if matcher.match(file_path.name) or matcher.match(paths.relative(file_path)):
                results.append(file_path)

    if not results:
        return "No files found matching pattern."
    listing = "\n".join(paths.relative(p) for p in results)
    return f"Found {len(results)} files:\n{listing}"


async def get_repo_index(paths: RepoPaths) -> str:
    """Report the repo index file and the lookup roots local tools search."""
    candidates = [
        paths.index_path,
        Path.cwd() / "configs" / "repo-index.json",
        paths.base_path / "configs" / "repo-index.json",
    ]
    roots = [str(root) for root in paths.roots]

    for candidate in candidates:
        if candidate and candidate.is_file():
            async with aiofiles.open(candidate, "r", encoding="utf-8") as f:
                content = json.loads(await f.read())
            return json.dumps({"path": str(candidate), "roots": roots, "content": content}, indent=2)

    return json.dumps({"path": None, "roots": roots, "error": "repo-index.json not found"}, indent=2)


def matches_any(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(name.lower(), p.lower()) for p in patterns)
