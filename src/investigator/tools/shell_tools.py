"""Shell command execution tools."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from .file_tools import RepoPaths

MAX_OUTPUT_CHARS = 5 * 1024 * 1024


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    return_code: int
    timed_out: bool = False

    def to_message(self) -> str:
        if self.return_code == 0 and not self.timed_out:
            return self.stdout or "(no output)"
        parts = [f"Command failed (exit code {self.return_code})"]
        if self.stdout.strip():
            parts.append(f"stdout:\n{self.stdout}")
        if self.stderr.strip():
            parts.append(f"stderr:\n{self.stderr}")
        return "\n".join(parts)


async def run_shell_command(command: str, cwd: Optional[str] = None, timeout: float = 60.0) -> ShellResult:
    """Execute a shell command, killing it after ``timeout`` seconds."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ShellResult(
            stdout="",
            stderr=f"Command timed out after {timeout:g} seconds",
            return_code=-1,
            timed_out=True,
        )

    return ShellResult(
        stdout=stdout.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS],
        stderr=stderr.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS],
        return_code=process.returncode or 0,
    )


async def run_command(paths: RepoPaths, command: str, cwd: Optional[str] = None, timeout: float = 60.0) -> str:
    """Run a command in the repository (or ``cwd`` relative to it)."""
    directory = paths.resolve(cwd) if cwd else paths.base_path
    if not directory.is_dir():
        raise NotADirectoryError(f"Working directory not found: {cwd}")
    result = await run_shell_command(command, cwd=str(directory), timeout=timeout)
    return result.to_message()
