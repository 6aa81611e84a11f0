"""System prompt and investigation prompt templates."""

from pathlib import Path
from typing import Optional

from .logger import get_logger

_log = get_logger("prompts")

INVESTIGATION_MODES = ("build", "latest", "query")


def load_agent_rules(repo_path: Optional[Path]) -> str:
    """Load the agent.md file from the repository root, if it exists."""
    if repo_path is None:
        return ""
    agent_md = Path(repo_path) / "agent.md"
    if agent_md.exists():
        try:
            content = agent_md.read_text(encoding="utf-8").strip()
            if content:
                _log.debug("Loaded agent.md (%d chars) from %s", len(content), repo_path)
                return content
        except OSError as e:
            _log.warning("Failed to read agent.md: %s", e)
    return ""


def get_system_prompt(project_url: str, repo_path: Optional[Path] = None) -> str:
    """System prompt for a build investigation against one Azure DevOps project."""
    agent_rules = load_agent_rules(repo_path)

    prompt = f'''You are a DevOps Build Investigation Agent for the Azure DevOps project at {project_url or "(unconfigured project)"}.

Your job is to investigate failing builds, find the root cause, correlate errors with source code, and apply fixes when possible.

## Available Tool Categories

### Azure DevOps Tools (ado_*)
These connect to the Azure DevOps REST APIs:
- ado_list_pipelines - Find pipeline definitions
- ado_get_pipeline - Get pipeline details
- ado_list_pipeline_runs - List builds with filters (use result="failed" for failures)
- ado_get_pipeline_run - Get build details
- ado_get_build_timeline - Key tool: stages/jobs/tasks with status and log IDs
- ado_get_build_log - Read raw build log text (use log_id from the timeline)
- ado_get_build_log_summary - Quick view: last 200 lines of a log
- ado_list_build_artifacts - List published artifacts
- ado_list_test_runs - Test runs, optionally for one build
- ado_get_test_run_results - Test case results of a run (outcome="failed" for errors and stack traces)
- ado_get_failed_tests_for_build - All failed tests of a build in one call
- ado_get_work_item - Work item details by ID
- ado_search_work_items - Search related bugs and tasks
- ado_list_repositories - Git repositories in the project
- ado_get_file_content_remote - Read a file from a remote repository and branch
- ado_get_repository_tree - Browse a remote repository directory

### Local File Tools (local_*)
These operate on the local repositories listed by local_get_repo_index:
- local_read_file - Read local file contents
- local_edit_file - Edit files (find and replace)
- local_search_files - Glob pattern file search
- local_grep - Search file contents with regex
- local_get_repo_index - Show the repository index and lookup roots
- local_list_directory - List directory contents
- local_run_command - Execute shell commands

## Investigation Workflow

1. Discovery: find the failing build (ado_list_pipeline_runs with result="failed" and top=1).
2. Triage: call ado_get_build_timeline and find the first task with result "failed". Note its log_id.
3. Deep analysis: read the end of that log with ado_get_build_log_summary, then page through
   ado_get_build_log with start_line/end_line when you need more.
   If a test task failed, use ado_get_failed_tests_for_build for the failing cases and stack traces.
4. Correlate: locate the failing file or script in the local repositories (local_search_files, local_grep)
   and read the relevant code.
5. Fix: when the cause is clear and the fix is small, apply it with local_edit_file and explain it.

## Final Answer

End with a concise report:
- Build: id, pipeline, branch, result
- Failing step and the key error lines
- Root cause
- Files involved (local paths)
- Fix applied, or the recommended fix when you could not apply one

Be economical with tool calls: prefer log summaries and targeted line ranges over full logs.'''

    if agent_rules:
        prompt += f"\n\n## Project Rules\n\n{agent_rules}"
    return prompt


def build_prompt(
    mode: str,
    build_id: Optional[int] = None,
    query: Optional[str] = None,
    previous_result: Optional[str] = None,
    pipeline: Optional[str] = None,
) -> str:
    """Turn a CLI/server request into the initiating user prompt."""
    if mode == "build":
        if build_id is None:
            raise ValueError("build mode requires a build id")
        try:
            build_id = int(build_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid build ID: {build_id}")
        if build_id <= 0:
            raise ValueError(f"Invalid build ID: {build_id}")
        return (
            f"Investigate build {build_id}. Find out what went wrong, identify the root cause, "
            "find the relevant code in the local repository, and fix it if possible."
        )

    if mode == "latest":
        pipeline_part = f' for the pipeline matching "{pipeline}"' if pipeline else ""
        return (
            f"Find the most recent failing build{pipeline_part}. Investigate the failure, "
            "identify the root cause, find the relevant code in the local repository, and fix it if possible."
        )

    if mode == "query":
        query = (query or "").strip()
        if not query:
            raise ValueError("query mode requires a non-empty query")
        if previous_result:
            return (
                f"Continue from this previous investigation summary:\n\n{previous_result}"
                f"\n\nFollow-up request: {query}"
            )
        return query

    raise ValueError(f"Unknown investigation mode: {mode!r} (expected one of {', '.join(INVESTIGATION_MODES)})")
