"""
Azure DevOps tool server

A Model Context Protocol server exposing build and pipeline data to the
investigation agent, which launches it as a child process.

Transport: stdio only.
Logs:      All application logs go to stderr to avoid corrupting the JSON-RPC stream.
"""

import json
import logging
import sys
from typing import Any, Dict, List, Optional

import httpx
from fastmcp import FastMCP

from .client import AzureDevOpsClient, DevOpsAPIError, DevOpsSettings

logger = logging.getLogger("investigator.devops")

MAX_LOG_CHARS = 50_000
SUMMARY_TAIL_LINES = 200
TIMELINE_RECORD_TYPES = ("Stage", "Job", "Task")
TEST_OUTCOMES = ("passed", "failed", "notExecuted", "inconclusive", "timeout", "aborted", "blocked")

INSTRUCTIONS = (
    "Azure DevOps build investigation tools. "
    "Start with list_pipeline_runs (result='failed') to find a failing build, "
    "then get_build_timeline to locate the failed task and its log_id, "
    "then get_build_log_summary or get_build_log to read the error. "
    "For test failures use get_failed_tests_for_build; related work items and "
    "remote repository files are also available."
)


def _handle_error(exc: Exception, context: str) -> str:
    """Convert common exceptions into readable strings for the AI."""
    if isinstance(exc, DevOpsAPIError):
        if exc.status == 401:
            return f"[{context}] Authentication failed (401). Check ADO_PAT."
        if exc.status == 404:
            return f"[{context}] Not found (404). Verify the IDs passed in."
        return f"[{context}] Azure DevOps API error {exc.status}: {exc.body[:300]}"
    if isinstance(exc, httpx.HTTPError):
        return f"[{context}] Connection error: {exc}"
    return f"[{context}] Unexpected error: {exc}"


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def _display_name(identity: Optional[Dict[str, Any]]) -> Optional[str]:
    return (identity or {}).get("displayName")


def _test_run(run: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": run.get("id"),
        "name": run.get("name"),
        "state": run.get("state"),
        "outcome": run.get("outcome"),
        "totalTests": run.get("totalTests"),
        "passedTests": run.get("passedTests"),
        "incompleteTests": run.get("incompleteTests"),
        "buildId": (run.get("build") or {}).get("id"),
        "startedDate": run.get("startedDate"),
        "completedDate": run.get("completedDate"),
    }


def _test_result(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": result.get("id"),
        "testCaseTitle": result.get("testCaseTitle"),
        "automatedTestName": result.get("automatedTestName"),
        "automatedTestStorage": result.get("automatedTestStorage"),
        "outcome": result.get("outcome"),
        "state": result.get("state"),
        "durationInMs": result.get("durationInMs"),
        "startedDate": result.get("startedDate"),
        "completedDate": result.get("completedDate"),
        "errorMessage": result.get("errorMessage"),
        "stackTrace": result.get("stackTrace"),
    }


def summarize_timeline(build_id: int, timeline: Dict[str, Any]) -> Dict[str, Any]:
    """Stage/Job/Task records in execution order plus the failed steps."""
    records = [
        r for r in timeline.get("records") or []
        if r.get("type") in TIMELINE_RECORD_TYPES
    ]
    records.sort(key=lambda r: r.get("order") or 0)

    simplified = [
        {
            "id": r.get("id"),
            "parentId": r.get("parentId"),
            "type": r.get("type"),
            "name": r.get("name"),
            "state": r.get("state"),
            "result": r.get("result"),
            "startTime": r.get("startTime"),
            "finishTime": r.get("finishTime"),
            "log_id": (r.get("log") or {}).get("id"),
            "errorCount": r.get("errorCount"),
            "warningCount": r.get("warningCount"),
            "issues": [
                {"type": i.get("type"), "message": i.get("message")}
                for i in r.get("issues") or []
            ],
            "workerName": r.get("workerName"),
        }
        for r in records
    ]
    failed = [r for r in simplified if r["result"] == "failed"]

    return {
        "buildId": build_id,
        "totalRecords": len(simplified),
        "failedRecords": len(failed),
        "failedSteps": [
            {
                "type": f["type"],
                "name": f["name"],
                "log_id": f["log_id"],
                "errorCount": f["errorCount"],
                "issues": f["issues"],
            }
            for f in failed
        ],
        "allRecords": simplified,
    }


class DevOpsTools:
    """The tool implementations, bound to one REST client."""

    def __init__(self, client: AzureDevOpsClient):
        self.client = client

    async def list_pipelines(self, name_filter: Optional[str] = None, top: Optional[int] = None) -> str:
        """List pipeline definitions in the project.

        Args:
            name_filter: Case-insensitive substring the pipeline name must contain.
            top: Maximum number of pipelines to return.
        """
        try:
            pipelines = await self.client.list_pipelines(name_filter, top)
        except Exception as exc:
            return _handle_error(exc, "list_pipelines")
        return _dump([
            {"id": p.get("id"), "name": p.get("name"), "folder": p.get("folder")}
            for p in pipelines
        ])

    async def get_pipeline(self, pipeline_id: int) -> str:
        """Get details of a specific pipeline definition by ID.

        Args:
            pipeline_id: The pipeline definition ID.
        """
        try:
            pipeline = await self.client.get_pipeline(pipeline_id)
        except Exception as exc:
            return _handle_error(exc, "get_pipeline")
        return _dump(pipeline)

    async def list_pipeline_runs(
        self,
        pipeline_id: Optional[int] = None,
        branch_name: Optional[str] = None,
        result: Optional[str] = None,
        status: Optional[str] = None,
        top: int = 10,
    ) -> str:
        """List pipeline runs (builds), newest first. Use result='failed' to find failing builds.

        Args:
            pipeline_id: Filter by pipeline definition ID.
            branch_name: Filter by branch, e.g. 'refs/heads/master'.
            result: succeeded, partiallySucceeded, failed, canceled or none.
            status: none, inProgress, completed, cancelling, postponed, notStarted or all.
            top: Maximum number of runs to return (default 10).
        """
        try:
            builds = await self.client.list_builds(
                definitions=pipeline_id,
                branch_name=branch_name,
                result_filter=result,
                status_filter=status,
                top=top or 10,
            )
        except Exception as exc:
            return _handle_error(exc, "list_pipeline_runs")
        return _dump([
            {
                "id": b.get("id"),
                "buildNumber": b.get("buildNumber"),
                "status": b.get("status"),
                "result": b.get("result"),
                "pipeline": (b.get("definition") or {}).get("name"),
                "sourceBranch": b.get("sourceBranch"),
                "startTime": b.get("startTime"),
                "finishTime": b.get("finishTime"),
                "requestedBy": _display_name(b.get("requestedFor")) or _display_name(b.get("requestedBy")),
                "reason": b.get("reason"),
            }
            for b in builds
        ])

    async def get_pipeline_run(self, build_id: int) -> str:
        """Get detailed information about one build by its build ID.

        Args:
            build_id: The build ID.
        """
        try:
            build = await self.client.get_build(build_id)
        except Exception as exc:
            return _handle_error(exc, "get_pipeline_run")

        parameters = build.get("parameters")
        if isinstance(parameters, str):
            try:
                parameters = json.loads(parameters)
            except json.JSONDecodeError:
                pass
        definition = build.get("definition") or {}
        return _dump({
            "id": build.get("id"),
            "buildNumber": build.get("buildNumber"),
            "status": build.get("status"),
            "result": build.get("result"),
            "pipeline": definition.get("name"),
            "pipelineId": definition.get("id"),
            "sourceBranch": build.get("sourceBranch"),
            "sourceVersion": build.get("sourceVersion"),
            "queueTime": build.get("queueTime"),
            "startTime": build.get("startTime"),
            "finishTime": build.get("finishTime"),
            "requestedFor": _display_name(build.get("requestedFor")),
            "requestedBy": _display_name(build.get("requestedBy")),
            "reason": build.get("reason"),
            "parameters": parameters,
        })

    async def get_build_timeline(self, build_id: int) -> str:
        """Stages, jobs and tasks of a build with status, result and log IDs.

        The key tool for finding which step failed and the log_id needed to
        read its error.

        Args:
            build_id: The build ID.
        """
        try:
            timeline = await self.client.get_build_timeline(build_id)
        except Exception as exc:
            return _handle_error(exc, "get_build_timeline")
        return _dump(summarize_timeline(build_id, timeline))

    async def get_build_log(
        self,
        build_id: int,
        log_id: int,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
    ) -> str:
        """Read the raw text of one build log, optionally a line range.

        Args:
            build_id: The build ID.
            log_id: The log ID from the timeline record.
            start_line: Start line (1-based). Omit to start from the beginning.
            end_line: End line (1-based). Omit to read to the end.
        """
        try:
            text = await self.client.get_build_log(build_id, log_id, start_line, end_line)
        except Exception as exc:
            return _handle_error(exc, "get_build_log")

        if len(text) > MAX_LOG_CHARS:
            text = (
                text[:MAX_LOG_CHARS]
                + f"\n\n... [TRUNCATED - showing first {MAX_LOG_CHARS} chars of {len(text)}. "
                "Use start_line/end_line to read specific sections.]"
            )
        lines = f" (lines {start_line}-{end_line or 'end'})" if start_line else ""
        return f"Build {build_id}, Log {log_id}{lines}:\n\n{text}"

    async def get_build_log_summary(self, build_id: int, log_id: int) -> str:
        """The last 200 lines of a build log, where errors usually appear.

        Args:
            build_id: The build ID.
            log_id: The log ID from the timeline record.
        """
        try:
            text = await self.client.get_build_log(build_id, log_id)
        except Exception as exc:
            return _handle_error(exc, "get_build_log_summary")

        lines = text.split("\n")
        tail = lines[-SUMMARY_TAIL_LINES:]
        return (
            f"Build {build_id}, Log {log_id} (last {len(tail)} of {len(lines)} lines):\n\n"
            + "\n".join(tail)
        )

    async def list_build_artifacts(self, build_id: int) -> str:
        """List the artifacts a build published.

        Args:
            build_id: The build ID.
        """
        try:
            artifacts = await self.client.list_build_artifacts(build_id)
        except Exception as exc:
            return _handle_error(exc, "list_build_artifacts")
        return _dump([
            {
                "id": a.get("id"),
                "name": a.get("name"),
                "type": (a.get("resource") or {}).get("type"),
                "downloadUrl": (a.get("resource") or {}).get("downloadUrl"),
            }
            for a in artifacts
        ])

    # ── Tests ────────────────────────────────────────────────

    async def list_test_runs(self, build_id: Optional[int] = None, top: int = 20) -> str:
        """List test runs, optionally only those of one build.

        Args:
            build_id: Build ID whose test runs to list.
            top: Maximum number of runs to return (default 20).
        """
        try:
            runs = await self.client.list_test_runs(build_id, top or 20)
        except Exception as exc:
            return _handle_error(exc, "list_test_runs")
        return _dump([_test_run(r) for r in runs])

    async def get_test_run_results(self, run_id: int, outcome: Optional[str] = None, top: int = 200) -> str:
        """Test case results of one run. Use outcome='failed' to get errors and stack traces.

        Args:
            run_id: The test run ID.
            outcome: passed, failed, notExecuted, inconclusive, timeout, aborted or blocked.
            top: Maximum number of results to return (default 200).
        """
        if outcome is not None and outcome not in TEST_OUTCOMES:
            return f"[get_test_run_results] Unknown outcome '{outcome}'. Use one of: {', '.join(TEST_OUTCOMES)}"
        try:
            results = await self.client.get_test_results(run_id, outcome, top or 200)
        except Exception as exc:
            return _handle_error(exc, "get_test_run_results")
        return _dump({
            "runId": run_id,
            "count": len(results),
            "outcomeFilter": outcome,
            "results": [_test_result(r) for r in results],
        })

    async def get_failed_tests_for_build(self, build_id: int, top_runs: int = 10, top_results_per_run: int = 200) -> str:
        """Failed test cases of a build in one call, grouped by test run.

        Args:
            build_id: The build ID.
            top_runs: Maximum number of test runs to inspect (default 10).
            top_results_per_run: Maximum failed results per run (default 200).
        """
        try:
            runs = await self.client.list_test_runs(build_id, top_runs or 10)
            failed_by_run = []
            for run in runs:
                failed = await self.client.get_test_results(run.get("id"), "failed", top_results_per_run or 200)
                if not failed:
                    continue
                failed_by_run.append({
                    "runId": run.get("id"),
                    "runName": run.get("name"),
                    "runState": run.get("state"),
                    "totalTests": run.get("totalTests"),
                    "passedTests": run.get("passedTests"),
                    "failedCount": len(failed),
                    "results": [_test_result(r) for r in failed],
                })
        except Exception as exc:
            return _handle_error(exc, "get_failed_tests_for_build")
        return _dump({
            "buildId": build_id,
            "runCount": len(runs),
            "runsWithFailures": len(failed_by_run),
            "failedByRun": failed_by_run,
        })

    # ── Work items ───────────────────────────────────────────

    async def get_work_item(self, work_item_id: int) -> str:
        """Get one work item by ID.

        Args:
            work_item_id: The work item ID.
        """
        try:
            item = await self.client.get_work_item(work_item_id)
        except Exception as exc:
            return _handle_error(exc, "get_work_item")
        fields = item.get("fields") or {}
        return _dump({
            "id": item.get("id"),
            "type": fields.get("System.WorkItemType"),
            "title": fields.get("System.Title"),
            "state": fields.get("System.State"),
            "assignedTo": _display_name(fields.get("System.AssignedTo")),
            "description": fields.get("System.Description"),
            "areaPath": fields.get("System.AreaPath"),
            "iterationPath": fields.get("System.IterationPath"),
            "tags": fields.get("System.Tags"),
        })

    async def search_work_items(self, search_text: str, top: int = 10) -> str:
        """Full-text search for related bugs, tasks or user stories.

        Args:
            search_text: Text to search for.
            top: Maximum number of results (default 10).
        """
        try:
            found = await self.client.search_work_items(search_text, top or 10)
        except Exception as exc:
            return _handle_error(exc, "search_work_items")
        return _dump({
            "count": found.get("count", 0),
            "results": [
                {
                    "project": (r.get("project") or {}).get("name"),
                    "fields": r.get("fields"),
                    "highlights": [
                        {"field": h.get("fieldReferenceName"), "matches": h.get("highlights")}
                        for h in r.get("hits") or []
                    ],
                }
                for r in found.get("results") or []
            ],
        })

    # ── Repositories ─────────────────────────────────────────

    async def list_repositories(self) -> str:
        """List the Git repositories in the project."""
        try:
            repos = await self.client.list_repositories()
        except Exception as exc:
            return _handle_error(exc, "list_repositories")
        return _dump([
            {"id": r.get("id"), "name": r.get("name"), "defaultBranch": r.get("defaultBranch"), "size": r.get("size")}
            for r in repos
        ])

    async def get_file_content_remote(self, repository_id: str, path: str, branch: Optional[str] = None) -> str:
        """Read a file from an Azure DevOps Git repository, e.g. to compare with the local checkout.

        Args:
            repository_id: Repository ID or name.
            path: File path inside the repository, e.g. '/src/app/Sales.al'.
            branch: Branch name. Omit for the default branch.
        """
        try:
            content = await self.client.get_file_content(repository_id, path, branch)
        except Exception as exc:
            return _handle_error(exc, "get_file_content_remote")
        where = f"repo: {repository_id}, branch: {branch}" if branch else f"repo: {repository_id}"
        return f"File: {path} ({where}):\n\n{content}"

    async def get_repository_tree(
        self,
        repository_id: str,
        path: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> str:
        """Files and folders one level below a path of a Git repository.

        Args:
            repository_id: Repository ID or name.
            path: Directory to list. Omit for the root.
            branch: Branch name. Omit for the default branch.
        """
        try:
            items = await self.client.get_repository_tree(repository_id, path, branch)
        except Exception as exc:
            return _handle_error(exc, "get_repository_tree")
        return _dump([
            {"path": i.get("relativePath") or i.get("path"), "type": i.get("gitObjectType"), "size": i.get("size")}
            for i in items
        ])

    def tool_functions(self) -> List:
        return [
            self.list_pipelines,
            self.get_pipeline,
            self.list_pipeline_runs,
            self.get_pipeline_run,
            self.get_build_timeline,
            self.get_build_log,
            self.get_build_log_summary,
            self.list_build_artifacts,
            self.list_test_runs,
            self.get_test_run_results,
            self.get_failed_tests_for_build,
            self.get_work_item,
            self.search_work_items,
            self.list_repositories,
            self.get_file_content_remote,
            self.get_repository_tree,
        ]


def build_server(tools: DevOpsTools) -> FastMCP:
    mcp = FastMCP("devops-build-investigator", instructions=INSTRUCTIONS)
    for fn in tools.tool_functions():
        mcp.tool(fn)
    return mcp


def main() -> None:
    # Route all library and application logs to stderr, never stdout.
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        settings = DevOpsSettings.from_env()
    except ValueError as e:
        logger.error("%s", e)
        sys.exit(1)

    mcp = build_server(DevOpsTools(AzureDevOpsClient(settings)))
    mcp.run(transport="stdio", show_banner=False)
