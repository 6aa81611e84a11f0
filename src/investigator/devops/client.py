"""Azure DevOps REST client (pipelines, builds, logs, tests, work items, repositories)."""

import base64
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

API_VERSION = "7.1"


@dataclass(frozen=True)
class DevOpsSettings:
    organization: str
    project: str
    pat: str

    @classmethod
    def from_env(cls) -> "DevOpsSettings":
        missing = [name for name in ("ADO_ORG", "ADO_PROJECT", "ADO_PAT") if not os.getenv(name)]
        if missing:
            raise ValueError(f"Missing required environment variable(s): {', '.join(missing)}")
        return cls(
            organization=os.environ["ADO_ORG"],
            project=os.environ["ADO_PROJECT"],
            pat=os.environ["ADO_PAT"],
        )

    @property
    def base_url(self) -> str:
        return f"https://dev.azure.com/{self.organization}/{self.project}/_apis"

    @property
    def search_url(self) -> str:
        # Work item search lives on its own host.
        return f"https://almsearch.dev.azure.com/{self.organization}/{self.project}/_apis/search"


class DevOpsAPIError(Exception):
    """Non-2xx response from Azure DevOps."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Azure DevOps API error {status}: {body}")


def basic_auth_header(pat: str) -> str:
    token = base64.b64encode(f":{pat}".encode("ascii")).decode("ascii")
    return f"Basic {token}"


class AzureDevOpsClient:
    """Thin async wrapper over the project-scoped ``_apis`` endpoints."""

    def __init__(
        self,
        settings: DevOpsSettings,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url + "/",
            headers={
                "Authorization": basic_auth_header(settings.pat),
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=15.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, raw_text: bool = False):
        query = {"api-version": API_VERSION}
        for key, value in (params or {}).items():
            if value is not None and value != "":
                query[key] = str(value)

        headers = {"Accept": "text/plain"} if raw_text else None
        response = await self._client.get(path, params=query, headers=headers)
        if response.status_code >= 400:
            raise DevOpsAPIError(response.status_code, response.text)
        return response.text if raw_text else response.json()

    async def _post(self, url: str, body: Dict[str, Any]) -> Any:
        response = await self._client.post(url, params={"api-version": API_VERSION}, json=body)
        if response.status_code >= 400:
            raise DevOpsAPIError(response.status_code, response.text)
        return response.json()

    # ── Pipelines ────────────────────────────────────────────

    async def list_pipelines(self, name_filter: Optional[str] = None, top: Optional[int] = None) -> List[Dict[str, Any]]:
        result = await self._get("pipelines", {"$top": top})
        pipelines = result.get("value", [])
        if name_filter:
            needle = name_filter.lower()
            pipelines = [p for p in pipelines if needle in (p.get("name") or "").lower()]
        return pipelines

    async def get_pipeline(self, pipeline_id: int) -> Dict[str, Any]:
        return await self._get(f"pipelines/{pipeline_id}")

    # ── Builds ───────────────────────────────────────────────

    async def list_builds(
        self,
        definitions: Optional[int] = None,
        branch_name: Optional[str] = None,
        result_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        result = await self._get("build/builds", {
            "definitions": definitions,
            "branchName": branch_name,
            "resultFilter": result_filter,
            "statusFilter": status_filter,
            "$top": top,
        })
        return result.get("value", [])

    async def get_build(self, build_id: int) -> Dict[str, Any]:
        return await self._get(f"build/builds/{build_id}")

    async def get_build_timeline(self, build_id: int) -> Dict[str, Any]:
        return await self._get(f"build/builds/{build_id}/timeline")

    async def get_build_log(
        self,
        build_id: int,
        log_id: int,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
    ) -> str:
        return await self._get(
            f"build/builds/{build_id}/logs/{log_id}",
            {"startLine": start_line, "endLine": end_line},
            raw_text=True,
        )

    async def list_build_artifacts(self, build_id: int) -> List[Dict[str, Any]]:
        result = await self._get(f"build/builds/{build_id}/artifacts")
        return result.get("value", [])

    # ── Tests ────────────────────────────────────────────────

    async def list_test_runs(self, build_id: Optional[int] = None, top: Optional[int] = None) -> List[Dict[str, Any]]:
        build_uri = f"vstfs:///Build/Build/{build_id}" if build_id is not None else None
        result = await self._get("test/runs", {"buildUri": build_uri, "includeRunDetails": "true", "$top": top})
        return result.get("value", [])

    async def get_test_results(
        self,
        run_id: int,
        outcome: Optional[str] = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        result = await self._get(f"test/runs/{run_id}/results", {"outcomes": outcome, "$top": top})
        return result.get("value", [])

    # ── Work items ───────────────────────────────────────────

    async def get_work_item(self, work_item_id: int) -> Dict[str, Any]:
        return await self._get(f"wit/workitems/{work_item_id}", {"$expand": "all"})

    async def search_work_items(self, search_text: str, top: int = 10) -> Dict[str, Any]:
        return await self._post(
            f"{self.settings.search_url}/workitemsearchresults",
            {"searchText": search_text, "$top": top, "filters": {}},
        )

    # ── Repositories ─────────────────────────────────────────

    async def list_repositories(self) -> List[Dict[str, Any]]:
        result = await self._get("git/repositories")
        return result.get("value", [])

    async def get_file_content(self, repository_id: str, path: str, branch: Optional[str] = None) -> str:
        return await self._get(
            f"git/repositories/{repository_id}/items",
            {
                "path": path,
                "includeContent": "true",
                "versionDescriptor.version": branch,
                "versionDescriptor.versionType": "branch" if branch else None,
            },
            raw_text=True,
        )

    async def get_repository_tree(
        self,
        repository_id: str,
        path: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        result = await self._get(
            f"git/repositories/{repository_id}/items",
            {
                "scopePath": path,
                "recursionLevel": "oneLevel",
                "includeContentMetadata": "true",
                "versionDescriptor.version": branch,
                "versionDescriptor.versionType": "branch" if branch else None,
            },
        )
        return result.get("value", [])
