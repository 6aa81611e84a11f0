"""Configuration management for the investigator."""

import os
import re
import sys
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs, quote

from dotenv import load_dotenv

from .logger import get_logger

_log = get_logger("config")

REASONING_MODES = ("base", "expert")

DEFAULT_API_VERSION = "2024-05-01-preview"
O4_MINI_MIN_API_VERSION = "2024-12-01-preview"
_O4_MINI_MIN_DATE = "2024-12-01"

DEFAULT_BASE_URL = (
    "https://your-resource.openai.azure.com/openai/deployments/o4-mini/"
    "chat/completions?api-version=2024-12-01-preview"
)

# (context, tool result, assistant, tool call args) per reasoning mode
DEFAULT_LIMITS: Dict[str, Tuple[int, int, int, int]] = {
    "base": (80_000, 8_000, 12_000, 2_500),
    "expert": (400_000, 40_000, 60_000, 12_000),
}


def _env_int(name: str) -> Optional[int]:
    """Read a positive integer from the environment, ignoring junk."""
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        value = int(float(raw))
    except ValueError:
        _log.warning("Ignoring non-numeric %s=%r", name, raw)
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class BudgetLimits:
    """Character ceilings applied to the transcript before every model call."""

    max_transcript_chars: int = 80_000
    max_tool_result_chars: int = 8_000
    max_assistant_chars: int = 12_000
    max_tool_args_chars: int = 2_500

    @classmethod
    def for_mode(cls, mode: str) -> "BudgetLimits":
        """Limits for a reasoning mode, overridable via AGENT_<MODE>_* env vars."""
        mode = mode if mode in DEFAULT_LIMITS else "base"
        context, tool_result, assistant, tool_args = DEFAULT_LIMITS[mode]
        prefix = f"AGENT_{mode.upper()}_"
        return cls(
            max_transcript_chars=_env_int(prefix + "MAX_CONTEXT_CHARS") or context,
            max_tool_result_chars=_env_int(prefix + "MAX_TOOL_RESULT_CHARS") or tool_result,
            max_assistant_chars=_env_int(prefix + "MAX_ASSISTANT_CHARS") or assistant,
            max_tool_args_chars=_env_int(prefix + "MAX_TOOL_CALL_ARGS_CHARS") or tool_args,
        )


@dataclass(frozen=True)
class ReasoningProfile:
    """One deployed model endpoint."""

    endpoint: str
    deployment: str
    api_version: str

    @property
    def model_id(self) -> str:
        return self.deployment

    def chat_url(self, api_version: Optional[str] = None) -> str:
        version = api_version or self.api_version
        return (
            f"{self.endpoint.rstrip('/')}/openai/deployments/{self.deployment}"
            f"/chat/completions?api-version={quote(version, safe='')}"
        )


def extract_api_date(api_version: str) -> Optional[str]:
    match = re.match(r"^(\d{4}-\d{2}-\d{2})", api_version or "")
    return match.group(1) if match else None


def ensure_compatible_api_version(deployment: str, api_version: str) -> str:
    """o4-mini deployments only accept api versions dated 2024-12-01 or later."""
    if not deployment.lower().startswith("o4-mini"):
        return api_version
    current = extract_api_date(api_version)
    if not current or current < _O4_MINI_MIN_DATE:
        return O4_MINI_MIN_API_VERSION
    return api_version


def parse_deployment_url(url: str, fallback_api_version: str = DEFAULT_API_VERSION) -> ReasoningProfile:
    """Split an Azure OpenAI deployment URL into a ReasoningProfile."""
    parsed = urlparse(url)
    marker = "/openai/deployments/"
    idx = parsed.path.find(marker)
    if idx < 0 or not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid Azure OpenAI deployment URL: {url}")

    deployment = parsed.path[idx + len(marker):].split("/")[0]
    if not deployment:
        raise ValueError(f"Could not parse deployment name from URL: {url}")

    requested = parse_qs(parsed.query).get("api-version", [fallback_api_version])[0]
    return ReasoningProfile(
        endpoint=f"{parsed.scheme}://{parsed.netloc}",
        deployment=deployment,
        api_version=ensure_compatible_api_version(deployment, requested),
    )


def load_repo_index(path: Path) -> dict:
    """Load the repo index file ({basePath, lookupPaths}) if it exists."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        _log.warning("Ignoring invalid repo index %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _unique_paths(paths: List[str]) -> List[Path]:
    seen: List[Path] = []
    for p in paths:
        resolved = Path(p).expanduser().resolve()
        if resolved not in seen:
            seen.append(resolved)
    return seen


@dataclass
class Config:
    """Configuration for one investigator process."""

    azure_openai_key: str = ""
    api_version: str = DEFAULT_API_VERSION
    profiles: Dict[str, ReasoningProfile] = field(default_factory=dict)
    default_reasoning: str = "base"
    ado_organization: str = ""
    ado_project: str = ""
    ado_pat: str = ""
    ado_project_url: str = ""
    repo_base_path: Path = field(default_factory=lambda: Path.cwd())
    repo_lookup_paths: List[Path] = field(default_factory=list)
    repo_index_path: Optional[Path] = None

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "Config":
        """Load configuration from the environment (and a .env file)."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        api_version = os.getenv("AZURE_OPENAI_API_VERSION", DEFAULT_API_VERSION)

        endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        base_url = os.getenv("AZURE_OPENAI_BASE_URL")
        if not base_url:
            if endpoint and deployment:
                version = ensure_compatible_api_version(deployment, api_version)
                base_url = (
                    f"{endpoint.rstrip('/')}/openai/deployments/{deployment}"
                    f"/chat/completions?api-version={quote(version, safe='')}"
                )
            else:
                base_url = DEFAULT_BASE_URL
        base_profile = parse_deployment_url(base_url, api_version)

        expert_url = os.getenv("AZURE_OPENAI_EXPERT_URL")
        if expert_url:
            expert_profile = parse_deployment_url(expert_url, api_version)
        elif endpoint and deployment:
            expert_profile = ReasoningProfile(
                endpoint=endpoint.rstrip("/"),
                deployment=deployment,
                api_version=ensure_compatible_api_version(deployment, api_version),
            )
        else:
            expert_profile = base_profile

        default_reasoning = os.getenv("AZURE_OPENAI_DEFAULT_REASONING", "base").lower()
        if default_reasoning not in REASONING_MODES:
            default_reasoning = "base"

        organization = os.getenv("ADO_ORG", "")
        project = os.getenv("ADO_PROJECT", "")
        project_url = os.getenv("ADO_PROJECT_URL") or (
            f"https://dev.azure.com/{organization}/{project}/" if organization and project else ""
        )

        index_path = Path(os.getenv("REPO_INDEX_PATH") or Path.cwd() / "configs" / "repo-index.json")
        index = load_repo_index(index_path)

        base_path = os.getenv("REPO_BASE_PATH") or index.get("basePath") or str(Path.cwd())
        lookup = index.get("lookupPaths")
        lookup_paths = lookup if isinstance(lookup, list) and lookup else [base_path]

        return cls(
            azure_openai_key=os.getenv("AZURE_OPENAI_KEY", ""),
            api_version=api_version,
            profiles={"base": base_profile, "expert": expert_profile},
            default_reasoning=default_reasoning,
            ado_organization=organization,
            ado_project=project,
            ado_pat=os.getenv("ADO_PAT", ""),
            ado_project_url=project_url,
            repo_base_path=Path(base_path).expanduser().resolve(),
            repo_lookup_paths=_unique_paths([base_path, *lookup_paths]),
            repo_index_path=index_path.resolve(),
        )

    def profile(self, mode: Optional[str] = None) -> ReasoningProfile:
        """Profile for a reasoning mode, falling back to base."""
        mode = mode or self.default_reasoning
        profile = self.profiles.get(mode) or self.profiles.get("base")
        if profile is None:
            raise ValueError("No reasoning profiles configured.")
        return profile

    def devops_server_command(self) -> Tuple[str, List[str]]:
        """Command line for the Azure DevOps tool server subprocess."""
        return sys.executable, ["-m", "investigator.devops"]

    def devops_server_env(self) -> Dict[str, str]:
        return {
            "ADO_PAT": self.ado_pat,
            "ADO_ORG": self.ado_organization,
            "ADO_PROJECT": self.ado_project,
        }

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.azure_openai_key:
            raise ValueError("Missing required environment variable: AZURE_OPENAI_KEY")
        if not self.ado_pat:
            raise ValueError("Missing required environment variable: ADO_PAT")
        if not self.ado_organization or not self.ado_project:
            raise ValueError("Missing required environment variables: ADO_ORG and ADO_PROJECT")
        return True
