"""Azure DevOps tool server, run as ``python -m investigator.devops``."""

from .client import AzureDevOpsClient, DevOpsAPIError, DevOpsSettings
from .server import DevOpsTools, build_server, summarize_timeline

__all__ = [
    "AzureDevOpsClient",
    "DevOpsAPIError",
    "DevOpsSettings",
    "DevOpsTools",
    "build_server",
    "summarize_timeline",
]
