"""Routes model tool calls to the tool family that owns them.

Tool names the model sees are ``<prefix>_<tool>``.  Each family owns one
prefix; the router strips it and forwards the call.  Every failure becomes
an ``Error...`` string the model can read, so dispatch never raises.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import ToolExecutionError
from .logger import get_logger, truncate
from .mcp_client import McpClient
from .tools.registry import ToolRegistry
from .transcript import ToolCall

_log = get_logger("tool_router")

REMOTE_PREFIX = "ado"
LOCAL_PREFIX = "local"


class ToolFamily(Protocol):
    """A group of tools sharing one name prefix."""

    prefix: str

    def list_tools(self) -> List[Dict[str, Any]]:
        """OpenAI function schemas, names already prefixed."""
        ...

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        """Run ``name`` (prefix stripped).  Raises on failure."""
        ...

    async def aclose(self) -> None:
        ...


class RemoteToolFamily:
    """Tools served by the devops tool-server subprocess."""

    def __init__(self, client: McpClient, prefix: str = REMOTE_PREFIX):
        self.client = client
        self.prefix = prefix

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": f"{self.prefix}_{tool.name}",
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in self.client.tools
        ]

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        return await self.client.call_tool(name, arguments)

    async def aclose(self) -> None:
        await self.client.disconnect()


class LocalToolFamily:
    """In-process repository tools."""

    def __init__(self, registry: ToolRegistry, prefix: str = LOCAL_PREFIX):
        self.registry = registry
        self.prefix = prefix

    def list_tools(self) -> List[Dict[str, Any]]:
        return self.registry.to_openai_schema(prefix=f"{self.prefix}_")

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        if self.registry.get(name) is None:
            raise ToolExecutionError(f"Unknown local tool: {self.prefix}_{name}")
        result = await self.registry.execute(name, **arguments)
        if not result.success:
            raise ToolExecutionError(result.error or "unknown error")
        return result.to_message()

    async def aclose(self) -> None:
        return None


def parse_arguments(raw: str) -> Dict[str, Any]:
    """Parse tool-call arguments; blank means no arguments."""
    if raw is None or not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


class ToolRouter:
    """Holds the tool families for one session."""

    def __init__(self, families: Sequence[ToolFamily]):
        self.families: List[ToolFamily] = list(families)

    @property
    def prefixes(self) -> List[str]:
        return [family.prefix for family in self.families]

    def list_tools(self) -> List[Dict[str, Any]]:
        """Full tool catalogue for the model."""
        tools: List[Dict[str, Any]] = []
        for family in self.families:
            tools.extend(family.list_tools())
        return tools

    def resolve(self, name: str) -> Tuple[Optional[ToolFamily], str]:
        for family in self.families:
            marker = f"{family.prefix}_"
            if name.startswith(marker):
                return family, name[len(marker):]
        return None, name

    def _unknown_prefix(self, name: str) -> str:
        expected = " or ".join(f"{prefix}_*" for prefix in self.prefixes) or "a known tool family"
        return f"Error: Unknown tool prefix. Expected {expected}. Got: {name}"

    async def dispatch(self, call: ToolCall) -> str:
        """Run one tool call and return its text result.  Never raises."""
        try:
            arguments = parse_arguments(call.arguments)
        except (ValueError, TypeError, RecursionError) as e:
            _log.warning("Bad arguments for %s: %s", call.name, truncate(call.arguments))
            return f"Error: Could not parse arguments: {e}"

        family, tool_name = self.resolve(call.name)
        if family is None:
            _log.warning("Unknown tool requested: %s", call.name)
            return self._unknown_prefix(call.name)

        _log.info("Tool call: %s args=%s", call.name, truncate(call.arguments, 300))
        try:
            result = await family.call(tool_name, arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _log.warning("Tool %s failed: %s: %s", call.name, type(e).__name__, e)
            return f"Error executing {call.name}: {e}"

        _log.debug("Tool result: %s -> %d chars", call.name, len(result or ""))
        return result if result is not None else ""

    async def dispatch_all(self, calls: Sequence[ToolCall]) -> AsyncIterator[Tuple[ToolCall, str]]:
        """Run calls one at a time, in order, yielding each result as it completes."""
        for call in calls:
            yield call, await self.dispatch(call)

    async def aclose(self) -> None:
        for family in self.families:
            try:
                await family.aclose()
            except Exception as e:
                _log.warning("Closing %s tools failed: %s", family.prefix, e)
