"""Tool registry for in-process tools."""

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel


class ToolResult(BaseModel):
    """Result of a tool execution."""

    success: bool
    output: Any = None
    error: Optional[str] = None

    def to_message(self) -> str:
        """Convert result to a message string for the LLM."""
        if self.success:
            if isinstance(self.output, str):
                return self.output
            return json.dumps(self.output, indent=2, default=str)
        return f"Error: {self.error}"


@dataclass
class Tool:
    """Definition of a tool that can be called by the LLM."""

    name: str
    description: str
    parameters: Dict[str, Any]
    function: Callable
    required_params: List[str] = field(default_factory=list)

    def to_openai_schema(self, prefix: str = "") -> Dict[str, Any]:
        """Convert tool to OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": prefix + self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": self.required_params,
                },
            },
        }

    async def execute(self, **kwargs) -> ToolResult:
        """Execute the tool with given parameters."""
        missing = [p for p in self.required_params if kwargs.get(p) is None]
        if missing:
            return ToolResult(success=False, error=f"Missing required argument(s): {', '.join(missing)}")
        try:
            result = self.function(**kwargs)
            if inspect.isawaitable(result):
                result = await result
            return ToolResult(success=True, output=result)
        except Exception as e:
            return ToolResult(success=False, error=f"{type(e).__name__}: {e}")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        required: Optional[List[str]] = None,
    ) -> Callable:
        """Decorator to register a function as a tool."""
        def decorator(func: Callable) -> Callable:
            self.register(Tool(
                name=name,
                description=description,
                parameters=parameters,
                function=func,
                required_params=required or [],
            ))
            return func
        return decorator

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def to_openai_schema(self, prefix: str = "") -> List[Dict[str, Any]]:
        """Get all tools in OpenAI-compatible schema."""
        return [tool.to_openai_schema(prefix) for tool in self._tools.values()]

    async def execute(self, name: str, **kwargs) -> ToolResult:
        """Execute a tool by name."""
        tool = self.get(name)
        if not tool:
            return ToolResult(success=False, error=f"Tool '{name}' not found")
        return await tool.execute(**kwargs)
