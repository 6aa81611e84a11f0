"""LLM agent that investigates failing Azure DevOps builds.

Public names are imported lazily, so ``python -m investigator.devops`` (the
tool-server child process) loads only the devops subpackage and never
attaches the agent's file log handler.
"""

import importlib

__version__ = "0.1.0"

_EXPORTS = {
    "InvestigationAgent": ".agent",
    "LoopState": ".agent",
    "CANCELED_MESSAGE": ".agent",
    "MAX_TURNS_MESSAGE": ".agent",
    "Config": ".config",
    "BudgetLimits": ".config",
    "ReasoningProfile": ".config",
    "ContextBudget": ".context_management",
    "clamp_text": ".context_management",
    "EventChannel": ".events",
    "AbortSignal": ".interrupt",
    "McpClient": ".mcp_client",
    "AzureOpenAIClient": ".model_client",
    "InvestigationSession": ".session",
    "InvestigationOptions": ".session",
    "run_investigation": ".session",
    "StreamAssembler": ".stream_assembler",
    "ChatResponse": ".stream_assembler",
    "ToolRouter": ".tool_router",
    "Transcript": ".transcript",
    "Entry": ".transcript",
    "ToolCall": ".transcript",
}

__all__ = list(_EXPORTS)


def __getattr__(name):
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(module, __name__), name)
    globals()[name] = value
    return value


def __dir__():
    return sorted(list(globals()) + __all__)
