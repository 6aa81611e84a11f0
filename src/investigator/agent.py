"""The investigation agent loop.

One prompt in, one final text out.  Each turn enforces the context budget,
asks the model for a reply, and runs any tool calls it asked for, strictly
one after another, appending every result before the next model call.
"""

import enum
import time
from typing import Any, Dict, List, Optional, Protocol

from .config import BudgetLimits
from .context_management import ContextBudget, clamp_entry
from .errors import ContextLengthExceeded, InvestigationAborted
from .events import (
    AssistantChunk,
    Canceled,
    Completed,
    ContextCompacted,
    EventChannel,
    MaxTurnsReached,
    Started,
    ToolCallStarted,
    ToolResultReady,
    TurnStarted,
    emit,
)
from .interrupt import AbortSignal
from .logger import get_logger, truncate
from .stream_assembler import ChatResponse
from .tool_router import ToolRouter
from .transcript import Entry, ToolCall, Transcript

_log = get_logger("agent")

DEFAULT_MAX_TURNS = 30

CANCELED_MESSAGE = "Investigation cancelled by user."
MAX_TURNS_MESSAGE = "Investigation stopped: maximum turns reached."


class LoopState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    TURN_LIMIT_REACHED = "turn_limit_reached"
    FAILED = "failed"


class ModelClient(Protocol):
    """What the loop needs from a chat completions client."""

    async def chat_stream(self, messages, tools=None, on_content=None, on_tool_call=None, abort=None) -> ChatResponse:
        ...

    async def chat(self, messages, tools=None, abort=None) -> ChatResponse:
        ...


class InvestigationAgent:
    """Runs one investigation; owns its transcript exclusively."""

    def __init__(
        self,
        model: ModelClient,
        router: ToolRouter,
        system_prompt: str,
        limits: Optional[BudgetLimits] = None,
        events: Optional[EventChannel] = None,
        stream: bool = True,
    ):
        self.model = model
        self.router = router
        self.system_prompt = system_prompt
        self.limits = limits or BudgetLimits()
        self.budget = ContextBudget(self.limits)
        self.events = events
        self.stream = stream

        self.state = LoopState.IDLE
        self.transcript: Optional[Transcript] = None
        self.turns = 0
        self.model_calls = 0

    async def run(
        self,
        prompt: str,
        max_turns: int = DEFAULT_MAX_TURNS,
        abort: Optional[AbortSignal] = None,
    ) -> str:
        """Drive the conversation until the model answers, turns run out or ``abort`` fires."""
        if self.state is not LoopState.IDLE:
            raise RuntimeError("An InvestigationAgent runs exactly one investigation")

        self.state = LoopState.RUNNING
        self.transcript = Transcript(self.system_prompt, prompt)
        tools = self.router.list_tools()
        t0 = time.time()

        _log.info("=== Investigation started === max_turns=%d tools=%d prompt=%s",
                  max_turns, len(tools), truncate(prompt, 300))
        emit(self.events, Started(prompt))

        try:
            while self.turns < max_turns:
                if abort is not None and abort.aborted:
                    return await self._cancel()

                self.turns += 1
                _log.info("--- Turn %d/%d --- entries=%d chars=%d",
                          self.turns, max_turns, len(self.transcript), self.transcript.total_chars)
                emit(self.events, TurnStarted(self.turns, max_turns))

                self._enforce_budget()
                response = await self._complete(tools, abort)

                if not response.tool_calls or response.finish_reason == "stop":
                    result = response.content or ""
                    if result:
                        self.transcript.append(self._bounded(Entry.assistant(result)))
                        self.budget.enforce(self.transcript)
                    self.state = LoopState.COMPLETED
                    _log.info("=== Investigation complete === turns=%d elapsed=%.1fs result_len=%d",
                              self.turns, time.time() - t0, len(result))
                    emit(self.events, Completed(result))
                    return result

                self.transcript.append(self._bounded(Entry.assistant(response.content, response.tool_calls)))
                async for call, result in self.router.dispatch_all(response.tool_calls):
                    _log.debug("Tool result %s: %s", call.name, truncate(result, 300))
                    emit(self.events, ToolResultReady(call.name, result))
                    self.transcript.append(Entry.tool(call.id, result))

        except InvestigationAborted:
            return await self._cancel()
        except BaseException as e:
            self.state = LoopState.FAILED
            _log.error("Investigation failed on turn %d: %s: %s", self.turns, type(e).__name__, e)
            raise

        self.state = LoopState.TURN_LIMIT_REACHED
        _log.info("=== Max turns reached === turns=%d elapsed=%.1fs", self.turns, time.time() - t0)
        emit(self.events, MaxTurnsReached())
        return MAX_TURNS_MESSAGE

    def _bounded(self, entry: Entry) -> Entry:
        content_limit, args_limit = self.budget.ceilings(entry.role)
        return clamp_entry(entry, content_limit, args_limit)

    def _enforce_budget(self) -> None:
        report = self.budget.enforce(self.transcript)
        if report.changed:
            emit(self.events, ContextCompacted(report.before_chars, report.after_chars, emergency=False))

    async def _complete(self, tools: List[Dict[str, Any]], abort: Optional[AbortSignal]) -> ChatResponse:
        """One model call, compacting and retrying once on a context-length failure."""
        try:
            return await self._call_model(tools, abort)
        except ContextLengthExceeded as e:
            _log.warning("Context length exceeded (%d chars); compacting and retrying: %s",
                         self.transcript.total_chars, truncate(e.body, 300))
            report = self.budget.compact(self.transcript)
            emit(self.events, ContextCompacted(report.before_chars, report.after_chars, emergency=True))
        # A second failure in the same turn propagates.
        return await self._call_model(tools, abort)

    async def _call_model(self, tools: List[Dict[str, Any]], abort: Optional[AbortSignal]) -> ChatResponse:
        self.model_calls += 1
        messages = self.transcript.to_messages()

        def on_content(chunk: str) -> None:
            emit(self.events, AssistantChunk(chunk))

        def on_tool_call(call: ToolCall) -> None:
            _log.info("[Tool Call] %s(%s)", call.name, truncate(call.arguments, 200))
            emit(self.events, ToolCallStarted(call.name, call.arguments))

        if not self.stream:
            response = await self.model.chat(messages, tools=tools, abort=abort)
            if response.content:
                on_content(response.content)
            for call in response.tool_calls:
                on_tool_call(call)
            return response

        return await self.model.chat_stream(
            messages, tools=tools, on_content=on_content, on_tool_call=on_tool_call, abort=abort,
        )

    async def _cancel(self) -> str:
        self.state = LoopState.CANCELED
        _log.info("=== Investigation cancelled === turns=%d", self.turns)
        await self.router.aclose()
        emit(self.events, Canceled())
        return CANCELED_MESSAGE


async def run(
    prompt: str,
    model: ModelClient,
    router: ToolRouter,
    system_prompt: str,
    max_turns: int = DEFAULT_MAX_TURNS,
    limits: Optional[BudgetLimits] = None,
    abort: Optional[AbortSignal] = None,
    events: Optional[EventChannel] = None,
) -> str:
    """Run one investigation with a fresh agent."""
    agent = InvestigationAgent(model, router, system_prompt, limits=limits, events=events)
    return await agent.run(prompt, max_turns=max_turns, abort=abort)
