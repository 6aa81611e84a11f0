"""End-to-end tests for the investigation loop with scripted model and tools."""

import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from investigator.agent import CANCELED_MESSAGE, MAX_TURNS_MESSAGE, InvestigationAgent, LoopState, run
from investigator.config import BudgetLimits
from investigator.errors import ContextLengthExceeded, InvestigationAborted, ModelRequestError
from investigator.events import (
    Canceled,
    Completed,
    ContextCompacted,
    EventChannel,
    MaxTurnsReached,
    Started,
    ToolCallStarted,
    ToolResultReady,
    TurnStarted,
)
from investigator.interrupt import AbortSignal
from investigator.mcp_client import McpTool
from investigator.stream_assembler import ChatResponse
from investigator.tool_router import LocalToolFamily, RemoteToolFamily, ToolRouter
from investigator.tools import ToolRegistry
from investigator.transcript import ToolCall

SYSTEM = "You investigate failing builds."
TIMELINE = json.dumps({"buildId": 42, "failedSteps": [{"name": "Run tests", "log_id": 7}]})


def tool_response(name, arguments, call_id="call_1", content=None):
    return ChatResponse(
        content=content,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))],
        finish_reason="tool_calls",
    )


def text_response(text):
    return ChatResponse(content=text, finish_reason="stop")


class ScriptedModel:
    """Returns (or raises) the scripted items in order; repeats the last one."""

    def __init__(self, script, abort=None):
        self.script = list(script)
        self.abort = abort
        self.requests = []

    def _next(self):
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def chat_stream(self, messages, tools=None, on_content=None, on_tool_call=None, abort=None):
        self.requests.append({"messages": messages, "tools": tools})
        item = self.script[0]
        if item == "hang":
            self.script.pop(0)
            reason = await abort.wait()
            raise InvestigationAborted(reason)
        response = self._next()
        if response.content and on_content:
            on_content(response.content)
        for call in response.tool_calls:
            if on_tool_call:
                on_tool_call(call)
        return response

    async def chat(self, messages, tools=None, abort=None):
        self.requests.append({"messages": messages, "tools": tools})
        return self._next()


class FakeDevOpsClient:
    """Remote tool server stand-in; ``on_call`` runs before each result is returned."""

    def __init__(self, results=None, on_call=None):
        self.tools = [McpTool("get_build_timeline", "Timeline"), McpTool("get_build_log", "Log")]
        self.results = results or {}
        self.on_call = on_call
        self.calls = []
        self.disconnected = False

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.on_call:
            self.on_call(len(self.calls))
        return self.results.get(name, TIMELINE)

    async def disconnect(self):
        self.disconnected = True


def make_router(remote):
    registry = ToolRegistry()

    @registry.register_function("read_file", "Read a file", {"path": {"type": "string"}}, required=["path"])
    async def read_file(path):
        return f"contents of {path}"

    return ToolRouter([RemoteToolFamily(remote), LocalToolFamily(registry)])


class TestScenarios:
    def test_tool_call_then_answer(self):
        remote = FakeDevOpsClient()
        model = ScriptedModel([
            tool_response("ado_get_build_timeline", {"build_id": 42}),
            text_response("Build 42 failed in 'Run tests'."),
        ])
        events = EventChannel()
        agent = InvestigationAgent(model, make_router(remote), SYSTEM, events=events)

        result = asyncio.run(agent.run("investigate build 42"))

        assert result == "Build 42 failed in 'Run tests'."
        assert agent.turns == 2
        assert agent.model_calls == 2
        assert agent.state is LoopState.COMPLETED
        assert remote.calls == [("get_build_timeline", {"build_id": 42})]
        assert [e.role for e in agent.transcript] == ["system", "user", "assistant", "tool", "assistant"]
        assert agent.transcript[3].content == TIMELINE
        assert agent.transcript[3].tool_call_id == "call_1"

        # The second model call saw the tool result.
        second = model.requests[1]["messages"]
        assert second[-1] == {"role": "tool", "content": TIMELINE, "tool_call_id": "call_1"}
        tool_names = [t["function"]["name"] for t in model.requests[0]["tools"]]
        assert tool_names == ["ado_get_build_timeline", "ado_get_build_log", "local_read_file"]

        kinds = [type(e) for e in events.drain()]
        assert kinds[0] is Started
        assert kinds.count(TurnStarted) == 2
        assert ToolCallStarted in kinds
        assert ToolResultReady in kinds
        assert kinds[-1] is Completed

    def test_turn_limit(self):
        remote = FakeDevOpsClient()
        model = ScriptedModel([tool_response("ado_get_build_log", {"build_id": 42, "log_id": 7})])
        events = EventChannel()
        agent = InvestigationAgent(model, make_router(remote), SYSTEM, events=events)

        result = asyncio.run(agent.run("investigate build 42", max_turns=1))

        assert result == MAX_TURNS_MESSAGE
        assert agent.turns == 1
        assert agent.model_calls == 1
        assert agent.state is LoopState.TURN_LIMIT_REACHED
        assert isinstance(events.drain()[-1], MaxTurnsReached)

    def test_abort_between_turns_tears_down_tool_server(self):
        abort = AbortSignal()

        def abort_on_second_call(count):
            if count == 2:
                abort.abort("user")

        remote = FakeDevOpsClient(on_call=abort_on_second_call)
        model = ScriptedModel([
            tool_response("ado_get_build_timeline", {"build_id": 42}, call_id="c1"),
            tool_response("ado_get_build_log", {"build_id": 42, "log_id": 7}, call_id="c2"),
            text_response("never reached"),
        ])
        events = EventChannel()
        agent = InvestigationAgent(model, make_router(remote), SYSTEM, events=events)

        result = asyncio.run(agent.run("investigate build 42", abort=abort))

        assert result == CANCELED_MESSAGE
        assert agent.state is LoopState.CANCELED
        assert agent.model_calls == 2
        assert remote.disconnected
        # Results gathered before the abort stay in the transcript.
        assert agent.transcript[-1].tool_call_id == "c2"
        assert isinstance(events.drain()[-1], Canceled)

    def test_context_length_failure_compacts_and_retries(self):
        limits = BudgetLimits(max_transcript_chars=2_000, max_tool_result_chars=600,
                              max_assistant_chars=400, max_tool_args_chars=200)
        remote = FakeDevOpsClient(results={"get_build_log": "E" * 5_000})
        model = ScriptedModel([
            tool_response("ado_get_build_log", {"build_id": 42, "log_id": 7}, call_id="c1"),
            ContextLengthExceeded(400, "This model's maximum context length is 8192 tokens"),
            text_response("Root cause: " + "x" * 1_000),
        ])
        events = EventChannel()
        agent = InvestigationAgent(model, make_router(remote), SYSTEM, limits=limits, events=events)

        result = asyncio.run(agent.run("investigate build 42"))

        assert result.startswith("Root cause: ")
        assert agent.state is LoopState.COMPLETED
        assert agent.model_calls == 3
        assert agent.transcript.total_chars <= limits.max_transcript_chars
        compactions = [e for e in events.drain() if isinstance(e, ContextCompacted)]
        assert any(e.emergency for e in compactions)

    def test_second_context_length_failure_is_fatal(self):
        remote = FakeDevOpsClient()
        model = ScriptedModel([ContextLengthExceeded(400, "context_length_exceeded")])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM)

        with pytest.raises(ContextLengthExceeded):
            asyncio.run(agent.run("investigate build 42"))
        assert agent.state is LoopState.FAILED
        assert agent.model_calls == 2


class TestLoopBehaviour:
    def test_abort_during_model_call(self):
        abort = AbortSignal()
        remote = FakeDevOpsClient()
        model = ScriptedModel(["hang", text_response("never")])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM)

        async def scenario():
            asyncio.get_running_loop().call_later(0.05, abort.abort, "ctrl-c")
            return await agent.run("investigate build 42", abort=abort)

        assert asyncio.run(scenario()) == CANCELED_MESSAGE
        assert agent.state is LoopState.CANCELED
        assert remote.disconnected

    def test_already_aborted_makes_no_model_call(self):
        abort = AbortSignal()
        abort.abort()
        model = ScriptedModel([text_response("never")])
        agent = InvestigationAgent(model, make_router(FakeDevOpsClient()), SYSTEM)
        assert asyncio.run(agent.run("x", abort=abort)) == CANCELED_MESSAGE
        assert model.requests == []

    def test_transport_failure_propagates_and_keeps_progress(self):
        remote = FakeDevOpsClient()
        model = ScriptedModel([
            tool_response("ado_get_build_timeline", {"build_id": 42}),
            ModelRequestError(500, "server error"),
        ])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM)

        with pytest.raises(ModelRequestError):
            asyncio.run(agent.run("investigate build 42"))
        assert agent.state is LoopState.FAILED
        assert agent.transcript[-1].role == "tool"

    def test_tool_errors_go_back_to_the_model(self):
        remote = FakeDevOpsClient()
        model = ScriptedModel([
            tool_response("remote_getBuildTimeline", {"buildId": 42}),
            text_response("done"),
        ])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM)

        assert asyncio.run(agent.run("investigate build 42")) == "done"
        assert agent.transcript[3].content.startswith("Error: Unknown tool prefix.")
        assert remote.calls == []

    def test_multiple_calls_in_one_turn_answered_in_order(self):
        remote = FakeDevOpsClient(results={"get_build_log": "log text"})
        calls = [
            ToolCall(id="a", name="ado_get_build_timeline", arguments='{"build_id": 42}'),
            ToolCall(id="b", name="local_read_file", arguments='{"path": "build.yml"}'),
            ToolCall(id="c", name="ado_get_build_log", arguments='{"build_id": 42, "log_id": 7}'),
        ]
        model = ScriptedModel([
            ChatResponse(content="Checking.", tool_calls=calls, finish_reason="tool_calls"),
            text_response("done"),
        ])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM)

        asyncio.run(agent.run("investigate build 42"))
        tool_entries = [e for e in agent.transcript if e.role == "tool"]
        assert [e.tool_call_id for e in tool_entries] == ["a", "b", "c"]
        assert tool_entries[1].content == "contents of build.yml"
        assert agent.transcript[2].content == "Checking."

    def test_oversized_tool_result_clamped_before_next_call(self):
        limits = BudgetLimits(max_transcript_chars=50_000, max_tool_result_chars=1_000,
                              max_assistant_chars=2_000, max_tool_args_chars=500)
        remote = FakeDevOpsClient(results={"get_build_log": "L" * 20_000})
        model = ScriptedModel([
            tool_response("ado_get_build_log", {"build_id": 42, "log_id": 7}),
            text_response("done"),
        ])
        agent = InvestigationAgent(model, make_router(remote), SYSTEM, limits=limits)

        asyncio.run(agent.run("investigate build 42"))
        tool_message = model.requests[1]["messages"][3]
        assert tool_message["role"] == "tool"
        assert len(tool_message["content"]) == 1_000

    def test_non_streaming_mode(self):
        model = ScriptedModel([
            tool_response("local_read_file", {"path": "a.txt"}),
            text_response("read it"),
        ])
        events = EventChannel()
        agent = InvestigationAgent(model, make_router(FakeDevOpsClient()), SYSTEM, events=events, stream=False)

        assert asyncio.run(agent.run("read a.txt")) == "read it"
        names = [e.name for e in events.drain() if isinstance(e, ToolCallStarted)]
        assert names == ["local_read_file"]

    def test_agent_runs_once(self):
        model = ScriptedModel([text_response("ok")])
        agent = InvestigationAgent(model, make_router(FakeDevOpsClient()), SYSTEM)
        asyncio.run(agent.run("x"))
        with pytest.raises(RuntimeError):
            asyncio.run(agent.run("x"))

    def test_module_level_run(self):
        model = ScriptedModel([text_response("answer")])
        result = asyncio.run(run("x", model, make_router(FakeDevOpsClient()), SYSTEM, max_turns=3))
        assert result == "answer"
