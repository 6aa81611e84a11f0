"""Tests for tool routing across the remote and local families."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from investigator.errors import ProtocolTimeout, RemoteToolError
from investigator.mcp_client import McpTool
from investigator.tool_router import LocalToolFamily, RemoteToolFamily, ToolRouter, parse_arguments
from investigator.tools import ToolRegistry
from investigator.transcript import ToolCall


class FakeMcpClient:
    """Stands in for McpClient: fixed tools, scripted call outcomes."""

    def __init__(self, outcomes=None):
        self.tools = [
            McpTool("get_build_timeline", "Timeline", {"type": "object", "properties": {"build_id": {"type": "integer"}}}),
            McpTool("get_build_log", "Log text"),
        ]
        self.outcomes = outcomes or {}
        self.calls = []
        self.disconnected = False

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        outcome = self.outcomes.get(name, f"{name} ok")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def disconnect(self):
        self.disconnected = True


def make_registry(order=None):
    registry = ToolRegistry()

    @registry.register_function("echo", "Echo text", {"text": {"type": "string"}}, required=["text"])
    async def echo(text):
        if order is not None:
            order.append(("start", text))
            await asyncio.sleep(0.01)
            order.append(("end", text))
        return f"echo: {text}"

    @registry.register_function("explode", "Always fails", {})
    def explode():
        raise OSError("disk on fire")

    return registry


def make_router(outcomes=None, order=None):
    remote = FakeMcpClient(outcomes)
    router = ToolRouter([RemoteToolFamily(remote), LocalToolFamily(make_registry(order))])
    return router, remote


def dispatch(router, name, arguments):
    return asyncio.run(router.dispatch(ToolCall(id="c1", name=name, arguments=arguments)))


class TestParseArguments:
    def test_blank_means_empty(self):
        assert parse_arguments("") == {}
        assert parse_arguments("   ") == {}

    def test_object_required(self):
        with pytest.raises(ValueError):
            parse_arguments("[1, 2]")
        with pytest.raises(ValueError):
            parse_arguments("{not json")


class TestCatalogue:
    def test_names_are_prefixed_per_family(self):
        router, _ = make_router()
        names = [t["function"]["name"] for t in router.list_tools()]
        assert names == ["ado_get_build_timeline", "ado_get_build_log", "local_echo", "local_explode"]
        assert router.prefixes == ["ado", "local"]

    def test_remote_schema_passed_through(self):
        router, _ = make_router()
        timeline = router.list_tools()[0]["function"]
        assert timeline["parameters"]["properties"]["build_id"]["type"] == "integer"
        assert timeline["description"] == "Timeline"


class TestDispatch:
    def test_remote_call_strips_prefix(self):
        router, remote = make_router({"get_build_timeline": '{"records": []}'})
        assert dispatch(router, "ado_get_build_timeline", '{"build_id": 42}') == '{"records": []}'
        assert remote.calls == [("get_build_timeline", {"build_id": 42})]

    def test_local_call(self):
        router, _ = make_router()
        assert dispatch(router, "local_echo", '{"text": "hi"}') == "echo: hi"

    def test_malformed_arguments_never_reach_the_tool(self):
        router, remote = make_router()
        result = dispatch(router, "ado_get_build_log", '{"build_id": ')
        assert result.startswith("Error: Could not parse arguments:")
        assert remote.calls == []

    def test_unknown_prefix(self):
        router, _ = make_router()
        result = dispatch(router, "remote_getBuildTimeline", "{}")
        assert result == "Error: Unknown tool prefix. Expected ado_* or local_*. Got: remote_getBuildTimeline"

    def test_unknown_local_tool(self):
        router, _ = make_router()
        result = dispatch(router, "local_nope", "{}")
        assert result.startswith("Error executing local_nope:")

    def test_local_tool_exception(self):
        router, _ = make_router()
        result = dispatch(router, "local_explode", "")
        assert result.startswith("Error executing local_explode:")
        assert "disk on fire" in result

    def test_missing_required_argument(self):
        router, _ = make_router()
        result = dispatch(router, "local_echo", "{}")
        assert "Missing required argument(s): text" in result

    def test_remote_failures_become_text(self):
        router, _ = make_router({
            "get_build_log": ProtocolTimeout("tools/call", 30),
            "get_build_timeline": RemoteToolError("404 build not found"),
        })
        assert "timed out" in dispatch(router, "ado_get_build_log", "{}")
        assert dispatch(router, "ado_get_build_timeline", "{}") == (
            "Error executing ado_get_build_timeline: 404 build not found"
        )

    def test_dispatch_never_raises_on_odd_input(self):
        router, _ = make_router()
        for name, arguments in [("", ""), ("ado_", "null"), ("local_echo", '"text"'), ("x", "{}")]:
            assert isinstance(dispatch(router, name, arguments), str)

    def test_deeply_nested_arguments_are_reported(self):
        router, _ = make_router()
        result = dispatch(router, "local_echo", "[" * 100_000)
        assert result.startswith("Error: Could not parse arguments")


class TestDispatchAll:
    def test_calls_run_one_at_a_time_in_order(self):
        order = []
        router, _ = make_router(order=order)
        calls = [ToolCall(id=str(i), name="local_echo", arguments=f'{{"text": "{i}"}}') for i in range(3)]

        async def collect():
            return [(call.id, result) async for call, result in router.dispatch_all(calls)]

        results = asyncio.run(collect())
        assert results == [("0", "echo: 0"), ("1", "echo: 1"), ("2", "echo: 2")]
        assert order == [("start", "0"), ("end", "0"), ("start", "1"), ("end", "1"), ("start", "2"), ("end", "2")]

    def test_aclose_disconnects_remote(self):
        router, remote = make_router()
        asyncio.run(router.aclose())
        assert remote.disconnected
