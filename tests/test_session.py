"""Tests for investigation sessions, prompts and the end-to-end runner."""

import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from investigator import session as session_module
from investigator.agent import CANCELED_MESSAGE, MAX_TURNS_MESSAGE
from investigator.config import Config, ReasoningProfile
from investigator.errors import InvestigationAborted, ServerUnavailable
from investigator.events import Completed, EventChannel
from investigator.interrupt import AbortSignal
from investigator.mcp_client import McpClient
from investigator.prompts import get_system_prompt
from investigator.session import (
    InvestigationOptions,
    InvestigationSession,
    SessionBusy,
    build_prompt,
    run_investigation,
)
from investigator.stream_assembler import ChatResponse
from investigator.transcript import ToolCall

FAKE_SERVER = os.path.join(os.path.dirname(__file__), "fake_tool_server.py")
PROFILE = ReasoningProfile("https://example.openai.azure.com", "gpt-4o", "2024-05-01-preview")


class TestBuildPrompt:
    def test_build_mode(self):
        prompt = build_prompt("build", build_id=42)
        assert prompt.startswith("Investigate build 42.")

    def test_build_mode_rejects_bad_ids(self):
        for bad in (None, 0, -1, "abc"):
            with pytest.raises(ValueError):
                build_prompt("build", build_id=bad)

    def test_latest_mode_with_pipeline(self):
        prompt = build_prompt("latest", pipeline="AL-Full")
        assert prompt.startswith('Find the most recent failing build for the pipeline matching "AL-Full".')
        assert "pipeline matching" not in build_prompt("latest")

    def test_query_with_previous_result(self):
        prompt = build_prompt("query", query="  why?  ", previous_result="Build 42 failed.")
        assert prompt == (
            "Continue from this previous investigation summary:\n\nBuild 42 failed."
            "\n\nFollow-up request: why?"
        )
        assert build_prompt("query", query="why?") == "why?"

    def test_query_and_mode_validation(self):
        with pytest.raises(ValueError):
            build_prompt("query", query="   ")
        with pytest.raises(ValueError):
            build_prompt("explain")

    def test_system_prompt_mentions_project_and_rules(self, tmp_path):
        (tmp_path / "agent.md").write_text("Always run the linter.", encoding="utf-8")
        prompt = get_system_prompt("https://dev.azure.com/contoso/Sales/", tmp_path)
        assert "https://dev.azure.com/contoso/Sales/" in prompt
        assert "ado_get_build_timeline" in prompt
        assert "Always run the linter." in prompt


class TestInvestigationSession:
    def make_session(self, results):
        seen = []

        async def runner(prompt, config, options):
            seen.append((prompt, options))
            result = results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result

        return InvestigationSession(Config(), runner=runner), seen

    def test_records_last_result_for_follow_ups(self):
        session, seen = self.make_session(["Build 42 failed in tests."])
        result = asyncio.run(session.investigate(session.prompt_for("build", build_id=42)))
        assert result == "Build 42 failed in tests."
        assert session.last_result == result
        follow_up = session.prompt_for("query", query="How do I fix it?")
        assert "Build 42 failed in tests." in follow_up
        # The runner always receives an abort signal owned by this run.
        assert isinstance(seen[0][1].abort, AbortSignal)

    def test_cancel_and_turn_limit_keep_previous_result(self):
        session, _ = self.make_session(["first answer", CANCELED_MESSAGE, MAX_TURNS_MESSAGE])
        for _ in range(3):
            asyncio.run(session.investigate("q"))
        assert session.last_result == "first answer"
        session.reset()
        assert session.last_result is None

    def test_refuses_concurrent_runs(self):
        async def scenario():
            release = asyncio.Event()

            async def runner(prompt, config, options):
                await release.wait()
                return "done"

            session = InvestigationSession(Config(), runner=runner)
            first = asyncio.ensure_future(session.investigate("one"))
            await asyncio.sleep(0)
            assert session.running
            with pytest.raises(SessionBusy):
                await session.investigate("two")
            release.set()
            assert await first == "done"
            assert not session.running

        asyncio.run(scenario())

    def test_cancel_fires_the_running_abort_signal(self):
        async def scenario():
            async def runner(prompt, config, options):
                reason = await options.abort.wait()
                return f"{CANCELED_MESSAGE} ({reason})"

            session = InvestigationSession(Config(), runner=runner)
            assert not session.cancel()
            task = asyncio.ensure_future(session.investigate("x"))
            await asyncio.sleep(0)
            assert session.cancel("api")
            return await task

        assert asyncio.run(scenario()) == f"{CANCELED_MESSAGE} (api)"

    def test_failure_clears_running_flag(self):
        session, _ = self.make_session([RuntimeError("boom")])
        with pytest.raises(RuntimeError):
            asyncio.run(session.investigate("x"))
        assert not session.running

    def test_sessions_do_not_share_state(self):
        a, _ = self.make_session(["answer a"])
        b, _ = self.make_session(["answer b"])
        asyncio.run(a.investigate("x"))
        assert b.last_result is None


# ── End to end against the scripted tool server ─────────────


class FakeServerConfig(Config):
    def devops_server_command(self):
        return sys.executable, [FAKE_SERVER] + getattr(self, "server_args", [])


class ScriptedOpenAIClient:
    """Drop-in for AzureOpenAIClient inside run_investigation."""

    script = []
    requests = []

    def __init__(self, api_key, profile, max_completion_tokens=4096, on_diagnostics=None, **kwargs):
        self.profile = profile

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def chat_stream(self, messages, tools=None, on_content=None, on_tool_call=None, abort=None):
        type(self).requests.append({"messages": messages, "tools": tools})
        item = type(self).script.pop(0)
        if item == "hang":
            raise InvestigationAborted(await abort.wait())
        for call in item.tool_calls:
            on_tool_call(call)
        if item.content:
            on_content(item.content)
        return item


class RecordingMcpClient(McpClient):
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        type(self).instances.append(self)


@pytest.fixture
def wired(monkeypatch, tmp_path):
    ScriptedOpenAIClient.script = []
    ScriptedOpenAIClient.requests = []
    RecordingMcpClient.instances = []
    monkeypatch.setattr(session_module, "AzureOpenAIClient", ScriptedOpenAIClient)
    monkeypatch.setattr(session_module, "McpClient", RecordingMcpClient)
    config = FakeServerConfig(
        azure_openai_key="key",
        profiles={"base": PROFILE},
        ado_project_url="https://dev.azure.com/contoso/Sales/",
        repo_base_path=tmp_path,
        repo_lookup_paths=[tmp_path],
    )
    return config


class TestRunInvestigation:
    def test_remote_and_local_tools_end_to_end(self, wired, tmp_path):
        (tmp_path / "build.yml").write_text("steps: []\n", encoding="utf-8")
        ScriptedOpenAIClient.script = [
            ChatResponse(tool_calls=[
                ToolCall(id="c1", name="ado_echo", arguments='{"text": "hi"}'),
                ToolCall(id="c2", name="local_read_file", arguments='{"path": "build.yml"}'),
            ], finish_reason="tool_calls"),
            ChatResponse(content="All done.", finish_reason="stop"),
        ]
        events = EventChannel()

        result = asyncio.run(run_investigation("investigate build 42", wired, InvestigationOptions(events=events)))

        assert result == "All done."
        tool_names = [t["function"]["name"] for t in ScriptedOpenAIClient.requests[0]["tools"]]
        assert "ado_echo" in tool_names
        assert "local_read_file" in tool_names
        tool_messages = [m for m in ScriptedOpenAIClient.requests[1]["messages"] if m["role"] == "tool"]
        assert json.loads(tool_messages[0]["content"]) == {"text": "hi"}
        assert tool_messages[1]["content"] == "steps: []\n"
        assert not RecordingMcpClient.instances[0].connected
        assert isinstance(events.drain()[-1], Completed)

    def test_abort_mid_call_tears_down_server(self, wired):
        ScriptedOpenAIClient.script = ["hang"]

        async def scenario():
            abort = AbortSignal()
            asyncio.get_running_loop().call_later(0.2, abort.abort, "user")
            return await run_investigation("x", wired, InvestigationOptions(abort=abort))

        assert asyncio.run(scenario()) == CANCELED_MESSAGE
        assert not RecordingMcpClient.instances[0].connected

    def test_server_crash_before_handshake_is_fatal(self, wired):
        wired.server_args = ["--crash-on-start"]
        with pytest.raises(ServerUnavailable):
            asyncio.run(run_investigation("x", wired))
        assert ScriptedOpenAIClient.requests == []
