"""Investigation sessions: one subprocess, one transcript, one result at a time.

Every piece of per-investigation state (abort signal, running flag, the last
result used for follow-ups) lives on an InvestigationSession instance so
that concurrent sessions never share anything mutable.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

from .agent import CANCELED_MESSAGE, DEFAULT_MAX_TURNS, MAX_TURNS_MESSAGE, InvestigationAgent
from .config import BudgetLimits, Config
from .errors import InvestigatorError
from .events import Diagnostics, EventChannel, emit
from .interrupt import AbortSignal
from .logger import get_logger
from .mcp_client import DEFAULT_REQUEST_TIMEOUT, McpClient
from .model_client import AzureOpenAIClient
from .prompts import build_prompt, get_system_prompt
from .tool_router import LocalToolFamily, RemoteToolFamily, ToolRouter
from .tools import RepoPaths, register_local_tools

_log = get_logger("session")

__all__ = [
    "InvestigationOptions",
    "InvestigationSession",
    "SessionBusy",
    "build_prompt",
    "run_investigation",
]


class SessionBusy(InvestigatorError):
    """An investigation is already running in this session."""


@dataclass
class InvestigationOptions:
    max_turns: int = DEFAULT_MAX_TURNS
    reasoning: Optional[str] = None
    limits: Optional[BudgetLimits] = None
    stream: bool = True
    abort: Optional[AbortSignal] = None
    events: Optional[EventChannel] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_completion_tokens: int = 4096


def build_router(config: Config, client: McpClient) -> ToolRouter:
    paths = RepoPaths(config.repo_base_path, config.repo_lookup_paths, config.repo_index_path)
    return ToolRouter([
        RemoteToolFamily(client),
        LocalToolFamily(register_local_tools(paths)),
    ])


async def run_investigation(prompt: str, config: Config, options: Optional[InvestigationOptions] = None) -> str:
    """Run one investigation end to end.

    Starts the devops tool server, wires the router and model client, runs
    the agent loop and always tears the tool server down afterwards.
    """
    options = options or InvestigationOptions()
    abort = options.abort or AbortSignal()
    mode = options.reasoning or config.default_reasoning
    profile = config.profile(mode)
    limits = options.limits or BudgetLimits.for_mode(mode)

    command, args = config.devops_server_command()
    client = McpClient(command, args, env=config.devops_server_env(), request_timeout=options.request_timeout)

    # Tearing the server down fails any in-flight tool call immediately.
    teardown = []
    abort.add_listener(lambda reason: teardown.append(asyncio.ensure_future(client.disconnect())))

    _log.info("Investigation: mode=%s deployment=%s max_turns=%d", mode, profile.deployment, options.max_turns)
    router = build_router(config, client)
    try:
        try:
            await client.connect()
        except InvestigatorError:
            if abort.aborted:
                return CANCELED_MESSAGE
            raise

        def on_diagnostics(payload):
            emit(options.events, Diagnostics(payload))

        async with AzureOpenAIClient(
            config.azure_openai_key,
            profile,
            max_completion_tokens=options.max_completion_tokens,
            on_diagnostics=on_diagnostics,
        ) as model:
            agent = InvestigationAgent(
                model,
                router,
                get_system_prompt(config.ado_project_url, config.repo_base_path),
                limits=limits,
                events=options.events,
                stream=options.stream,
            )
            return await agent.run(prompt, max_turns=options.max_turns, abort=abort)
    finally:
        await router.aclose()
        if teardown:
            await asyncio.gather(*teardown, return_exceptions=True)


Runner = Callable[[str, Config, InvestigationOptions], Awaitable[str]]


@dataclass
class InvestigationSession:
    """Per-user session: serialises investigations and remembers the last result."""

    config: Config
    runner: Runner = run_investigation
    last_result: Optional[str] = None
    _running: bool = field(default=False, init=False)
    _abort: Optional[AbortSignal] = field(default=None, init=False)

    @property
    def running(self) -> bool:
        return self._running

    def prompt_for(
        self,
        mode: str,
        build_id: Optional[int] = None,
        query: Optional[str] = None,
        pipeline: Optional[str] = None,
    ) -> str:
        """Build the user prompt, carrying this session's last result into follow-ups."""
        return build_prompt(mode, build_id=build_id, query=query, previous_result=self.last_result, pipeline=pipeline)

    async def investigate(self, prompt: str, options: Optional[InvestigationOptions] = None) -> str:
        if self._running:
            raise SessionBusy("An investigation is already running in this session")

        options = options or InvestigationOptions()
        abort = options.abort or AbortSignal()
        self._abort = abort
        self._running = True
        try:
            result = await self.runner(prompt, self.config, replace(options, abort=abort))
        finally:
            self._running = False
            self._abort = None

        if result not in (CANCELED_MESSAGE, MAX_TURNS_MESSAGE):
            self.last_result = result
        return result

    def cancel(self, reason: str = "user") -> bool:
        """Abort the running investigation.  Returns False when nothing is running."""
        if not self._running or self._abort is None:
            return False
        self._abort.abort(reason)
        return True

    def reset(self) -> None:
        self.last_result = None
