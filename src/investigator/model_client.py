"""Azure OpenAI chat completions client with streaming and tool calling."""

import asyncio
import codecs
import itertools
import json
import os
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import httpx

from .config import O4_MINI_MIN_API_VERSION, ReasoningProfile, ensure_compatible_api_version
from .errors import ContextLengthExceeded, InvestigationAborted, ModelRequestError
from .interrupt import AbortSignal
from .logger import get_logger, truncate
from .stream_assembler import ChatResponse, StreamAssembler
from .transcript import Entry, ToolCall

_log = get_logger("model_client")

T = TypeVar("T")

# Best-effort: Azure reports context overflows only through the error text,
# so a change in wording silently disables compaction-and-retry.
CONTEXT_LENGTH_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "too many tokens",
    "reduce the length",
    "prompt is too long",
    "string_above_max_length",
)

_O4_MINI_VERSION_MARKERS = (
    "model o4-mini is enabled only for api versions",
    "2024-12-01-preview and later",
)

_HEADER_HINTS = ("x-ms", "openai", "request-id", "trace", "cache")

_diagnostics_ids = itertools.count(1)


def is_context_length_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in CONTEXT_LENGTH_MARKERS)


def is_o4_mini_version_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _O4_MINI_VERSION_MARKERS)


def backoff_delay(attempt: int) -> int:
    """Exponential backoff: 2, 4, 8 ... seconds, capped at 60."""
    return min(2 ** (attempt + 1), 60)


def diagnostics_enabled() -> bool:
    return os.environ.get("AOAI_DIAGNOSTICS", "").lower() in ("1", "true", "yes")


async def _guarded(awaitable: Awaitable[T], abort: Optional[AbortSignal]) -> T:
    """Await ``awaitable`` unless ``abort`` fires first.

    On abort the pending work is cancelled (closing any open HTTP stream)
    and InvestigationAborted is raised.
    """
    if abort is None:
        return await awaitable
    if abort.aborted:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise InvestigationAborted(abort.reason)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        if not waiter.done():
            waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except (asyncio.CancelledError, Exception):
        pass
    raise InvestigationAborted(abort.reason)


class AzureOpenAIClient:
    """Client for one Azure OpenAI deployment.

    Use as an async context manager; the underlying httpx.AsyncClient lives
    for the duration of the ``async with`` block.
    """

    def __init__(
        self,
        api_key: str,
        profile: ReasoningProfile,
        max_completion_tokens: int = 4096,
        timeout: Optional[httpx.Timeout] = None,
        max_retries: int = 3,
        on_diagnostics: Optional[Callable[[Dict[str, Any]], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.profile = profile
        self.max_completion_tokens = max_completion_tokens
        self.timeout = timeout or httpx.Timeout(300.0, connect=30.0)
        self.max_retries = max_retries
        self.on_diagnostics = on_diagnostics
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> Dict[str, str]:
        return {
            "api-key": self.api_key,
            "Content-Type": "application/json",
        }

    def _payload(
        self,
        messages: Sequence[Union[Entry, Dict[str, Any]]],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [m.to_dict() if isinstance(m, Entry) else m for m in messages],
            "max_completion_tokens": self.max_completion_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _emit_diagnostics(self, payload: Dict[str, Any]) -> None:
        if self.on_diagnostics:
            self.on_diagnostics(payload)
        if diagnostics_enabled():
            _log.info("[AOAI_DIAGNOSTICS] %s", json.dumps(payload, default=str))

    @staticmethod
    def _interesting_headers(response: httpx.Response) -> Dict[str, str]:
        return {
            key.lower(): value
            for key, value in response.headers.items()
            if any(hint in key.lower() for hint in _HEADER_HINTS)
        }

    async def chat(
        self,
        messages: Sequence[Union[Entry, Dict[str, Any]]],
        tools: Optional[List[Dict[str, Any]]] = None,
        abort: Optional[AbortSignal] = None,
    ) -> ChatResponse:
        """Single-shot chat completion."""
        return await self._request(
            "chat", self._payload(messages, tools, stream=False), abort, self._read_message,
        )

    async def chat_stream(
        self,
        messages: Sequence[Union[Entry, Dict[str, Any]]],
        tools: Optional[List[Dict[str, Any]]] = None,
        on_content: Optional[Callable[[str], None]] = None,
        on_tool_call: Optional[Callable[[ToolCall], None]] = None,
        abort: Optional[AbortSignal] = None,
    ) -> ChatResponse:
        """Streamed chat completion; text deltas go to ``on_content`` as they arrive.

        Once any delta has been delivered a broken stream is not retried,
        since the listener cannot take back what it already showed.
        """
        delivered = []

        def content(text: str) -> None:
            delivered.append(True)
            if on_content:
                on_content(text)

        def tool_call(call: ToolCall) -> None:
            delivered.append(True)
            if on_tool_call:
                on_tool_call(call)

        async def read(response: httpx.Response) -> ChatResponse:
            assembler = StreamAssembler(on_content=content, on_tool_call=tool_call)
            await self._read_stream(response, assembler)
            return assembler.finish()

        return await self._request(
            "chat_stream", self._payload(messages, tools, stream=True), abort, read,
            can_retry=lambda: not delivered,
        )

    @staticmethod
    async def _read_message(response: httpx.Response) -> ChatResponse:
        await response.aread()
        return ChatResponse.from_message(response.json())

    @staticmethod
    async def _read_stream(response: httpx.Response, assembler: StreamAssembler) -> None:
        """Parse an SSE body line by line into ``assembler``."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        line_buffer = ""

        async for raw_chunk in response.aiter_bytes():
            line_buffer += decoder.decode(raw_chunk)

            while "\n" in line_buffer:
                line, line_buffer = line_buffer.split("\n", 1)
                line = line.strip()

                if not line or not line.startswith("data:"):
                    continue

                data_str = line[5:].strip()
                if data_str == "[DONE]":
                    return

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    _log.debug("Skipping malformed SSE line: %s", truncate(data_str))
                    continue

                if isinstance(data, dict):
                    assembler.feed_chunk(data)

    async def _request(
        self,
        call_type: str,
        payload: Dict[str, Any],
        abort: Optional[AbortSignal],
        read: Callable[[httpx.Response], Awaitable[ChatResponse]],
        can_retry: Callable[[], bool] = lambda: True,
    ) -> ChatResponse:
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        diagnostics_id = next(_diagnostics_ids)
        deployment = self.profile.deployment
        api_version = ensure_compatible_api_version(deployment, self.profile.api_version)
        version_upgraded = False
        attempt = 0
        t0 = time.time()

        _log.info(
            "%s: deployment=%s api_version=%s msgs=%d tools=%d",
            call_type, deployment, api_version,
            len(payload["messages"]), len(payload.get("tools") or []),
        )

        while True:
            url = self.profile.chat_url(api_version)
            try:
                response_or_error = await _guarded(self._attempt(url, payload, read), abort)
            except (httpx.TimeoutException, httpx.RequestError) as e:
                _log.warning("Connection error on attempt %d/%d: %s: %s",
                             attempt + 1, self.max_retries, type(e).__name__, e)
                if not can_retry():
                    _log.warning("Stream broke after output was delivered; not retrying")
                    raise ModelRequestError(0, f"Stream interrupted: {type(e).__name__}: {e}") from e
                if attempt < self.max_retries:
                    await self._backoff(attempt, type(e).__name__, abort)
                    attempt += 1
                    continue
                raise ModelRequestError(0, f"{type(e).__name__}: {e}") from e

            if isinstance(response_or_error, ChatResponse):
                result = response_or_error
                self._emit_diagnostics({
                    "id": diagnostics_id,
                    "call_type": call_type,
                    "stage": "completed",
                    "deployment": deployment,
                    "api_version": api_version,
                    "usage": result.usage,
                    "finish_reason": result.finish_reason,
                    "output_chars": len(result.content or ""),
                    "tool_calls": len(result.tool_calls),
                })
                _log.info("%s complete: finish=%s content_len=%d tool_calls=%d elapsed=%.1fs usage=%s",
                          call_type, result.finish_reason, len(result.content or ""),
                          len(result.tool_calls), time.time() - t0, result.usage)
                return result

            status, body, headers = response_or_error
            self._emit_diagnostics({
                "id": diagnostics_id,
                "call_type": call_type,
                "stage": "error_response",
                "deployment": deployment,
                "api_version": api_version,
                "status": status,
                "headers": headers,
            })
            _log.warning("HTTP error %d on attempt %d/%d: %s",
                         status, attempt + 1, self.max_retries, truncate(body, 500))

            if (
                status == 400
                and not version_upgraded
                and deployment.lower().startswith("o4-mini")
                and api_version != O4_MINI_MIN_API_VERSION
                and is_o4_mini_version_error(body)
            ):
                _log.info("Retrying with api-version %s for %s", O4_MINI_MIN_API_VERSION, deployment)
                api_version = O4_MINI_MIN_API_VERSION
                version_upgraded = True
                continue

            if status == 400 and is_context_length_error(body):
                raise ContextLengthExceeded(status, body)

            error = ModelRequestError(status, body)
            if error.retryable and attempt < self.max_retries:
                await self._backoff(attempt, f"HTTP {status}", abort)
                attempt += 1
                continue
            raise error

    async def _attempt(self, url: str, payload: Dict[str, Any], read):
        """One HTTP round trip: a ChatResponse, or (status, body, headers) on failure."""
        async with self._client.stream("POST", url, headers=self._get_headers(), json=payload) as response:
            if response.status_code >= 400:
                await response.aread()
                return response.status_code, response.text, self._interesting_headers(response)
            return await read(response)

    async def _backoff(self, attempt: int, reason: str, abort: Optional[AbortSignal]) -> None:
        wait = backoff_delay(attempt)
        _log.info("Retrying in %ds (attempt %d/%d) reason=%s", wait, attempt + 1, self.max_retries, reason)
        await _guarded(asyncio.sleep(wait), abort)
