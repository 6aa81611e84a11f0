"""Reassembles a streamed chat completion into text plus finished tool calls."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .transcript import ToolCall

FINISH_REASONS = ("stop", "tool_calls", "length", "content_filter")


@dataclass
class ChatResponse:
    """One finished model response, streamed or not."""

    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "ChatResponse":
        """Build from a non-streamed chat completions response body."""
        choices = data.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content")
        return cls(
            content=content if content else None,
            tool_calls=[ToolCall.from_dict(tc) for tc in message.get("tool_calls") or []],
            finish_reason=choice.get("finish_reason") or "stop",
            usage=data.get("usage") or {},
        )


@dataclass
class _PartialToolCall:
    index: int
    id: str = ""
    name: str = ""
    argument_parts: List[str] = field(default_factory=list)

    def finish(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments="".join(self.argument_parts))


class StreamAssembler:
    """Accumulates streamed deltas for exactly one response.

    Feed it the first choice of every chunk, then call ``finish()``.  Partial
    tool calls are never exposed before ``finish()``; the assembler refuses
    further input afterwards.
    """

    def __init__(
        self,
        on_content: Optional[Callable[[str], None]] = None,
        on_tool_call: Optional[Callable[[ToolCall], None]] = None,
    ):
        self.on_content = on_content
        self.on_tool_call = on_tool_call
        self._content_parts: List[str] = []
        self._calls: Dict[int, _PartialToolCall] = {}
        self._finish_reason: Optional[str] = None
        self._usage: Dict[str, Any] = {}
        self._finished = False

    def feed_chunk(self, data: Dict[str, Any]) -> None:
        """Feed one parsed SSE chunk (``{"choices": [...], "usage": ...}``)."""
        if data.get("usage"):
            self._usage = data["usage"]
        choices = data.get("choices") or []
        if choices:
            self.feed(choices[0])

    def feed(self, choice: Dict[str, Any]) -> None:
        """Feed one choice fragment: ``{"delta": {...}, "finish_reason": ...}``."""
        if self._finished:
            raise RuntimeError("StreamAssembler already finished")

        delta = choice.get("delta") or {}

        content = delta.get("content")
        if isinstance(content, list):
            # Some providers send content parts instead of a string.
            content = "".join(
                part.get("text", "") for part in content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        if content:
            self._content_parts.append(content)
            if self.on_content:
                self.on_content(content)

        for fragment in delta.get("tool_calls") or []:
            self._feed_tool_call(fragment)

        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]

    def _feed_tool_call(self, fragment: Dict[str, Any]) -> None:
        index = fragment.get("index", 0)
        partial = self._calls.get(index)
        if partial is None:
            partial = self._calls[index] = _PartialToolCall(index=index)

        if fragment.get("id") and not partial.id:
            partial.id = fragment["id"]

        function = fragment.get("function") or {}
        if function.get("name"):
            partial.name += function["name"]
        if function.get("arguments"):
            partial.argument_parts.append(function["arguments"])

    def finish(self) -> ChatResponse:
        """Finalize: tool calls in index order, content None when no text arrived."""
        if self._finished:
            raise RuntimeError("StreamAssembler already finished")
        self._finished = True

        tool_calls = [self._calls[i].finish() for i in sorted(self._calls)]
        if self.on_tool_call:
            for call in tool_calls:
                self.on_tool_call(call)

        content = "".join(self._content_parts)
        return ChatResponse(
            content=content if content else None,
            tool_calls=tool_calls,
            finish_reason=self._finish_reason or "stop",
            usage=self._usage,
        )
