"""Progress events emitted by the agent loop.

The loop never renders anything itself.  It pushes events into an
EventChannel and whoever is listening (the CLI, a test, a server) decides
what to show.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Union


@dataclass(frozen=True)
class Started:
    prompt: str


@dataclass(frozen=True)
class TurnStarted:
    turn: int
    max_turns: int


@dataclass(frozen=True)
class AssistantChunk:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResultReady:
    name: str
    content: str


@dataclass(frozen=True)
class ContextCompacted:
    before_chars: int
    after_chars: int
    emergency: bool = False


@dataclass(frozen=True)
class Completed:
    result: str


@dataclass(frozen=True)
class Canceled:
    pass


@dataclass(frozen=True)
class MaxTurnsReached:
    pass


@dataclass(frozen=True)
class Diagnostics:
    payload: Dict[str, Any] = field(default_factory=dict)


Event = Union[
    Started,
    TurnStarted,
    AssistantChunk,
    ToolCallStarted,
    ToolResultReady,
    ContextCompacted,
    Completed,
    Canceled,
    MaxTurnsReached,
    Diagnostics,
]

_CLOSED = object()


class EventChannel:
    """Unbounded queue of events with an async iterator on the consuming side."""

    def __init__(self):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: Event) -> None:
        """Queue an event.  Never blocks; events after close() are dropped."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def drain(self) -> list:
        """Return every queued event without waiting (mainly for tests)."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            items.append(item)
        return items


def emit(channel: Optional[EventChannel], event: Event) -> None:
    """Emit to ``channel`` when there is one."""
    if channel is not None:
        channel.emit(event)
