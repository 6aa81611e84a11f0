"""Conversation entries exchanged with the model."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

ROLES = ("system", "user", "assistant", "tool")

# Entries 0 (system) and 1 (initiating user prompt) are never pruned.
PROTECTED_ENTRIES = 2


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the raw JSON text the model produced; it is only
    parsed by the router at dispatch time.
    """

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        arguments = function.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = "" if arguments is None else str(arguments)
        return cls(
            id=str(data.get("id") or ""),
            name=function.get("name") or "",
            arguments=arguments,
        )

    @property
    def size(self) -> int:
        return len(self.name) + len(self.arguments)


@dataclass
class Entry:
    """One transcript item."""

    role: str
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown transcript role: {self.role!r}")

    @classmethod
    def system(cls, content: str) -> "Entry":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Entry":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: Optional[str], tool_calls: Optional[List[ToolCall]] = None) -> "Entry":
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Entry":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    @property
    def size(self) -> int:
        """Character footprint: content plus every tool call's name and arguments."""
        return len(self.content or "") + sum(call.size for call in self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a chat completions message."""
        result: Dict[str, Any] = {"role": self.role}

        if self.role == "assistant" and self.tool_calls:
            result["content"] = self.content
            result["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        else:
            result["content"] = self.content or ""

        if self.tool_call_id:
            result["tool_call_id"] = self.tool_call_id

        return result


class Transcript:
    """Ordered conversation history for one investigation.

    Append-only except for pruning from the front, which always keeps the
    system entry and the initiating user entry.
    """

    def __init__(self, system_prompt: str, user_prompt: str):
        self._entries: List[Entry] = [Entry.system(system_prompt), Entry.user(user_prompt)]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries)

    def __getitem__(self, index: int) -> Entry:
        return self._entries[index]

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries)

    @property
    def total_chars(self) -> int:
        return sum(entry.size for entry in self._entries)

    def append(self, entry: Entry) -> None:
        if entry.role == "system":
            raise ValueError("Only the first transcript entry may be a system entry")
        self._entries.append(entry)

    def replace(self, index: int, entry: Entry) -> None:
        """Swap an entry for a clamped copy of itself (same role, same position)."""
        if entry.role != self._entries[index].role:
            raise ValueError("Replacement entry must keep the original role")
        self._entries[index] = entry

    def drop_oldest(self) -> int:
        """Drop the oldest unprotected entry and return how many were removed.

        An assistant entry that carries tool calls goes together with the
        tool entries answering it, so the transcript never holds a tool
        result without the call that produced it.
        """
        if len(self._entries) <= PROTECTED_ENTRIES:
            return 0

        first = self._entries[PROTECTED_ENTRIES]
        end = PROTECTED_ENTRIES + 1
        if first.role == "assistant" and first.tool_calls:
            call_ids = {call.id for call in first.tool_calls}
            while (
                end < len(self._entries)
                and self._entries[end].role == "tool"
                and self._entries[end].tool_call_id in call_ids
            ):
                end += 1

        # Tool entries left at the front have lost their call.
        while end < len(self._entries) and self._entries[end].role == "tool":
            end += 1

        removed = end - PROTECTED_ENTRIES
        del self._entries[PROTECTED_ENTRIES:end]
        return removed

    def keep_recent(self, count: int) -> int:
        """Keep the protected entries plus the last ``count`` entries."""
        tail_start = max(PROTECTED_ENTRIES, len(self._entries) - count)
        tail = self._entries[tail_start:]
        # Leading tool entries would answer a call that is no longer present.
        while tail and tail[0].role == "tool":
            tail.pop(0)
        removed = len(self._entries) - PROTECTED_ENTRIES - len(tail)
        self._entries = self._entries[:PROTECTED_ENTRIES] + tail
        return removed

    def to_messages(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def last_assistant_text(self) -> Optional[str]:
        for entry in reversed(self._entries):
            if entry.role == "assistant" and entry.content:
                return entry.content
        return None
