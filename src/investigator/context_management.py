"""Context budget enforcement - keeps the transcript inside the model's input limits.

Every entry is clamped to a role-specific ceiling with a head/tail cut,
then the oldest unprotected entries are dropped until the whole transcript
fits.  The system entry and the initiating user entry always survive.
"""

from dataclasses import dataclass
from typing import Optional

from .config import BudgetLimits
from .logger import get_logger
from .transcript import PROTECTED_ENTRIES, Entry, ToolCall, Transcript

_log = get_logger("context")

HEAD_SHARE = 0.6

# Aggressive ceilings are a quarter of the normal ones, never below this.
AGGRESSIVE_DIVISOR = 4
AGGRESSIVE_FLOOR = 500

COMPACT_KEEP_ENTRIES = 8
COMPACT_ENTRY_CHARS = 4_000


def truncation_marker(original: int, limit: int) -> str:
    return f"\n...[truncated {original} -> {limit} chars]...\n"


def clamp_text(text: str, limit: int) -> str:
    """Cut ``text`` down to exactly ``limit`` characters, keeping head and tail.

    The first ~60% and last ~40% of the allowed room survive around a marker
    line.  Text that already fits is returned unchanged, so clamping twice
    with the same limit is a no-op.
    """
    limit = max(0, limit)
    if len(text) <= limit:
        return text

    marker = truncation_marker(len(text), limit)
    room = limit - len(marker)
    if room <= 0:
        return text[:limit]

    head = int(room * HEAD_SHARE)
    tail = room - head
    return text[:head] + marker + (text[-tail:] if tail else "")


def clamp_entry(entry: Entry, content_limit: Optional[int], args_limit: Optional[int]) -> Entry:
    """Return ``entry`` with its content and tool-call arguments clamped.

    A limit of None leaves that part alone.  The same object comes back when
    nothing needed cutting.
    """
    content = entry.content
    if content is not None and content_limit is not None:
        content = clamp_text(content, content_limit)

    tool_calls = entry.tool_calls
    if tool_calls and args_limit is not None:
        tool_calls = [
            call if len(call.arguments) <= args_limit
            else ToolCall(id=call.id, name=call.name, arguments=clamp_text(call.arguments, args_limit))
            for call in tool_calls
        ]

    if content is entry.content and all(a is b for a, b in zip(tool_calls, entry.tool_calls)):
        return entry
    return Entry(
        role=entry.role,
        content=content,
        tool_calls=list(tool_calls),
        tool_call_id=entry.tool_call_id,
    )


def _aggressive(limit: int) -> int:
    return min(limit, max(AGGRESSIVE_FLOOR, limit // AGGRESSIVE_DIVISOR))


@dataclass
class BudgetReport:
    """What one enforcement pass did to the transcript."""

    before_chars: int
    after_chars: int = 0
    dropped: int = 0
    clamped: int = 0
    aggressive: bool = False
    squeezed: bool = False
    emergency: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.dropped or self.clamped or self.squeezed)


class ContextBudget:
    """Applies one session's BudgetLimits to its transcript."""

    def __init__(self, limits: BudgetLimits):
        self.limits = limits

    def ceilings(self, role: str, aggressive: bool = False):
        """(content limit, tool-call args limit) for a role; None means unbounded."""
        content: Optional[int] = None
        if role == "tool":
            content = self.limits.max_tool_result_chars
        elif role == "assistant":
            content = self.limits.max_assistant_chars
        args: Optional[int] = self.limits.max_tool_args_chars

        if aggressive:
            content = _aggressive(content) if content is not None else None
            args = _aggressive(args)
        return content, args

    def _clamp_all(self, transcript: Transcript, aggressive: bool, start: int = 0) -> int:
        changed = 0
        for i in range(start, len(transcript)):
            entry = transcript[i]
            content_limit, args_limit = self.ceilings(entry.role, aggressive)
            clamped = clamp_entry(entry, content_limit, args_limit)
            if clamped is not entry:
                transcript.replace(i, clamped)
                changed += 1
        return changed

    def _squeeze(self, transcript: Transcript) -> None:
        """Give every entry an equal share of the limit."""
        share = self.limits.max_transcript_chars // max(1, len(transcript))
        for i in range(len(transcript)):
            entry = transcript[i]
            if entry.size <= share:
                continue
            names = sum(len(call.name) for call in entry.tool_calls)
            room = max(0, share - names)
            if entry.tool_calls:
                content_limit = room // 2 if entry.content else 0
                args_limit = (room - content_limit) // len(entry.tool_calls)
            else:
                content_limit, args_limit = room, None
            transcript.replace(i, clamp_entry(entry, content_limit, args_limit))

    def enforce(self, transcript: Transcript) -> BudgetReport:
        """Bring ``transcript`` within ``max_transcript_chars``.  Never fails."""
        limit = self.limits.max_transcript_chars
        report = BudgetReport(before_chars=transcript.total_chars)

        report.clamped += self._clamp_all(transcript, aggressive=False)

        while transcript.total_chars > limit and len(transcript) > PROTECTED_ENTRIES:
            report.dropped += transcript.drop_oldest()

        if transcript.total_chars > limit:
            report.aggressive = True
            report.clamped += self._clamp_all(transcript, aggressive=True)

        # Last resort: equal shares, dropping more history until it fits.
        while transcript.total_chars > limit:
            report.squeezed = True
            self._squeeze(transcript)
            if transcript.total_chars <= limit or len(transcript) <= PROTECTED_ENTRIES:
                break
            report.dropped += transcript.drop_oldest()

        report.after_chars = transcript.total_chars
        if report.changed:
            _log.info(
                "Budget enforced: %d -> %d chars (limit=%d dropped=%d clamped=%d aggressive=%s squeezed=%s)",
                report.before_chars, report.after_chars, limit,
                report.dropped, report.clamped, report.aggressive, report.squeezed,
            )
        return report

    def compact(self, transcript: Transcript) -> BudgetReport:
        """Emergency reduction after the model reported a context-length failure.

        Keeps the system and user entries plus the last few entries, each cut
        to a small fixed ceiling, then runs the normal pass.
        """
        before = transcript.total_chars
        dropped = transcript.keep_recent(COMPACT_KEEP_ENTRIES)
        for i in range(PROTECTED_ENTRIES, len(transcript)):
            transcript.replace(i, clamp_entry(transcript[i], COMPACT_ENTRY_CHARS, COMPACT_ENTRY_CHARS))

        report = self.enforce(transcript)
        report.before_chars = before
        report.dropped += dropped
        report.emergency = True
        _log.warning(
            "Transcript compacted after context-length failure: %d -> %d chars (%d entries kept)",
            before, report.after_chars, len(transcript),
        )
        return report
