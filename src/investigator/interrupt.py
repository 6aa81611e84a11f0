"""Cancellation handling for investigation sessions.

Each session owns its own AbortSignal; nothing here is process-wide except
the temporary Ctrl+C handler installed by ``sigint_aborts``.
"""

import asyncio
import signal
from contextlib import contextmanager
from typing import Callable, List, Optional

from .errors import InvestigationAborted
from .logger import get_logger

_log = get_logger("interrupt")


class AbortSignal:
    """Session-scoped cancellation flag."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = ""
        self._listeners: List[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def abort(self, reason: str = "user") -> None:
        """Fire the signal.  Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        _log.info("Abort signalled: %s", reason)
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception as e:
                _log.warning("Abort listener failed: %s", e)

    def add_listener(self, callback: Callable[[str], None]) -> None:
        """Run ``callback(reason)`` once when the signal fires."""
        if self._event.is_set():
            callback(self._reason)
            return
        self._listeners.append(callback)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise InvestigationAborted(self._reason)


@contextmanager
def sigint_aborts(abort: AbortSignal, loop: Optional[asyncio.AbstractEventLoop] = None):
    """Make Ctrl+C abort ``abort`` instead of killing the process.

    The first press aborts the session; a second press raises
    KeyboardInterrupt.  The previous handler is restored on exit.
    """
    def _handler(signum=None, frame=None):
        if abort.aborted:
            raise KeyboardInterrupt()
        abort.abort("ctrl-c")

    installed_on_loop = False
    original = None
    if loop is not None:
        try:
            loop.add_signal_handler(signal.SIGINT, _handler)
            installed_on_loop = True
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal support
            pass
    if not installed_on_loop:
        original = signal.signal(signal.SIGINT, _handler)

    try:
        yield abort
    finally:
        if installed_on_loop:
            loop.remove_signal_handler(signal.SIGINT)
        elif original is not None:
            signal.signal(signal.SIGINT, original)
