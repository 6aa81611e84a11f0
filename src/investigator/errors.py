"""Exception types shared by the investigator modules."""

from typing import Any, Optional


class InvestigatorError(Exception):
    """Base class for every error raised by the investigator."""


class ModelRequestError(InvestigatorError):
    """The chat completions endpoint rejected a request or could not be reached."""

    RETRYABLE_STATUSES = (429, 500, 502, 503)

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        label = f"HTTP {status}" if status else "transport failure"
        super().__init__(f"Azure OpenAI API error ({label}): {body}")

    @property
    def retryable(self) -> bool:
        return self.status in self.RETRYABLE_STATUSES


class ContextLengthExceeded(ModelRequestError):
    """The model refused the request because the transcript is too large."""


class ProtocolError(InvestigatorError):
    """A JSON-RPC error response from the tool server."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


class ProtocolTimeout(InvestigatorError):
    """A tool server request did not get a response before its deadline."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Tool server request timed out after {timeout:g}s: {method}")


class ServerUnavailable(InvestigatorError):
    """The tool server process could not be started or is no longer writable."""


class ToolExecutionError(InvestigatorError):
    """A tool ran and failed."""


class RemoteToolError(ToolExecutionError):
    """The tool server ran a tool and reported it as failed."""


class InvestigationAborted(InvestigatorError):
    """The session's abort signal fired while work was in flight."""

    def __init__(self, reason: str = "user"):
        self.reason = reason
        super().__init__(f"Investigation aborted ({reason})")
