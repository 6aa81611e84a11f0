"""JSON-RPC client for a tool server running as a child process.

The server speaks line-delimited JSON-RPC 2.0 over its stdin/stdout (the
MCP stdio transport).  One client owns exactly one process for the length
of one investigation session.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ProtocolError, ProtocolTimeout, RemoteToolError, ServerUnavailable
from .logger import get_logger, truncate

_log = get_logger("mcp_client")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "build-investigator", "version": "0.1.0"}
DEFAULT_REQUEST_TIMEOUT = 30.0

_READ_CHUNK = 64 * 1024


@dataclass
class McpTool:
    """A tool advertised by the server's ``tools/list``."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "McpTool":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {"type": "object", "properties": {}},
        )


def flatten_content(result: Any) -> str:
    """Join the text blocks of a ``tools/call`` result with newlines."""
    if not isinstance(result, dict):
        return "" if result is None else str(result)
    blocks = result.get("content") or []
    return "\n".join(
        block.get("text", "") for block in blocks
        if isinstance(block, dict) and isinstance(block.get("text"), str)
    )


class McpClient:
    """Owns one tool-server subprocess and correlates its responses by id."""

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.request_timeout = request_timeout

        self.tools: List[McpTool] = []
        self.server_info: Dict[str, Any] = {}

        self._process: Optional[asyncio.subprocess.Process] = None
        self._next_id = 0
        self._pending: Dict[int, Tuple[asyncio.Future, asyncio.TimerHandle]] = {}
        self._buffer = b""
        self._tasks: List[asyncio.Task] = []
        self._initialized = False
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Lifecycle ────────────────────────────────────────────

    async def connect(self) -> List[McpTool]:
        """Start the server, perform the handshake and discover its tools."""
        if self._process is not None:
            raise RuntimeError("McpClient is already connected")

        env = {**os.environ, **self.env}
        _log.info("Starting tool server: %s %s", self.command, " ".join(self.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise ServerUnavailable(f"Failed to start tool server: {e}") from e

        self._tasks = [
            asyncio.ensure_future(self._read_stdout(self._process)),
            asyncio.ensure_future(self._drain_stderr(self._process)),
            asyncio.ensure_future(self._watch_exit(self._process)),
        ]

        try:
            await self._initialize()
            await self.list_tools()
        except BaseException:
            await self.disconnect()
            raise
        return self.tools

    async def _initialize(self) -> None:
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self.notify("notifications/initialized")
        self._initialized = True
        _log.info("Tool server initialised: %s", self.server_info)

    async def disconnect(self) -> None:
        """Close stdin and terminate the process.  Safe to call more than once."""
        process, self._process = self._process, None
        if process is None:
            return
        self._closing = True

        for future, timer in self._pending.values():
            timer.cancel()
            if not future.done():
                future.set_exception(ServerUnavailable("Tool server disconnected"))
        self._pending.clear()

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                _log.warning("Tool server did not exit after terminate; killing it")
                process.kill()
                await process.wait()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        _log.info("Tool server stopped (exit code %s)", process.returncode)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    # ── Protocol primitives ─────────────────────────────────

    async def _write(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise ServerUnavailable("Tool server is not running")
        data = (json.dumps(message) + "\n").encode("utf-8")
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ServerUnavailable(f"Tool server stdin closed: {e}") from e

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for the response with the same id."""
        self._next_id += 1
        request_id = self._next_id
        timeout = self.request_timeout if timeout is None else timeout

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, method, timeout)
        self._pending[request_id] = (future, timer)

        _log.debug("-> [%d] %s %s", request_id, method, truncate(json.dumps(params or {}), 300))
        try:
            await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await future
        finally:
            entry = self._pending.pop(request_id, None)
            if entry is not None:
                entry[1].cancel()

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification; no response is expected."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    def _expire(self, request_id: int, method: str, timeout: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        future, _ = entry
        if not future.done():
            _log.warning("Request %d (%s) timed out after %.1fs", request_id, method, timeout)
            future.set_exception(ProtocolTimeout(method, timeout))

    def _handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            _log.debug("Ignoring non-JSON line from tool server: %s", truncate(text))
            return
        if not isinstance(message, dict):
            return

        request_id = message.get("id")
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            # Server-initiated notifications and requests are not handled.
            return
        entry = self._pending.pop(request_id, None)
        if entry is None:
            _log.debug("Dropping response with unknown id %r", request_id)
            return

        future, timer = entry
        timer.cancel()
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                future.set_exception(ProtocolError(
                    error.get("code", -32603), str(error.get("message", "")), error.get("data"),
                ))
            else:
                future.set_exception(ProtocolError(-32603, str(error)))
        else:
            future.set_result(message.get("result"))

    def feed(self, data: bytes) -> None:
        """Add raw stdout bytes; complete lines are handled, the rest is held."""
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self._handle_line(line)

    # ── Background tasks ─────────────────────────────────────

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        stdout = process.stdout
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            self.feed(chunk)
        if self._buffer.strip():
            self._handle_line(self._buffer)
        self._buffer = b""

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        stderr = process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                break
            _log.debug("[tool server] %s", line.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._closing:
            return
        if code not in (0, None):
            _log.error("Tool server exited with code %s", code)
        else:
            _log.info("Tool server exited")
        if not self._initialized:
            # Nothing will ever answer the handshake.
            for request_id in list(self._pending):
                future, timer = self._pending.pop(request_id)
                timer.cancel()
                if not future.done():
                    future.set_exception(ServerUnavailable(f"Tool server exited with code {code} during startup"))

    # ── Tools ────────────────────────────────────────────────

    async def list_tools(self) -> List[McpTool]:
        result = await self.request("tools/list")
        tools = result.get("tools", []) if isinstance(result, dict) else []
        self.tools = [McpTool.from_dict(tool) for tool in tools if isinstance(tool, dict) and tool.get("name")]
        _log.info("Discovered %d remote tools: %s", len(self.tools), ", ".join(t.name for t in self.tools))
        return self.tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        """Run a tool and return its content blocks as one string."""
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        text = flatten_content(result)
        if isinstance(result, dict) and result.get("isError"):
            raise RemoteToolError(text or f"Tool {name} failed")
        return text
