"""Tool-server transport client built on the MCP client SDK.

One :class:`TransportClient` owns one tool server connection for its whole
lifetime: it validates the server configuration, opens the transport
(``stdio`` child process, ``sse`` or streaming ``http``), performs the
protocol handshake and finally releases everything on :meth:`close`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shlex
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Tuple

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from agentbench import __version__
from agentbench.loader import parse_duration
from agentbench.models import ServerConfig, ServerType, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)

CLIENT_NAME = "agentbench"
DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_PROCESS_STARTUP_DELAY = 0.3
HEALTH_CHECK_TIMEOUT = 5.0
CLI_SHELLS = ("powershell", "pwsh", "cmd", "bash", "sh", "zsh")


class TransportError(Exception):
    """Raised for invalid server configuration, connection or lifecycle errors."""


class ClientState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


def validate_server_config(config: ServerConfig) -> None:
    """Reject a server configuration that cannot be connected.

    Raises:
        TransportError: Describing the first problem found.
    """
    if not config.name:
        raise TransportError("server name cannot be empty")

    if config.type == ServerType.STDIO:
        if not config.command.strip():
            raise TransportError(f"server '{config.name}': stdio command cannot be empty")
        return

    if config.type in (ServerType.SSE, ServerType.HTTP):
        url = config.url
        if not url:
            raise TransportError(f"server '{config.name}': {config.type} server requires a url")
        if url != url.strip():
            raise TransportError(
                f"server '{config.name}': url has leading or trailing whitespace: {url!r}"
            )
        if not (url.startswith("http://") or url.startswith("https://")):
            raise TransportError(
                f"server '{config.name}': url must start with http:// or https://, got {url!r}"
            )
        for header in config.headers:
            if ":" not in header:
                raise TransportError(
                    f"server '{config.name}': invalid header {header!r}, expected 'Key: value'"
                )
        return

    if config.type == ServerType.CLI:
        if not config.command.strip():
            raise TransportError(f"server '{config.name}': command is required for cli servers")
        if config.shell and config.shell.lower() not in CLI_SHELLS:
            raise TransportError(
                f"server '{config.name}': unsupported shell {config.shell!r} "
                f"(supported: {', '.join(CLI_SHELLS)})"
            )
        return

    raise TransportError(
        f"server '{config.name}': unknown server type {config.type!r}. "
        f"Valid types: {', '.join(t.value for t in ServerType)}"
    )


def parse_headers(headers: List[str], server_name: str = "") -> Dict[str, str]:
    """Split ``"Key: value"`` strings; invalid entries are logged and skipped."""
    parsed: Dict[str, str] = {}
    for header in headers:
        key, sep, value = header.partition(":")
        key = key.strip()
        if not sep or not key:
            logger.warning("Server %s: skipping invalid header %r", server_name, header)
            continue
        parsed[key] = value.strip()
    if headers and not parsed:
        logger.warning("Server %s: no valid headers, connecting without headers", server_name)
    return parsed


def _delay(value: str, default: float, what: str, server_name: str) -> float:
    if not value:
        return default
    try:
        seconds = parse_duration(value)
    except ValueError:
        logger.warning("Server %s: invalid %s %r, using %.1fs", server_name, what, value, default)
        return default
    return max(seconds, 0.0)


class TransportClient:
    """Client for a single tool server."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.state = ClientState.UNINITIALIZED
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None
        self._streams: Optional[Tuple[Any, Any]] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def handshake_timeout(self) -> float:
        return _delay(self.config.server_delay, DEFAULT_HANDSHAKE_TIMEOUT, "server_delay", self.name)

    @property
    def startup_delay(self) -> float:
        return _delay(self.config.process_delay, DEFAULT_PROCESS_STARTUP_DELAY, "process_delay", self.name)

    # ── Lifecycle ──────────────────────────────────────────────────────

    def validate(self) -> None:
        validate_server_config(self.config)

    async def initialize(self) -> None:
        """Validate, connect and handshake. Cleans up on any failure."""
        if self.state is not ClientState.UNINITIALIZED:
            raise TransportError(f"server '{self.name}': cannot initialize from state {self.state.value}")

        self.state = ClientState.VALIDATING
        try:
            self.validate()
        except TransportError:
            self.state = ClientState.FAILED
            raise

        self._stack = AsyncExitStack()
        try:
            self.state = ClientState.CONNECTING
            await self.connect()
            self.state = ClientState.HANDSHAKING
            await self.handshake()
        except TransportError:
            await self._abort()
            raise
        except asyncio.CancelledError:
            await self._abort()
            raise
        except Exception as e:
            await self._abort()
            raise TransportError(f"server '{self.name}': failed to initialize: {e}") from e

        self.state = ClientState.READY
        logger.info("Server %s ready (%s)", self.name, self.config.type)

    async def connect(self) -> None:
        """Open the transport streams."""
        if self.state is not ClientState.CONNECTING or self._stack is None:
            raise TransportError(f"server '{self.name}': connect called in state {self.state.value}")

        if self.config.type == ServerType.STDIO:
            parts = shlex.split(self.config.command)
            params = StdioServerParameters(command=parts[0], args=parts[1:], env=dict(os.environ))
            logger.debug("Server %s: spawning %s", self.name, self.config.command)
            read, write = await self._stack.enter_async_context(stdio_client(params))
            # Give the child time to attach its pipes before the handshake.
            await asyncio.sleep(self.startup_delay)
        elif self.config.type == ServerType.SSE:
            headers = parse_headers(self.config.headers, self.name)
            read, write = await self._stack.enter_async_context(
                sse_client(self.config.url, headers=headers or None)
            )
        else:
            headers = parse_headers(self.config.headers, self.name)
            read, write, _ = await self._stack.enter_async_context(
                streamablehttp_client(self.config.url, headers=headers or None)
            )
        self._streams = (read, write)

    async def handshake(self, timeout: Optional[float] = None) -> None:
        """Send the protocol handshake and wait for the server's answer."""
        if self.state is not ClientState.HANDSHAKING or self._stack is None or self._streams is None:
            raise TransportError(f"server '{self.name}': handshake called in state {self.state.value}")

        read, write = self._streams
        session = await self._stack.enter_async_context(
            ClientSession(read, write, client_info=Implementation(name=CLIENT_NAME, version=__version__))
        )
        timeout = self.handshake_timeout if timeout is None else timeout
        try:
            result = await asyncio.wait_for(session.initialize(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"server '{self.name}': handshake timed out after {timeout:.1f}s"
            ) from e
        if result is None:
            raise TransportError(f"server '{self.name}': handshake returned no response")

        server_info = getattr(result, "serverInfo", None)
        if server_info is not None:
            logger.debug("Server %s: connected to %s %s", self.name, server_info.name, server_info.version)
        self._session = session

    async def close(self) -> None:
        """Release the connection.

        Raises:
            TransportError: If the client was never initialized or is
                already closed.
        """
        if self.state is ClientState.CLOSED:
            raise TransportError(f"server '{self.name}': client already closed")
        if self.state is not ClientState.READY:
            raise TransportError(f"server '{self.name}': client was never initialized")

        stack = self._stack
        self._stack = None
        self._session = None
        self._streams = None
        self.state = ClientState.CLOSED
        if stack is not None:
            await stack.aclose()
        logger.debug("Server %s closed", self.name)

    async def _abort(self) -> None:
        self.state = ClientState.FAILED
        stack = self._stack
        self._stack = None
        self._session = None
        self._streams = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning("Server %s: cleanup after failed initialization raised: %s", self.name, e)

    # ── Operations ─────────────────────────────────────────────────────

    def _require_session(self) -> ClientSession:
        if self.state is not ClientState.READY or self._session is None:
            raise TransportError(f"server '{self.name}': client is not ready (state {self.state.value})")
        return self._session

    async def list_tools(self) -> List[ToolDescriptor]:
        session = self._require_session()
        result = await session.list_tools()
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
                server=self.name,
            )
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        session = self._require_session()
        result = await session.call_tool(name, arguments)
        content = []
        for item in result.content:
            entry: Dict[str, Any] = {"type": item.type}
            if hasattr(item, "text"):
                entry["text"] = item.text
            content.append(entry)
        return ToolResult(content=content, is_error=bool(getattr(result, "isError", False)))

    async def is_healthy(self) -> bool:
        try:
            await asyncio.wait_for(self.list_tools(), timeout=HEALTH_CHECK_TIMEOUT)
        except Exception as e:
            logger.debug("Server %s health check failed: %s", self.name, e)
            return False
        return True

    def get_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "name": self.name,
            "type": self.config.type,
            "state": self.state.value,
        }
        if self.config.type == ServerType.STDIO:
            info["command"] = self.config.command
        else:
            info["url"] = self.config.url
        return info
