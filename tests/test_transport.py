"""Tests for the tool-server transport client."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

import agentbench.transport as transport
from agentbench.models import ServerConfig
from agentbench.transport import ClientState, TransportClient, TransportError, parse_headers, validate_server_config


class FakeSession:
    """Replaces mcp.ClientSession."""

    instances = []

    def __init__(self, read, write, client_info=None):
        self.streams = (read, write)
        self.client_info = client_info
        self.exited = False
        self.init_result = SimpleNamespace(serverInfo=SimpleNamespace(name="fake", version="1.0"))
        self.hang = False
        FakeSession.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.exited = True

    async def initialize(self):
        if self.hang:
            await asyncio.sleep(3600)
        return self.init_result

    async def list_tools(self):
        tool = SimpleNamespace(
            name="read_file", description="Read a file",
            inputSchema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        )
        return SimpleNamespace(tools=[tool])

    async def call_tool(self, name, arguments):
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=f"{name}:{arguments['path']}")],
            isError=False,
        )


@pytest.fixture
def fake_mcp(monkeypatch):
    calls = {"opened": [], "closed": 0}
    FakeSession.instances = []

    @asynccontextmanager
    async def fake_stdio_client(params):
        calls["opened"].append(("stdio", params))
        try:
            yield ("r", "w")
        finally:
            calls["closed"] += 1

    @asynccontextmanager
    async def fake_http_client(url, headers=None):
        calls["opened"].append(("http", url, headers))
        try:
            yield ("r", "w", lambda: None)
        finally:
            calls["closed"] += 1

    monkeypatch.setattr(transport, "stdio_client", fake_stdio_client)
    monkeypatch.setattr(transport, "streamablehttp_client", fake_http_client)
    monkeypatch.setattr(transport, "ClientSession", FakeSession)
    return calls


def _stdio(**kw):
    defaults = dict(name="fs", type="stdio", command="python -m fs_server --root 'my dir'", process_delay="0s")
    defaults.update(kw)
    return ServerConfig(**defaults)


# ── Validation ──────────────────────────────────────────────────────────


class TestValidate:
    def test_valid_configs(self):
        validate_server_config(_stdio())
        validate_server_config(ServerConfig(name="api", type="http", url="https://x", headers=["A: b"]))
        validate_server_config(ServerConfig(name="git", type="cli", command="git", shell="PowerShell"))

    @pytest.mark.parametrize("config,match", [
        (ServerConfig(name="", type="stdio", command="x"), "name cannot be empty"),
        (ServerConfig(name="s", type="stdio", command="   "), "command cannot be empty"),
        (ServerConfig(name="s", type="sse", url=""), "requires a url"),
        (ServerConfig(name="s", type="sse", url=" http://x"), "whitespace"),
        (ServerConfig(name="s", type="http", url="ftp://x"), "http:// or https://"),
        (ServerConfig(name="s", type="http", url="http://x", headers=["nocolon"]), "invalid header"),
        (ServerConfig(name="s", type="cli", command=""), "command is required"),
        (ServerConfig(name="s", type="cli", command="git", shell="fish"), "unsupported shell"),
        (ServerConfig(name="s", type="pigeon"), "unknown server type"),
    ])
    def test_invalid_configs(self, config, match):
        with pytest.raises(TransportError, match=match):
            validate_server_config(config)


class TestParseHeaders:
    def test_splits_on_first_colon(self):
        assert parse_headers(["Authorization: Bearer a:b", "X-Id:7"]) == {
            "Authorization": "Bearer a:b", "X-Id": "7",
        }

    def test_skips_invalid_entries(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert parse_headers(["bad", "Ok: yes"], "api") == {"Ok": "yes"}
        assert "skipping invalid header" in caplog.text

    def test_warns_when_nothing_valid(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert parse_headers(["bad", ": empty"], "api") == {}
        assert "no valid headers" in caplog.text


# ── Lifecycle ───────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stdio_initialize_and_operate(self, fake_mcp):
        client = TransportClient(_stdio())
        await client.initialize()

        assert client.state is ClientState.READY
        kind, params = fake_mcp["opened"][0]
        assert kind == "stdio"
        assert params.command == "python"
        assert params.args == ["-m", "fs_server", "--root", "my dir"]
        assert FakeSession.instances[0].client_info.name == "agentbench"

        tools = await client.list_tools()
        assert tools[0].name == "read_file"
        assert tools[0].required == ["path"]
        assert tools[0].server == "fs"

        result = await client.call_tool("read_file", {"path": "a.txt"})
        assert result.first_text() == "read_file:a.txt"
        assert result.is_error is False
        assert await client.is_healthy() is True

        await client.close()
        assert client.state is ClientState.CLOSED
        assert fake_mcp["closed"] == 1
        assert FakeSession.instances[0].exited

    @pytest.mark.asyncio
    async def test_http_passes_headers(self, fake_mcp):
        config = ServerConfig(name="api", type="http", url="https://tools.example", headers=["X-Key: k"])
        client = TransportClient(config)
        await client.initialize()
        assert fake_mcp["opened"][0] == ("http", "https://tools.example", {"X-Key": "k"})
        await client.close()

    @pytest.mark.asyncio
    async def test_close_twice_raises(self, fake_mcp):
        client = TransportClient(_stdio())
        await client.initialize()
        await client.close()
        with pytest.raises(TransportError, match="already closed"):
            await client.close()

    @pytest.mark.asyncio
    async def test_close_uninitialized_raises(self):
        with pytest.raises(TransportError, match="never initialized"):
            await TransportClient(_stdio()).close()

    @pytest.mark.asyncio
    async def test_initialize_twice_raises(self, fake_mcp):
        client = TransportClient(_stdio())
        await client.initialize()
        with pytest.raises(TransportError, match="cannot initialize"):
            await client.initialize()
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_config_fails_before_connecting(self, fake_mcp):
        client = TransportClient(_stdio(command=""))
        with pytest.raises(TransportError):
            await client.initialize()
        assert client.state is ClientState.FAILED
        assert fake_mcp["opened"] == []

    @pytest.mark.asyncio
    async def test_handshake_timeout_cleans_up(self, fake_mcp, monkeypatch):
        original_init = FakeSession.__init__

        def hanging_init(self, *args, **kw):
            original_init(self, *args, **kw)
            self.hang = True

        monkeypatch.setattr(FakeSession, "__init__", hanging_init)
        client = TransportClient(_stdio(server_delay="50ms"))
        with pytest.raises(TransportError, match="timed out"):
            await client.initialize()
        assert client.state is ClientState.FAILED
        assert fake_mcp["closed"] == 1

    @pytest.mark.asyncio
    async def test_empty_handshake_response(self, fake_mcp, monkeypatch):
        async def no_result(self):
            return None

        monkeypatch.setattr(FakeSession, "initialize", no_result)
        client = TransportClient(_stdio())
        with pytest.raises(TransportError, match="no response"):
            await client.initialize()
        assert client.state is ClientState.FAILED

    @pytest.mark.asyncio
    async def test_operations_require_ready(self):
        with pytest.raises(TransportError, match="not ready"):
            await TransportClient(_stdio()).list_tools()


class TestSettings:
    def test_delays(self):
        client = TransportClient(_stdio(server_delay="2s", process_delay="500ms"))
        assert client.handshake_timeout == 2.0
        assert client.startup_delay == 0.5

    def test_invalid_delay_uses_default(self):
        client = TransportClient(_stdio(server_delay="soon", process_delay=""))
        assert client.handshake_timeout == transport.DEFAULT_HANDSHAKE_TIMEOUT
        assert client.startup_delay == transport.DEFAULT_PROCESS_STARTUP_DELAY

    def test_get_info(self):
        info = TransportClient(_stdio()).get_info()
        assert info["name"] == "fs"
        assert info["state"] == "uninitialized"
        assert info["command"].startswith("python")
