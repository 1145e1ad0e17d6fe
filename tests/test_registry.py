"""Tests for provider, server and agent registries."""

from __future__ import annotations

import pytest

from agentbench.models import AgentConfig, AgentServer, ClarificationDetection, ProviderConfig, ServerConfig
from agentbench.registry import (
    InitializationError,
    cleanup_servers,
    init_agents,
    init_providers,
    init_servers,
    required_servers,
)
from agentbench.templates import TemplateContext
from tests.helpers.fakes import FakeServer, ScriptedModel


class TrackingFactory:
    """Provider factory that remembers every model it built."""

    def __init__(self):
        self.built = []
        self.configs = []

    def __call__(self, config):
        self.configs.append(config)
        model = ScriptedModel()
        self.built.append(model)
        return model


# ── Providers ───────────────────────────────────────────────────────────


class TestInitProviders:
    @pytest.mark.asyncio
    async def test_renders_templates(self):
        factory = TrackingFactory()
        ctx = TemplateContext({"KEY": "sk-123"})
        providers = await init_providers(
            [ProviderConfig(name="main", type="OPENAI", token="{{KEY}}", model="gpt")], ctx, factory,
        )
        assert list(providers) == ["main"]
        assert factory.configs[0].token == "sk-123"

    @pytest.mark.asyncio
    async def test_duplicate_name_closes_everything(self):
        factory = TrackingFactory()
        configs = [
            ProviderConfig(name="A", type="OPENAI"),
            ProviderConfig(name="B", type="OPENAI"),
            ProviderConfig(name="A", type="OPENAI"),
        ]
        with pytest.raises(InitializationError, match="duplicate provider name: 'A'"):
            await init_providers(configs, TemplateContext(), factory)
        assert len(factory.built) == 2
        assert all(m.closed for m in factory.built)

    @pytest.mark.asyncio
    async def test_factory_error_wrapped(self):
        built = []

        def factory(config):
            if config.name == "bad":
                raise ValueError("no token")
            model = ScriptedModel()
            built.append(model)
            return model

        configs = [ProviderConfig(name="ok", type="OPENAI"), ProviderConfig(name="bad", type="OPENAI")]
        with pytest.raises(InitializationError, match="provider 'bad': no token"):
            await init_providers(configs, TemplateContext(), factory)
        assert built[0].closed


# ── Servers ─────────────────────────────────────────────────────────────


class TestInitServers:
    @pytest.mark.asyncio
    async def test_failure_cleans_up_connected_servers(self):
        connected = []

        async def factory(config):
            if config.name == "broken":
                raise RuntimeError("spawn failed")
            server = FakeServer(config.name, ["t"])
            connected.append(server)
            return server

        configs = [
            ServerConfig(name="one", type="stdio", command="a"),
            ServerConfig(name="two", type="stdio", command="b"),
            ServerConfig(name="broken", type="stdio", command="c"),
        ]
        with pytest.raises(InitializationError, match="server 'broken'"):
            await init_servers(configs, TemplateContext(), factory)
        assert [s.closed for s in connected] == [True, True]

    @pytest.mark.asyncio
    async def test_renders_command_and_headers(self):
        seen = []

        async def factory(config):
            seen.append(config)
            return FakeServer(config.name, [])

        ctx = TemplateContext({"BIN": "/opt/srv", "TOKEN": "t0k"})
        configs = [ServerConfig(name="s", type="http", url="https://x", command="{{BIN}}",
                                headers=["Authorization: Bearer {{TOKEN}}"])]
        await init_servers(configs, ctx, factory)
        assert seen[0].command == "/opt/srv"
        assert seen[0].headers == ["Authorization: Bearer t0k"]

    @pytest.mark.asyncio
    async def test_cleanup_continues_after_failure(self, caplog):
        first = FakeServer("first", [])
        first.closed = True
        second = FakeServer("second", [])
        await cleanup_servers({"first": first, "second": second})
        assert second.closed
        assert "Failed to close server first" in caplog.text


def test_required_servers_skips_unreferenced():
    servers = [ServerConfig(name=n, type="stdio", command="x") for n in ("a", "b", "c")]
    agents = [AgentConfig(name="ag", provider="p", servers=[AgentServer("c"), AgentServer("a")])]
    assert [s.name for s in required_servers(servers, agents)] == ["a", "c"]


# ── Agents ──────────────────────────────────────────────────────────────


class TestInitAgents:
    @pytest.mark.asyncio
    async def test_binds_tools_with_allow_lists(self):
        servers = {
            "fs": FakeServer("fs", ["read_file", "write_file"]),
            "web": FakeServer("web", ["fetch", "read_file"]),
        }
        config = AgentConfig(
            name="helper", provider="main",
            servers=[AgentServer("fs", ["read_file"]), AgentServer("web")],
        )
        agents = await init_agents([config], {"main": ScriptedModel()}, servers)
        binding = agents["helper"]
        assert [t.name for t in binding.tools] == ["read_file", "fetch"]
        assert binding.tool_to_server == {"read_file": "fs", "fetch": "web"}

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        config = AgentConfig(name="a", provider="ghost", servers=[AgentServer("fs")])
        with pytest.raises(InitializationError, match="unknown provider 'ghost'"):
            await init_agents([config], {}, {"fs": FakeServer("fs", [])})

    @pytest.mark.asyncio
    async def test_unknown_server(self):
        config = AgentConfig(name="a", provider="main", servers=[AgentServer("nope")])
        with pytest.raises(InitializationError, match="unknown server 'nope'"):
            await init_agents([config], {"main": ScriptedModel()}, {})

    @pytest.mark.asyncio
    async def test_no_servers(self):
        config = AgentConfig(name="a", provider="main")
        with pytest.raises(InitializationError, match="no servers"):
            await init_agents([config], {"main": ScriptedModel()}, {})

    @pytest.mark.asyncio
    async def test_clarification_judge_resolved(self):
        own, judge = ScriptedModel(), ScriptedModel()
        configs = [
            AgentConfig(name="a", provider="main", servers=[AgentServer("fs")],
                        clarification_detection=ClarificationDetection(True, "warning", "$self")),
            AgentConfig(name="b", provider="main", servers=[AgentServer("fs")],
                        clarification_detection=ClarificationDetection(True, "error", "judge")),
            AgentConfig(name="c", provider="main", servers=[AgentServer("fs")]),
        ]
        agents = await init_agents(configs, {"main": own, "judge": judge}, {"fs": FakeServer("fs", [])})
        assert agents["a"].clarification_judge.model is own
        assert agents["b"].clarification_judge.model is judge
        assert agents["b"].clarification_judge.level == "error"
        assert agents["c"].clarification_judge is None

    @pytest.mark.asyncio
    async def test_unknown_clarification_judge(self):
        config = AgentConfig(name="a", provider="main", servers=[AgentServer("fs")],
                             clarification_detection=ClarificationDetection(True, "warning", "ghost"))
        with pytest.raises(InitializationError, match="clarification judge provider 'ghost'"):
            await init_agents([config], {"main": ScriptedModel()}, {"fs": FakeServer("fs", [])})
