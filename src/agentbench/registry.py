"""Provider, tool-server and agent registries.

Each ``init_*`` function builds its objects in configuration order. If
any single construction fails, every object built so far is torn down
before :class:`InitializationError` propagates, so callers never receive
a partial registry.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from agentbench.agent import AgentBinding
from agentbench.clarification import resolve_judge
from agentbench.cli_server import CLIServer
from agentbench.models import AgentConfig, ProviderConfig, ServerConfig, ServerType
from agentbench.providers import create_provider
from agentbench.templates import render
from agentbench.transport import TransportClient

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderConfig], Any]
ServerFactory = Callable[[ServerConfig], Awaitable[Any]]


class InitializationError(Exception):
    """Raised when a provider, server or agent cannot be set up."""


async def connect_server(config: ServerConfig) -> Any:
    if config.type == ServerType.CLI:
        client: Any = CLIServer(config)
    else:
        client = TransportClient(config)
    await client.initialize()
    return client


def _render_config(config: Any, context: Mapping[str, Any]) -> Any:
    """Return a copy of a config dataclass with its string fields rendered."""
    changes = {}
    for f in dataclasses.fields(config):
        value = getattr(config, f.name)
        if isinstance(value, str):
            changes[f.name] = render(value, context)
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            changes[f.name] = [render(v, context) for v in value]
    return dataclasses.replace(config, **changes)


def _check_name(name: str, seen: Dict[str, Any], kind: str) -> None:
    if not name:
        raise InitializationError(f"{kind} name cannot be empty")
    if name in seen:
        raise InitializationError(f"duplicate {kind} name: '{name}'")


async def close_providers(providers: Mapping[str, Any]) -> None:
    for name, provider in providers.items():
        try:
            await provider.aclose()
        except Exception as e:
            logger.warning("Failed to close provider %s: %s", name, e)


async def cleanup_servers(servers: Mapping[str, Any]) -> None:
    """Close every server; failures are logged and the rest still close."""
    for name, client in servers.items():
        try:
            await client.close()
        except Exception as e:
            logger.warning("Failed to close server %s: %s", name, e)


async def init_providers(
    configs: List[ProviderConfig],
    context: Mapping[str, Any],
    factory: ProviderFactory = create_provider,
) -> Dict[str, Any]:
    """Build model handles keyed by provider name."""
    providers: Dict[str, Any] = {}
    for config in configs:
        try:
            rendered = _render_config(config, context)
            _check_name(rendered.name, providers, "provider")
            providers[rendered.name] = factory(rendered)
        except Exception as e:
            await close_providers(providers)
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(f"failed to initialize provider '{config.name}': {e}") from e
        logger.debug("Provider %s initialized (%s)", rendered.name, rendered.type)
    return providers


def required_servers(servers: List[ServerConfig], agents: List[AgentConfig]) -> List[ServerConfig]:
    """Keep only servers referenced by at least one agent, in file order."""
    referenced = {ref.name for agent in agents for ref in agent.servers}
    kept = []
    for server in servers:
        if server.name in referenced:
            kept.append(server)
        else:
            logger.info("Server %s is not used by any agent, skipping", server.name)
    return kept


async def init_servers(
    configs: List[ServerConfig],
    context: Mapping[str, Any],
    factory: ServerFactory = connect_server,
) -> Dict[str, Any]:
    """Connect tool servers keyed by server name."""
    servers: Dict[str, Any] = {}
    for config in configs:
        try:
            rendered = _render_config(config, context)
            _check_name(rendered.name, servers, "server")
            servers[rendered.name] = await factory(rendered)
        except BaseException as e:
            await cleanup_servers(servers)
            if isinstance(e, InitializationError) or not isinstance(e, Exception):
                raise
            raise InitializationError(f"failed to initialize server '{config.name}': {e}") from e
        logger.info("Server %s initialized", rendered.name)
    return servers


async def init_agents(
    configs: List[AgentConfig],
    providers: Mapping[str, Any],
    servers: Mapping[str, Any],
) -> Dict[str, AgentBinding]:
    """Bind every agent to its provider and tool servers."""
    agents: Dict[str, AgentBinding] = {}
    for config in configs:
        _check_name(config.name, agents, "agent")
        if config.provider not in providers:
            raise InitializationError(
                f"agent '{config.name}' references unknown provider '{config.provider}'"
            )
        if not config.servers:
            raise InitializationError(f"agent '{config.name}' has no servers")
        for ref in config.servers:
            if ref.name not in servers:
                raise InitializationError(
                    f"agent '{config.name}' references unknown server '{ref.name}'"
                )
        binding = AgentBinding(config, providers[config.provider], servers)
        try:
            binding.clarification_judge = resolve_judge(
                config.name, config.clarification_detection, binding.model, dict(providers),
            )
        except KeyError as e:
            raise InitializationError(
                f"agent '{config.name}' references unknown clarification judge provider {e}"
            ) from e
        try:
            await binding.load_tools()
        except Exception as e:
            raise InitializationError(f"agent '{config.name}': failed to list tools: {e}") from e
        agents[config.name] = binding
        logger.info("Agent %s ready with %d tools", config.name, len(binding.tools))
    return agents