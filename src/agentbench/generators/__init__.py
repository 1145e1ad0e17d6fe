"""Test plan generation for agentbench.

Reads a configuration file holding providers, servers, agents and a
``generator`` section, asks a model for test sessions and writes the
combined, runnable test file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentbench.agent import filter_tools
from agentbench.generators.llm_gen import (
    GenerationError,
    GeneratorSettings,
    TestPlanGenerator,
    extract_yaml_from_response,
)
from agentbench.generators.validator import combine_output, validate_sessions
from agentbench.loader import (
    LoadError,
    int_field,
    parse_agents,
    parse_providers,
    parse_servers,
    parse_settings,
    parse_variables,
    read_yaml,
)
from agentbench.models import AgentConfig, ProviderConfig, ServerConfig, Settings, ToolDescriptor
from agentbench.providers import create_provider
from agentbench.registry import (
    ProviderFactory,
    ServerFactory,
    cleanup_servers,
    close_providers,
    connect_server,
    init_agents,
    init_providers,
    init_servers,
    required_servers,
)
from agentbench.templates import create_static_context

__all__ = [
    "GenerationError",
    "GeneratorConfig",
    "GeneratorSettings",
    "TestPlanGenerator",
    "combine_output",
    "extract_yaml_from_response",
    "generate_tests",
    "load_generator_config",
    "validate_sessions",
]

logger = logging.getLogger(__name__)

VALID_COMPLEXITIES = {"simple", "medium", "complex"}


@dataclass
class GeneratorConfig:
    providers: List[ProviderConfig]
    servers: List[ServerConfig]
    agents: List[AgentConfig]
    generator: GeneratorSettings
    settings: Settings = field(default_factory=Settings)
    variables: Dict[str, str] = field(default_factory=dict)
    source_file: str = ""


def _parse_generator_settings(raw: Any, agents: List[AgentConfig]) -> GeneratorSettings:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise LoadError("'generator' must be a mapping")
    settings = GeneratorSettings(
        provider=str(raw.get("provider", "") or ""),
        test_count=int_field(raw, "test_count", "generator"),
        complexity=str(raw.get("complexity", "") or ""),
        include_edge_cases=bool(raw.get("include_edge_cases", False)),
        max_steps_per_test=int_field(raw, "max_steps_per_test", "generator"),
        tools=[str(t) for t in raw.get("tools") or []],
    )
    if not settings.provider:
        settings.provider = agents[0].provider
    if settings.test_count <= 0:
        settings.test_count = 5
    if not settings.complexity:
        settings.complexity = "medium"
    if settings.complexity not in VALID_COMPLEXITIES:
        raise LoadError(
            f"Invalid generator complexity '{settings.complexity}'. "
            f"Valid values: {', '.join(sorted(VALID_COMPLEXITIES))}"
        )
    if settings.max_steps_per_test <= 0:
        settings.max_steps_per_test = 5
    return settings


def load_generator_config(path: str) -> GeneratorConfig:
    """Load a generation config file.

    Raises:
        LoadError: If the file is invalid or lacks providers, servers or agents.
    """
    data = read_yaml(path)
    providers = parse_providers(data)
    servers = parse_servers(data)
    agents = parse_agents(data)
    if not providers:
        raise LoadError(f"{path}: no providers defined")
    if not servers:
        raise LoadError(f"{path}: no servers defined")
    if not agents:
        raise LoadError(f"{path}: no agents defined")

    generator = _parse_generator_settings(data.get("generator"), agents)
    if generator.provider not in {p.name for p in providers}:
        raise LoadError(f"{path}: generator provider '{generator.provider}' is not defined")

    return GeneratorConfig(
        providers=providers,
        servers=servers,
        agents=agents,
        generator=generator,
        settings=parse_settings(data),
        variables=parse_variables(data.get("variables"), path),
        source_file=str(Path(path).resolve()),
    )


def output_filename(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("generated_test_%Y%m%d_%H%M%S.yaml")


async def generate_tests(
    config_path: str,
    *,
    output_dir: str = ".",
    dry_run: bool = False,
    seed: Optional[int] = None,
    provider_factory: ProviderFactory = create_provider,
    server_factory: ServerFactory = connect_server,
) -> str:
    """Generate a test file from *config_path*.

    Returns:
        The path of the written file, or the document itself when
        *dry_run* is set.

    Raises:
        LoadError: If the configuration is invalid.
        InitializationError: If providers, servers or agents cannot be set up.
        GenerationError: If every attempt failed validation.
    """
    config = load_generator_config(config_path)
    context = create_static_context(config.source_file, config.variables)

    providers = await init_providers(config.providers, context, provider_factory)
    servers: Dict[str, Any] = {}
    try:
        servers = await init_servers(required_servers(config.servers, config.agents), context, server_factory)
        agents = await init_agents(config.agents, providers, servers)
        tools_by_agent: Dict[str, List[ToolDescriptor]] = {
            name: filter_tools(binding.tools, config.generator.tools)
            for name, binding in agents.items()
        }
        generator = TestPlanGenerator(
            providers[config.generator.provider],
            config.generator,
            [a.name for a in config.agents],
            tools_by_agent,
            seed=seed,
        )
        sessions_yaml = await generator.generate()
    finally:
        await cleanup_servers(servers)
        await close_providers(providers)

    document = combine_output(Path(config_path).read_text(encoding="utf-8"), sessions_yaml)
    if dry_run:
        return document

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / output_filename()
    out_path.write_text(document, encoding="utf-8")
    logger.info("Wrote generated tests to %s", out_path)
    return str(out_path)
