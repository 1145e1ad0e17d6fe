"""YAML loader for test files and suites."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from agentbench.clarification import LEVELS
from agentbench.models import (
    AgentConfig,
    AgentServer,
    Assertion,
    ClarificationDetection,
    Criteria,
    Extractor,
    ProviderConfig,
    RateLimitConfig,
    RetryConfig,
    ServerConfig,
    Session,
    Settings,
    SuiteConfig,
    TestCase,
    TestPlan,
    VariablePolicy,
)

logger = logging.getLogger(__name__)

COMBINATORS = {"anyOf", "allOf", "not"}

# Required fields per leaf kind. A tuple entry means "any one of".
ASSERTION_FIELDS: Dict[str, List[Any]] = {
    "tool_called": ["tool"],
    "tool_not_called": ["tool"],
    "tool_call_count": ["count"],
    "tool_call_order": ["sequence"],
    "tool_param_equals": ["tool", "params"],
    "tool_param_matches_regex": ["tool", "params"],
    "tool_result_matches_json": ["tool", "path", "value"],
    "output_contains": ["value"],
    "output_not_contains": ["value"],
    "output_regex": ["pattern"],
    "max_tokens": [("count", "value")],
    "max_latency_ms": [("count", "value")],
    "no_error_messages": [],
    "no_hallucinated_tools": [],
    "no_clarification_questions": [],
    "no_rate_limit_errors": [],
    "cli_exit_code_equals": [("expected", "value")],
    "cli_stdout_contains": ["value"],
    "cli_stdout_regex": ["pattern"],
    "cli_stderr_contains": ["value"],
}

VALID_ASSERTION_TYPES = set(ASSERTION_FIELDS) | COMBINATORS

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


class LoadError(Exception):
    """Raised when a test file or suite cannot be loaded or is invalid."""


def parse_duration(value: Any) -> float:
    """Parse ``"300ms"``, ``"1m30s"``, ``"-2s"`` or a bare number of seconds.

    Raises:
        ValueError: If the value is not a recognizable duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return sign * total


def validate_input_file(path: str) -> None:
    """Check that *path* names a non-empty YAML file."""
    filepath = Path(path)
    if not filepath.exists():
        raise LoadError(f"File not found: {path}")
    if filepath.is_dir():
        raise LoadError(f"Path is a directory, not a file: {path}")
    if filepath.stat().st_size == 0:
        raise LoadError(f"File is empty: {path}")
    if filepath.suffix.lower() not in (".yaml", ".yml"):
        raise LoadError(f"File must have a .yaml or .yml extension: {path}")


def read_yaml(path: str) -> Dict[str, Any]:
    """Read a YAML mapping from *path*."""
    validate_input_file(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise LoadError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise LoadError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    return data


# ── Sections ────────────────────────────────────────────────────────────


def _mapping_list(data: Dict[str, Any], key: str, where: str) -> List[Dict[str, Any]]:
    items = data.get(key) or []
    if not isinstance(items, list):
        raise LoadError(f"{where}: '{key}' must be a list")
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise LoadError(f"{where}: {key}[{i}] must be a mapping")
    return items


def _string_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise LoadError(f"{where} must be a list of strings")
    return [str(v) for v in value]


def parse_variables(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise LoadError(f"{where}: 'variables' must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def int_field(raw: Dict[str, Any], key: str, where: str, default: int = 0) -> int:
    """Integer config value; a malformed one is a LoadError naming its location."""
    value = raw.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise LoadError(f"{where}.{key} must be an integer, got {value!r}") from e


def parse_providers(data: Dict[str, Any]) -> List[ProviderConfig]:
    providers = []
    for i, p in enumerate(_mapping_list(data, "providers", "config")):
        rate = p.get("rate_limits") or {}
        retry = p.get("retry") or {}
        if not isinstance(rate, dict) or not isinstance(retry, dict):
            raise LoadError(f"providers[{i}]: 'rate_limits' and 'retry' must be mappings")
        providers.append(ProviderConfig(
            name=str(p.get("name", "")),
            type=str(p.get("type", "")).upper(),
            token=str(p.get("token", "")),
            secret=str(p.get("secret", "")),
            model=str(p.get("model", "")),
            base_url=str(p.get("baseUrl", p.get("base_url", ""))),
            version=str(p.get("version", "")),
            auth_type=str(p.get("auth_type", "")),
            rate_limits=RateLimitConfig(
                tpm=int_field(rate, "tpm", f"providers[{i}].rate_limits"),
                rpm=int_field(rate, "rpm", f"providers[{i}].rate_limits"),
            ),
            retry=RetryConfig(
                retry_on_429=bool(retry.get("retry_on_429", False)),
                max_retries=int_field(retry, "max_retries", f"providers[{i}].retry"),
            ),
        ))
    return providers


def _help_commands(raw: Dict[str, Any], where: str) -> List[str]:
    commands = _string_list(raw.get("help_commands"), f"{where}.help_commands")
    legacy = raw.get("help_command")
    if legacy and not commands:
        logger.warning("%s: 'help_command' is deprecated, use 'help_commands'", where)
        commands = [str(legacy)]
    return commands


def parse_servers(data: Dict[str, Any]) -> List[ServerConfig]:
    servers = []
    for i, s in enumerate(_mapping_list(data, "servers", "config")):
        servers.append(ServerConfig(
            name=str(s.get("name", "")),
            type=str(s.get("type", "")).lower(),
            command=str(s.get("command", "") or ""),
            url=str(s.get("url", "") or ""),
            headers=_string_list(s.get("headers"), f"servers[{i}].headers"),
            server_delay=str(s.get("server_delay", "") or ""),
            process_delay=str(s.get("process_delay", "") or ""),
            shell=str(s.get("shell", "") or ""),
            working_dir=str(s.get("working_dir", "") or ""),
            tool_prefix=str(s.get("tool_prefix", "") or ""),
            help_commands=_help_commands(s, f"servers[{i}]"),
            disable_help_auto_discovery=bool(s.get("disable_help_auto_discovery", False)),
        ))
    return servers


def parse_clarification_detection(raw: Any, where: str) -> ClarificationDetection:
    if raw is None:
        return ClarificationDetection()
    if not isinstance(raw, dict):
        raise LoadError(f"{where}: 'clarification_detection' must be a mapping")
    detection = ClarificationDetection(
        enabled=bool(raw.get("enabled", False)),
        level=str(raw.get("level", "") or "warning").lower(),
        judge_provider=str(raw.get("judge_provider", "") or ""),
    )
    if detection.level not in LEVELS:
        raise LoadError(
            f"{where}: invalid clarification level '{detection.level}'. "
            f"Valid levels: {', '.join(LEVELS)}"
        )
    if detection.enabled and not detection.judge_provider:
        raise LoadError(f"{where}: clarification_detection requires 'judge_provider' (a provider name or $self)")
    return detection


def parse_agents(data: Dict[str, Any]) -> List[AgentConfig]:
    agents = []
    for i, a in enumerate(_mapping_list(data, "agents", "config")):
        refs = []
        for j, ref in enumerate(a.get("servers") or []):
            if isinstance(ref, str):
                refs.append(AgentServer(name=ref))
            elif isinstance(ref, dict):
                refs.append(AgentServer(
                    name=str(ref.get("name", "")),
                    allowed_tools=_string_list(
                        ref.get("allowed_tools"), f"agents[{i}].servers[{j}].allowed_tools"
                    ),
                ))
            else:
                raise LoadError(f"agents[{i}].servers[{j}] must be a name or a mapping")
        agents.append(AgentConfig(
            name=str(a.get("name", "")),
            provider=str(a.get("provider", "")),
            servers=refs,
            system_prompt=str(a.get("system_prompt", "") or ""),
            clarification_detection=parse_clarification_detection(
                a.get("clarification_detection"), f"agents[{i}]"
            ),
        ))
    return agents


def parse_settings(data: Dict[str, Any]) -> Settings:
    raw = data.get("settings") or {}
    if not isinstance(raw, dict):
        raise LoadError("'settings' must be a mapping")
    policy = str(raw.get("variable_policy", "") or "")
    if policy and policy not in {p.value for p in VariablePolicy}:
        raise LoadError(
            f"Invalid variable_policy '{policy}'. "
            f"Valid policies: {', '.join(p.value for p in VariablePolicy)}"
        )
    try:
        max_iterations = int(raw.get("max_iterations", 0) or 0)
    except (TypeError, ValueError) as e:
        raise LoadError(f"settings.max_iterations must be an integer: {e}") from e
    return Settings(
        verbose=bool(raw.get("verbose", False)),
        tool_timeout=str(raw.get("tool_timeout", "") or ""),
        max_iterations=max_iterations,
        test_delay=str(raw.get("test_delay", "") or ""),
        session_delay=str(raw.get("session_delay", "") or ""),
        variable_policy=policy,
    )


def parse_criteria(data: Dict[str, Any]) -> Criteria:
    raw = data.get("criteria") or {}
    if not isinstance(raw, dict):
        raise LoadError("'criteria' must be a mapping")
    rate = raw.get("success_rate", "")
    return Criteria(success_rate="" if rate is None else str(rate))


# ── Assertions ──────────────────────────────────────────────────────────


def parse_assertion(data: Any, where: str) -> Assertion:
    """Parse one assertion node, checking its kind and required fields."""
    if not isinstance(data, dict):
        raise LoadError(f"{where}: assertion must be a mapping")

    kind = data.get("type")
    if not kind:
        present = [c for c in ("anyOf", "allOf", "not") if c in data]
        if len(present) == 1:
            kind = present[0]
        else:
            raise LoadError(f"{where}: assertion missing required field: 'type'")
    kind = str(kind)
    if kind not in VALID_ASSERTION_TYPES:
        raise LoadError(
            f"{where}: unknown assertion type '{kind}'. "
            f"Valid types: {', '.join(sorted(VALID_ASSERTION_TYPES))}"
        )

    if kind in ("anyOf", "allOf"):
        children = data.get(kind)
        if not isinstance(children, list) or not children:
            raise LoadError(f"{where}: '{kind}' must be a non-empty list of assertions")
        return Assertion(
            type=kind,
            children=[parse_assertion(c, f"{where}/{kind}[{i}]") for i, c in enumerate(children)],
        )
    if kind == "not":
        if "not" not in data:
            raise LoadError(f"{where}: 'not' requires a nested assertion")
        return Assertion(type=kind, child=parse_assertion(data["not"], f"{where}/not"))

    for req in ASSERTION_FIELDS[kind]:
        options = req if isinstance(req, tuple) else (req,)
        if not any(data.get(opt) not in (None, "", [], {}) for opt in options):
            names = " or ".join(f"'{o}'" for o in options)
            raise LoadError(f"{where}: assertion '{kind}' missing required field: {names}")

    params = data.get("params") or {}
    if not isinstance(params, dict):
        raise LoadError(f"{where}: 'params' must be a mapping")
    try:
        count = None if data.get("count") is None else int(data["count"])
        expected = None if data.get("expected") is None else int(data["expected"])
    except (TypeError, ValueError) as e:
        raise LoadError(f"{where}: 'count' and 'expected' must be integers") from e

    value = data.get("value", "")
    return Assertion(
        type=kind,
        tool=str(data.get("tool", "") or ""),
        value="" if value is None else str(value),
        expected=expected,
        params=params,
        sequence=_string_list(data.get("sequence"), f"{where}: 'sequence'"),
        pattern=str(data.get("pattern", "") or ""),
        count=count,
        path=str(data.get("path", "") or ""),
    )


# ── Sessions ────────────────────────────────────────────────────────────


def _parse_extractor(data: Any, where: str) -> Extractor:
    if not isinstance(data, dict):
        raise LoadError(f"{where}: extractor must be a mapping")
    kind = str(data.get("type", "jsonpath"))
    if kind != "jsonpath":
        raise LoadError(f"{where}: unsupported extractor type '{kind}'")
    for key in ("tool", "path", "variable_name"):
        if not data.get(key):
            raise LoadError(f"{where}: extractor missing required field: '{key}'")
    return Extractor(
        type=kind, tool=str(data["tool"]), path=str(data["path"]),
        variable_name=str(data["variable_name"]),
    )


def parse_sessions(data: Dict[str, Any], agent_names: Optional[List[str]] = None) -> List[Session]:
    """Parse the ``sessions`` block.

    A test without an ``agent`` field uses the only configured agent when
    exactly one exists.
    """
    sessions_data = _mapping_list(data, "sessions", "config")
    default_agent = agent_names[0] if agent_names and len(agent_names) == 1 else ""

    sessions: List[Session] = []
    session_names = set()
    for si, s in enumerate(sessions_data):
        name = str(s.get("name", "") or "")
        if not name:
            raise LoadError(f"Session {si} missing required field: 'name'")
        if name in session_names:
            raise LoadError(f"Duplicate session name: '{name}'")
        session_names.add(name)

        tests_data = s.get("tests")
        if not isinstance(tests_data, list) or not tests_data:
            raise LoadError(f"Session '{name}' must have a non-empty 'tests' list")

        tests: List[TestCase] = []
        test_names = set()
        for ti, t in enumerate(tests_data):
            where = f"session '{name}' test {ti}"
            if not isinstance(t, dict):
                raise LoadError(f"{where} must be a mapping")
            test_name = str(t.get("name", "") or "")
            if not test_name:
                raise LoadError(f"{where} missing required field: 'name'")
            where = f"session '{name}' test '{test_name}'"
            if test_name in test_names:
                raise LoadError(f"Duplicate test name in session '{name}': '{test_name}'")
            test_names.add(test_name)
            if not t.get("prompt"):
                raise LoadError(f"{where} missing required field: 'prompt'")
            agent = str(t.get("agent", "") or default_agent)
            if not agent:
                raise LoadError(f"{where} missing required field: 'agent'")
            if agent_names is not None and agent not in agent_names:
                raise LoadError(
                    f"{where} references unknown agent '{agent}'. "
                    f"Known agents: {', '.join(agent_names) or '(none)'}"
                )
            tests.append(TestCase(
                name=test_name,
                agent=agent,
                prompt=str(t["prompt"]),
                description=str(t.get("description", "") or ""),
                start_delay=str(t.get("start_delay", "") or ""),
                assertions=[
                    parse_assertion(a, f"{where} assertion {ai}")
                    for ai, a in enumerate(t.get("assertions") or [])
                ],
                extractors=[
                    _parse_extractor(e, f"{where} extractor {ei}")
                    for ei, e in enumerate(t.get("extractors") or [])
                ],
                variables=parse_variables(t.get("variables"), where),
                allowed_tools=_string_list(t.get("allowed_tools"), f"{where} allowed_tools"),
            ))
        sessions.append(Session(
            name=name,
            tests=tests,
            allowed_tools=_string_list(s.get("allowed_tools"), f"session '{name}' allowed_tools"),
        ))
    return sessions


# ── Documents ───────────────────────────────────────────────────────────


def load_test_plan(path: str, suite_mode: bool = False, agent_names: Optional[List[str]] = None) -> TestPlan:
    """Load a TestPlan from a YAML test file.

    Args:
        path: Path to the YAML file.
        suite_mode: When True, providers/servers/agents may be omitted
            because the enclosing suite supplies them.
        agent_names: Agent names visible to the file's tests. Defaults to
            the agents the file itself declares.

    Raises:
        LoadError: If the file is missing, invalid YAML, or fails validation.
    """
    data = read_yaml(path)

    providers = parse_providers(data)
    servers = parse_servers(data)
    agents = parse_agents(data)
    if not suite_mode:
        if not providers:
            raise LoadError(f"{path}: no providers defined")
        if not servers:
            raise LoadError(f"{path}: no servers defined")
        if not agents:
            raise LoadError(f"{path}: no agents defined")
    if not data.get("sessions"):
        raise LoadError(f"{path}: no sessions defined")

    if agent_names is None:
        agent_names = [a.name for a in agents]
    return TestPlan(
        sessions=parse_sessions(data, agent_names or None),
        providers=providers,
        servers=servers,
        agents=agents,
        settings=parse_settings(data),
        variables=parse_variables(data.get("variables"), path),
        criteria=parse_criteria(data),
        source_file=str(Path(path).resolve()),
    )


def load_suite(path: str) -> SuiteConfig:
    """Load a SuiteConfig; test file paths are resolved against the suite's directory."""
    data = read_yaml(path)
    test_files = data.get("test_files")
    if not isinstance(test_files, list) or not test_files:
        raise LoadError(f"{path}: suite must have a non-empty 'test_files' list")

    base = Path(path).resolve().parent
    resolved = []
    for f in test_files:
        p = Path(str(f))
        resolved.append(str(p if p.is_absolute() else base / p))

    return SuiteConfig(
        name=str(data.get("name", "") or Path(path).stem),
        test_files=resolved,
        providers=parse_providers(data),
        servers=parse_servers(data),
        agents=parse_agents(data),
        settings=parse_settings(data),
        variables=parse_variables(data.get("variables"), path),
        criteria=parse_criteria(data),
        source_file=str(Path(path).resolve()),
    )
