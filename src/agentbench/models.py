"""Core data models for agentbench."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ProviderType(str, enum.Enum):
    OPENAI = "OPENAI"
    AZURE = "AZURE"
    GROQ = "GROQ"
    ANTHROPIC = "ANTHROPIC"


class ServerType(str, enum.Enum):
    STDIO = "stdio"
    SSE = "sse"
    HTTP = "http"
    CLI = "cli"


class VariablePolicy(str, enum.Enum):
    TEST_ONLY = "test-only"
    SUITE_ONLY = "suite-only"
    MERGE_TEST_PRIORITY = "merge-test-priority"
    MERGE_SUITE_PRIORITY = "merge-suite-priority"


# ── Configuration ───────────────────────────────────────────────────────


@dataclass
class RateLimitConfig:
    """Proactive throttling limits (0 disables)."""
    tpm: int = 0
    rpm: int = 0


@dataclass
class RetryConfig:
    """Reactive handling of 429 responses."""
    retry_on_429: bool = False
    max_retries: int = 0


@dataclass
class ProviderConfig:
    """A named model provider."""
    name: str
    type: str
    token: str = ""
    secret: str = ""
    model: str = ""
    base_url: str = ""
    version: str = ""
    auth_type: str = ""
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class ServerConfig:
    """A named tool server endpoint."""
    name: str
    type: str
    command: str = ""
    url: str = ""
    headers: List[str] = field(default_factory=list)
    server_delay: str = ""
    process_delay: str = ""
    shell: str = ""
    working_dir: str = ""
    tool_prefix: str = ""
    help_commands: List[str] = field(default_factory=list)
    disable_help_auto_discovery: bool = False


@dataclass
class AgentServer:
    """A server reference inside an agent, with an optional tool allow-list."""
    name: str
    allowed_tools: List[str] = field(default_factory=list)


@dataclass
class ClarificationDetection:
    """Judge-based detection of replies that ask instead of act.

    ``judge_provider`` is a provider name, or ``$self`` for the agent's own.
    """
    enabled: bool = False
    level: str = "warning"
    judge_provider: str = ""


@dataclass
class AgentConfig:
    name: str
    provider: str
    servers: List[AgentServer] = field(default_factory=list)
    system_prompt: str = ""
    clarification_detection: ClarificationDetection = field(default_factory=ClarificationDetection)


@dataclass
class Settings:
    """Run settings. Durations are kept as written and parsed by the engine."""
    verbose: bool = False
    tool_timeout: str = ""
    max_iterations: int = 0
    test_delay: str = ""
    session_delay: str = ""
    variable_policy: str = ""


@dataclass
class Criteria:
    success_rate: str = ""


@dataclass
class Assertion:
    """One node of an assertion tree.

    Leaf kinds use the scalar fields; ``anyOf``/``allOf`` hold ``children``
    and ``not`` holds a single ``child``.
    """
    type: str
    tool: str = ""
    value: str = ""
    expected: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)
    sequence: List[str] = field(default_factory=list)
    pattern: str = ""
    count: Optional[int] = None
    path: str = ""
    children: List["Assertion"] = field(default_factory=list)
    child: Optional["Assertion"] = None


@dataclass
class Extractor:
    """Copies a value out of a tool result into a template variable."""
    type: str
    tool: str
    path: str
    variable_name: str


@dataclass
class TestCase:
    """A single prompt sent to an agent, with the assertions to check."""
    __test__ = False

    name: str
    agent: str
    prompt: str
    description: str = ""
    start_delay: str = ""
    assertions: List[Assertion] = field(default_factory=list)
    extractors: List[Extractor] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    allowed_tools: List[str] = field(default_factory=list)


@dataclass
class Session:
    """An ordered group of tests sharing one conversation history."""
    name: str
    tests: List[TestCase]
    allowed_tools: List[str] = field(default_factory=list)


@dataclass
class TestPlan:
    """A complete test file."""
    __test__ = False

    sessions: List[Session]
    providers: List[ProviderConfig] = field(default_factory=list)
    servers: List[ServerConfig] = field(default_factory=list)
    agents: List[AgentConfig] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    variables: Dict[str, str] = field(default_factory=dict)
    criteria: Criteria = field(default_factory=Criteria)
    source_file: str = ""


@dataclass
class SuiteConfig:
    """A suite: shared infrastructure plus a list of test files."""
    name: str
    test_files: List[str]
    providers: List[ProviderConfig] = field(default_factory=list)
    servers: List[ServerConfig] = field(default_factory=list)
    agents: List[AgentConfig] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    variables: Dict[str, str] = field(default_factory=dict)
    criteria: Criteria = field(default_factory=Criteria)
    source_file: str = ""


# ── Results ─────────────────────────────────────────────────────────────


@dataclass
class ToolDescriptor:
    """A tool exposed by a tool server."""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    server: str = ""

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required") or [])

    @property
    def parameters(self) -> Dict[str, Any]:
        return dict(self.input_schema.get("properties") or {})


@dataclass
class ToolResult:
    """Content returned by a tool call."""
    content: List[Dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    def first_text(self) -> Optional[str]:
        if not self.content:
            return None
        return self.content[0].get("text")

    def text(self) -> str:
        return "\n".join(
            str(item.get("text", "")) for item in self.content if item.get("type") == "text"
        )


@dataclass
class ToolCall:
    name: str
    parameters: Dict[str, Any]
    timestamp: str
    duration_ms: int = 0
    result: ToolResult = field(default_factory=ToolResult)


@dataclass
class RateLimitStats:
    """Counters collected by the rate-limited model wrapper."""
    throttle_count: int = 0
    throttle_wait_time_ms: int = 0
    rate_limit_hits: int = 0
    retry_count: int = 0
    retry_wait_time_ms: int = 0
    retry_success_count: int = 0


@dataclass(frozen=True)
class ExecutionResult:
    """Recorded trace of one agent invocation."""
    test_name: str = ""
    agent_name: str = ""
    provider_type: str = ""
    session_name: str = ""
    source_file: str = ""
    suite_name: str = ""
    start_time: str = ""
    end_time: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    final_output: str = ""
    tokens_used: int = 0
    latency_ms: int = 0
    errors: List[str] = field(default_factory=list)
    rate_limit_stats: Optional[RateLimitStats] = None
    clarification_stats: Optional[Dict[str, Any]] = None


@dataclass
class AssertionResult:
    type: str
    passed: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TestRun:
    """One execution paired with its evaluated assertions."""
    __test__ = False

    execution: ExecutionResult
    assertions: List[AssertionResult]
    passed: bool


@dataclass
class BenchmarkRun:
    """A complete run over one test file or suite."""
    id: str
    name: str
    results: List[TestRun]
    summary: Dict[str, Any]
    success: bool
    created_at: str
