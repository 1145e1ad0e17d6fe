"""Engine: executes test plans and suites against configured agents."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from agentbench.agent import DEFAULT_MAX_ITERATIONS, AgentBinding, InvokeConfig, filter_tools
from agentbench.assertions import evaluate_assertions
from agentbench.extractors import run_extractors
from agentbench.loader import load_suite, load_test_plan, parse_duration
from agentbench.models import (
    AssertionResult,
    BenchmarkRun,
    Criteria,
    ExecutionResult,
    Session,
    Settings,
    TestCase,
    TestPlan,
    TestRun,
    ToolDescriptor,
    VariablePolicy,
)
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
from agentbench.templates import TemplateContext, create_static_context, merge_variables, render

logger = logging.getLogger(__name__)

MAX_ITERATIONS_WARNING = 100

Sleep = Callable[[float], Awaitable[Any]]


# ── Settings ────────────────────────────────────────────────────────────


def parse_delay(value: str, name: str = "delay") -> float:
    """Seconds for a delay setting; invalid values warn and give 0, negatives clamp to 0."""
    if not value:
        return 0.0
    try:
        seconds = parse_duration(value)
    except ValueError:
        logger.warning("Invalid %s %r, using no delay", name, value)
        return 0.0
    return max(seconds, 0.0)


def parse_timeout(value: str) -> Optional[float]:
    """Tool timeout in seconds, or None for unbounded."""
    seconds = parse_delay(value, "tool_timeout")
    return seconds or None


def get_max_iterations(settings: Settings) -> int:
    if settings.max_iterations <= 0:
        return DEFAULT_MAX_ITERATIONS
    if settings.max_iterations > MAX_ITERATIONS_WARNING:
        logger.warning("max_iterations=%d is unusually high", settings.max_iterations)
    return settings.max_iterations


def merge_settings(base: Settings, override: Settings) -> Settings:
    """Field-by-field merge; non-empty values in *override* win."""
    changes = {
        f.name: getattr(override, f.name)
        for f in dataclasses.fields(Settings)
        if getattr(override, f.name)
    }
    return dataclasses.replace(base, **changes)


def select_variables(policy: str, suite_vars: Mapping[str, str], file_vars: Mapping[str, str]) -> Dict[str, str]:
    """Variables visible to one test file of a suite under *policy*."""
    policy = policy or VariablePolicy.SUITE_ONLY.value
    if policy == VariablePolicy.TEST_ONLY:
        return dict(file_vars)
    if policy == VariablePolicy.MERGE_TEST_PRIORITY:
        return merge_variables(file_vars, suite_vars)
    if policy == VariablePolicy.MERGE_SUITE_PRIORITY:
        return merge_variables(suite_vars, file_vars)
    return dict(suite_vars)


def evaluate_success(criteria: Criteria, results: List[TestRun]) -> bool:
    """Overall verdict.

    With a numeric ``success_rate`` the run succeeds iff the rate is at
    most passed/total. Otherwise, or if the value does not parse, any
    failed test fails the run.
    """
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    if criteria.success_rate:
        try:
            threshold = float(criteria.success_rate)
        except ValueError:
            logger.warning("Invalid success_rate %r, requiring all tests to pass", criteria.success_rate)
        else:
            rate = passed / total if total else 0.0
            return threshold <= rate
    return passed == total


def summarize(results: List[TestRun]) -> Dict[str, Any]:
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    return {
        "total": total,
        "passed": passed,
        "failed": total - passed,
        "pass_rate": passed / total if total else 0.0,
        "total_tokens": sum(r.execution.tokens_used for r in results),
        "avg_latency_ms": sum(r.execution.latency_ms for r in results) / total if total else 0,
    }


# ── Engine ──────────────────────────────────────────────────────────────


class TestEngine:
    """Runs the sessions of one test plan in order.

    Results are appended to :attr:`results` as each test finishes, so a
    caller still holds everything recorded so far if the run is cancelled.
    """

    __test__ = False

    def __init__(
        self,
        plan: TestPlan,
        agents: Mapping[str, AgentBinding],
        context: TemplateContext,
        *,
        settings: Optional[Settings] = None,
        suite_name: str = "",
        results: Optional[List[TestRun]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.plan = plan
        self.agents = agents
        self.context = context
        self.settings = settings or plan.settings
        self.suite_name = suite_name
        self.results: List[TestRun] = results if results is not None else []
        self.captured: Dict[str, str] = {}
        self._sleep = sleep
        self.invoke_config = InvokeConfig(
            max_iterations=get_max_iterations(self.settings),
            tool_timeout=parse_timeout(self.settings.tool_timeout),
            retain_intermediate_responses=True,
            verbose=self.settings.verbose,
        )
        self.test_delay = parse_delay(self.settings.test_delay, "test_delay")
        self.session_delay = parse_delay(self.settings.session_delay, "session_delay")

    async def run(self) -> List[TestRun]:
        sessions = self.plan.sessions
        total_tests = sum(len(s.tests) for s in sessions)
        done = 0
        for s_index, session in enumerate(sessions):
            logger.info("Session %s (%d tests)", session.name, len(session.tests))
            histories: Dict[str, List[Dict[str, Any]]] = {}
            session_tools: Dict[str, List[ToolDescriptor]] = {}
            for test in session.tests:
                await self._run_test(session, test, histories, session_tools)
                done += 1
                if self.test_delay and done < total_tests:
                    await self._sleep(self.test_delay)
            if self.session_delay and s_index < len(sessions) - 1:
                await self._sleep(self.session_delay)
        return self.results

    def _record(self, execution: ExecutionResult, assertions: List[AssertionResult], passed: bool) -> TestRun:
        run = TestRun(execution=execution, assertions=assertions, passed=passed)
        self.results.append(run)
        status = "PASS" if passed else "FAIL"
        logger.info("[%s] %s/%s", status, execution.session_name, execution.test_name)
        return run

    def _label(self, execution: ExecutionResult, session: Session, test: TestCase, latency_ms: int) -> ExecutionResult:
        return dataclasses.replace(
            execution,
            test_name=test.name,
            session_name=session.name,
            source_file=self.plan.source_file,
            suite_name=self.suite_name,
            agent_name=execution.agent_name or test.agent,
            latency_ms=latency_ms,
        )

    def _session_context(self, session: Session, binding: AgentBinding) -> TemplateContext:
        runtime = {
            "AGENT_NAME": binding.name,
            "SESSION_NAME": session.name,
            "PROVIDER_NAME": binding.config.provider,
        }
        return self.context.extend(runtime).extend(self.captured)

    def _test_context(self, session: Session, test: TestCase, binding: AgentBinding) -> TemplateContext:
        return self._session_context(session, binding).with_variables(test.variables)

    async def _run_test(
        self,
        session: Session,
        test: TestCase,
        histories: Dict[str, List[Dict[str, Any]]],
        session_tools: Dict[str, List[ToolDescriptor]],
    ) -> TestRun:
        binding = self.agents.get(test.agent)
        if binding is None:
            failed = ExecutionResult(errors=[f"unknown agent '{test.agent}'"])
            return self._record(self._label(failed, session, test, 0), [], False)

        if test.agent not in session_tools:
            session_tools[test.agent] = filter_tools(binding.tools, session.allowed_tools)
        tools = filter_tools(session_tools[test.agent], test.allowed_tools)

        history = histories.get(test.agent)
        if history is None:
            history = []
            if binding.config.system_prompt:
                prompt = render(binding.config.system_prompt, self._session_context(session, binding))
                history.append({"role": "system", "content": prompt})
            histories[test.agent] = history

        start_delay = parse_delay(test.start_delay, "start_delay")
        if start_delay:
            await self._sleep(start_delay)

        ctx = self._test_context(session, test, binding)
        history.append({"role": "user", "content": render(test.prompt, ctx)})

        started = time.perf_counter()
        try:
            execution = await binding.invoke(history, self.invoke_config, tools)
        except asyncio.CancelledError:
            partial = binding.last_result or ExecutionResult(errors=["Execution cancelled"])
            elapsed = int((time.perf_counter() - started) * 1000)
            self._record(self._label(partial, session, test, elapsed), [], False)
            raise
        except Exception as e:
            logger.exception("Agent %s failed on test %s", test.agent, test.name)
            execution = ExecutionResult(
                agent_name=binding.name, provider_type=binding.provider_type,
                errors=[f"agent invocation failed: {e}"],
            )
        execution = self._label(execution, session, test, int((time.perf_counter() - started) * 1000))

        captured = run_extractors(test.extractors, execution)
        if captured:
            self.captured.update(captured)
            ctx = ctx.extend(captured)

        try:
            assertion_results = evaluate_assertions(execution, test.assertions, ctx, binding.tools)
        except Exception as e:
            logger.exception("Assertion evaluation failed for test %s", test.name)
            assertion_results = [AssertionResult(
                type="evaluation", passed=False, message=f"assertion evaluation failed: {e}",
            )]
        passed = all(r.passed for r in assertion_results)
        return self._record(execution, assertion_results, passed)


# ── Runs ────────────────────────────────────────────────────────────────


def _benchmark_run(name: str, results: List[TestRun], criteria: Criteria, run_id: str) -> BenchmarkRun:
    return BenchmarkRun(
        id=run_id,
        name=name,
        results=results,
        summary=summarize(results),
        success=evaluate_success(criteria, results),
        created_at=datetime.now(timezone.utc).isoformat(),
    )


async def run_test_file(
    path: str,
    *,
    results: Optional[List[TestRun]] = None,
    provider_factory: ProviderFactory = create_provider,
    server_factory: ServerFactory = connect_server,
    sleep: Sleep = asyncio.sleep,
) -> BenchmarkRun:
    """Load and run one test file.

    Raises:
        LoadError: If the file is invalid.
        InitializationError: If a provider, server or agent cannot be set up.
    """
    plan = load_test_plan(path)
    run_id = str(uuid.uuid4())
    context = create_static_context(plan.source_file, plan.variables, run_id=run_id)
    results = results if results is not None else []

    providers = await init_providers(plan.providers, context, provider_factory)
    servers: Dict[str, Any] = {}
    try:
        servers = await init_servers(required_servers(plan.servers, plan.agents), context, server_factory)
        agents = await init_agents(plan.agents, providers, servers)
        engine = TestEngine(plan, agents, context, results=results, sleep=sleep)
        await engine.run()
    finally:
        await cleanup_servers(servers)
        await close_providers(providers)

    return _benchmark_run(plan.source_file, results, plan.criteria, run_id)


async def run_suite(
    path: str,
    *,
    results: Optional[List[TestRun]] = None,
    provider_factory: ProviderFactory = create_provider,
    server_factory: ServerFactory = connect_server,
    sleep: Sleep = asyncio.sleep,
) -> BenchmarkRun:
    """Run every test file of a suite against the suite's infrastructure."""
    suite = load_suite(path)
    run_id = str(uuid.uuid4())
    suite_context = create_static_context(suite.source_file, suite.variables, run_id=run_id)
    results = results if results is not None else []

    agent_names = [a.name for a in suite.agents]
    plans = [load_test_plan(f, suite_mode=True, agent_names=agent_names) for f in suite.test_files]

    providers = await init_providers(suite.providers, suite_context, provider_factory)
    servers: Dict[str, Any] = {}
    try:
        servers = await init_servers(required_servers(suite.servers, suite.agents), suite_context, server_factory)
        agents = await init_agents(suite.agents, providers, servers)
        for plan in plans:
            logger.info("Running %s", plan.source_file)
            settings = merge_settings(plan.settings, suite.settings)
            variables = select_variables(settings.variable_policy, suite.variables, plan.variables)
            context = create_static_context(plan.source_file, variables, run_id=run_id)
            engine = TestEngine(
                plan, agents, context, settings=settings, suite_name=suite.name,
                results=results, sleep=sleep,
            )
            await engine.run()
    finally:
        await cleanup_servers(servers)
        await close_providers(providers)

    return _benchmark_run(suite.name, results, suite.criteria, run_id)
