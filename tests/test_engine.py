"""Tests for the engine: sessions, delays, verdicts and full runs."""

from __future__ import annotations

import asyncio
import textwrap

import pytest

from agentbench.agent import AgentBinding
from agentbench.engine import (
    TestEngine,
    evaluate_success,
    get_max_iterations,
    merge_settings,
    parse_delay,
    parse_timeout,
    run_suite,
    run_test_file,
    select_variables,
)
from agentbench.loader import LoadError
from agentbench.models import (
    AgentConfig,
    AgentServer,
    Criteria,
    ExecutionResult,
    Session,
    Settings,
    TestCase,
    TestPlan,
    TestRun,
)
from agentbench.registry import InitializationError
from agentbench.templates import TemplateContext
from tests.helpers.fakes import FakeServer, ScriptedModel, text_response, tool_response

INFRA = textwrap.dedent("""\
    providers:
      - name: main
        type: openai
        token: sk-test
        model: gpt-test
    servers:
      - name: fs
        type: stdio
        command: fake-server
    agents:
      - name: helper
        provider: main
        system_prompt: "You are {{ROLE}}."
        servers: [fs]
    variables:
      ROLE: a careful assistant
      USER: ann
""")


class Recorder:
    """Records sleeps without waiting."""

    def __init__(self):
        self.sleeps = []

    async def __call__(self, seconds):
        self.sleeps.append(seconds)


def _factories(models, servers):
    def provider_factory(config):
        return models[config.name]

    async def server_factory(config):
        return servers[config.name]

    return provider_factory, server_factory


def _write(tmp_path, body, name="plan.yaml"):
    p = tmp_path / name
    p.write_text(body)
    return str(p)


def _runs(*passed):
    return [TestRun(execution=ExecutionResult(), assertions=[], passed=p) for p in passed]


# ── Settings helpers ────────────────────────────────────────────────────


class TestSettingsHelpers:
    def test_parse_delay(self, caplog):
        assert parse_delay("1m30s") == 90.0
        assert parse_delay("-3s") == 0.0
        assert parse_delay("") == 0.0
        assert parse_delay("whenever", "test_delay") == 0.0
        assert "Invalid test_delay" in caplog.text

    def test_parse_timeout(self):
        assert parse_timeout("") is None
        assert parse_timeout("30s") == 30.0

    def test_max_iterations(self):
        assert get_max_iterations(Settings()) == 10
        assert get_max_iterations(Settings(max_iterations=-1)) == 10
        assert get_max_iterations(Settings(max_iterations=3)) == 3

    def test_merge_settings_override_wins_when_set(self):
        base = Settings(tool_timeout="10s", test_delay="1s")
        merged = merge_settings(base, Settings(test_delay="2s", max_iterations=4))
        assert merged.tool_timeout == "10s"
        assert merged.test_delay == "2s"
        assert merged.max_iterations == 4

    @pytest.mark.parametrize("policy,expected", [
        ("", {"A": "suite", "S": "s"}),
        ("suite-only", {"A": "suite", "S": "s"}),
        ("test-only", {"A": "file", "F": "f"}),
        ("merge-test-priority", {"A": "file", "S": "s", "F": "f"}),
        ("merge-suite-priority", {"A": "suite", "S": "s", "F": "f"}),
    ])
    def test_select_variables(self, policy, expected):
        suite_vars = {"A": "suite", "S": "s"}
        file_vars = {"A": "file", "F": "f"}
        assert select_variables(policy, suite_vars, file_vars) == expected


class TestEvaluateSuccess:
    def test_rate_met(self):
        assert evaluate_success(Criteria(success_rate="0.8"), _runs(*[True] * 8, *[False] * 2))

    def test_rate_missed(self):
        assert not evaluate_success(Criteria(success_rate="0.8"), _runs(*[True] * 7, *[False] * 3))

    def test_default_requires_all(self):
        assert evaluate_success(Criteria(), _runs(True, True))
        assert not evaluate_success(Criteria(), _runs(True, False))

    def test_unparsable_rate_requires_all(self):
        assert not evaluate_success(Criteria(success_rate="most"), _runs(True, False))


# ── Engine ──────────────────────────────────────────────────────────────


async def _engine(sessions, model, settings=None, sleep=None, tools=("a", "b", "c", "d")):
    server = FakeServer("fs", list(tools))
    config = AgentConfig(name="helper", provider="main", servers=[AgentServer("fs")])
    binding = AgentBinding(config, model, {"fs": server})
    await binding.load_tools()
    plan = TestPlan(sessions=sessions, settings=settings or Settings(), source_file="/plans/p.yaml")
    return TestEngine(plan, {"helper": binding}, TemplateContext(), sleep=sleep or Recorder())


def _test(name, prompt="hi", **kw):
    return TestCase(name=name, agent="helper", prompt=prompt, **kw)


class TestEngineRun:
    @pytest.mark.asyncio
    async def test_tool_set_intersection_keeps_agent_order(self):
        model = ScriptedModel()
        session = Session(name="s", allowed_tools=["d", "b", "a"],
                          tests=[_test("t", allowed_tools=["a", "d"])])
        engine = await _engine([session], model)
        await engine.run()
        sent = [t["function"]["name"] for t in model.requests[0][1]]
        assert sent == ["a", "d"]

    @pytest.mark.asyncio
    async def test_session_filter_only(self):
        model = ScriptedModel()
        session = Session(name="s", allowed_tools=["c", "a"], tests=[_test("t")])
        engine = await _engine([session], model)
        await engine.run()
        assert [t["function"]["name"] for t in model.requests[0][1]] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_delays(self):
        sleep = Recorder()
        sessions = [
            Session(name="s1", tests=[_test("t1"), _test("t2", start_delay="250ms")]),
            Session(name="s2", tests=[_test("t3")]),
        ]
        settings = Settings(test_delay="1s", session_delay="5s")
        engine = await _engine(sessions, ScriptedModel(), settings=settings, sleep=sleep)
        await engine.run()
        assert sleep.sleeps == [1.0, 0.25, 1.0, 5.0]

    @pytest.mark.asyncio
    async def test_results_labelled(self):
        engine = await _engine([Session(name="s", tests=[_test("t")])], ScriptedModel())
        engine.suite_name = "nightly"
        results = await engine.run()
        ex = results[0].execution
        assert (ex.test_name, ex.session_name, ex.agent_name) == ("t", "s", "helper")
        assert ex.source_file == "/plans/p.yaml"
        assert ex.suite_name == "nightly"
        assert ex.provider_type == "OPENAI"

    @pytest.mark.asyncio
    async def test_history_shared_within_session_only(self):
        model = ScriptedModel([text_response("first"), text_response("second"), text_response("third")])
        sessions = [
            Session(name="s1", tests=[_test("t1", "one"), _test("t2", "two")]),
            Session(name="s2", tests=[_test("t3", "three")]),
        ]
        engine = await _engine(sessions, model)
        await engine.run()
        assert [m["content"] for m in model.requests[1][0]] == ["one", "first", "two"]
        assert [m["content"] for m in model.requests[2][0]] == ["three"]

    @pytest.mark.asyncio
    async def test_system_prompt_sees_runtime_names(self):
        model = ScriptedModel()
        engine = await _engine([Session(name="triage", tests=[_test("t")])], model)
        engine.agents["helper"].config.system_prompt = (
            "You are {{AGENT_NAME}} on {{PROVIDER_NAME}} in {{SESSION_NAME}}."
        )
        await engine.run()
        system = model.requests[0][0][0]
        assert system == {"role": "system", "content": "You are helper on main in triage."}

    @pytest.mark.asyncio
    async def test_failed_assertions_do_not_abort(self):
        from agentbench.models import Assertion

        model = ScriptedModel([RuntimeError("upstream down"), text_response("fine")])
        session = Session(name="s", tests=[
            _test("broken", assertions=[Assertion(type="no_error_messages")]),
            _test("after", assertions=[Assertion(type="output_contains", value="fine")]),
        ])
        engine = await _engine([session], model)
        results = await engine.run()
        assert [r.passed for r in results] == [False, True]
        assert "upstream down" in results[0].execution.errors[0]

    @pytest.mark.asyncio
    async def test_invoke_exception_recorded(self, monkeypatch):
        engine = await _engine([Session(name="s", tests=[_test("t1"), _test("t2")])], ScriptedModel())
        binding = engine.agents["helper"]
        original = binding.invoke
        calls = []

        async def flaky_invoke(messages, config, tools=None):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("binding exploded")
            return await original(messages, config, tools)

        monkeypatch.setattr(binding, "invoke", flaky_invoke)
        results = await engine.run()
        assert len(results) == 2
        assert "binding exploded" in results[0].execution.errors[0]
        assert results[0].passed is True  # no assertions to fail
        assert results[1].execution.final_output == "done"

    @pytest.mark.asyncio
    async def test_cancellation_records_partial_result(self):
        started = asyncio.Event()

        class HangingModel(ScriptedModel):
            async def generate(self, messages, tools=None):
                if len(self.requests) >= 1:
                    started.set()
                    await asyncio.sleep(3600)
                return await super().generate(messages, tools)

        results = []
        sessions = [Session(name="s", tests=[_test("t1"), _test("t2")])]
        engine = await _engine(sessions, HangingModel())
        engine.results = results
        task = asyncio.create_task(engine.run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert [r.execution.test_name for r in results] == ["t1", "t2"]
        assert results[1].passed is False
        assert results[1].execution.errors == ["Execution cancelled"]


# ── Full runs ───────────────────────────────────────────────────────────


class TestRunTestFile:
    @pytest.mark.asyncio
    async def test_end_to_end(self, tmp_path):
        path = _write(tmp_path, INFRA + textwrap.dedent("""\
            sessions:
              - name: users
                tests:
                  - name: create
                    prompt: "Create a user named {{USER}}"
                    assertions:
                      - type: tool_called
                        tool: create_user
                      - type: tool_param_equals
                        tool: create_user
                        params: {arg: "{{USER}}"}
                    extractors:
                      - type: jsonpath
                        tool: create_user
                        path: $.id
                        variable_name: USER_ID
                  - name: lookup
                    prompt: "Look up user {{USER_ID}} as {{AGENT_NAME}} in {{SESSION_NAME}}"
                    assertions:
                      - type: output_contains
                        value: "{{USER_ID}}"
              - name: other
                tests:
                  - name: broken
                    prompt: hello
                    assertions:
                      - type: no_error_messages
            """))
        model = ScriptedModel([
            tool_response("create_user", {"arg": "ann"}),
            text_response("Created."),
            text_response("User 7 is ann"),
            RuntimeError("model unavailable"),
        ])
        server = FakeServer("fs", ["create_user"], {"create_user": {"id": 7}})
        provider_factory, server_factory = _factories({"main": model}, {"fs": server})

        run = await run_test_file(path, provider_factory=provider_factory, server_factory=server_factory,
                                  sleep=Recorder())

        assert [r.passed for r in run.results] == [True, True, False]
        assert run.success is False
        assert run.summary["passed"] == 2
        lookup_messages = model.requests[2][0]
        assert lookup_messages[0] == {"role": "system", "content": "You are a careful assistant."}
        assert lookup_messages[-1]["content"] == "Look up user 7 as helper in users"
        assert model.requests[3][0][-1]["content"] == "hello"
        assert len(model.requests[3][0]) == 2
        assert server.closed
        assert model.closed

    @pytest.mark.asyncio
    async def test_success_rate_criteria(self, tmp_path):
        path = _write(tmp_path, INFRA + textwrap.dedent("""\
            criteria:
              success_rate: 0.5
            sessions:
              - name: s
                tests:
                  - {name: good, prompt: a, assertions: [{type: output_contains, value: done}]}
                  - {name: bad, prompt: b, assertions: [{type: output_contains, value: nope}]}
            """))
        provider_factory, server_factory = _factories(
            {"main": ScriptedModel()}, {"fs": FakeServer("fs", ["t"])},
        )
        run = await run_test_file(path, provider_factory=provider_factory, server_factory=server_factory)
        assert run.success is True

    @pytest.mark.asyncio
    async def test_cleanup_on_agent_failure(self, tmp_path):
        body = INFRA.replace("servers: [fs]", "servers: [fs]\n  - name: other\n    provider: ghost\n"
                                                "    servers: [fs]")
        path = _write(tmp_path, body + "sessions:\n  - name: s\n    tests: [{name: t, agent: helper, prompt: x}]\n")
        model = ScriptedModel()
        server = FakeServer("fs", ["t"])
        provider_factory, server_factory = _factories({"main": model}, {"fs": server})
        with pytest.raises(InitializationError, match="unknown provider 'ghost'"):
            await run_test_file(path, provider_factory=provider_factory, server_factory=server_factory)
        assert server.closed
        assert model.closed

    @pytest.mark.asyncio
    async def test_invalid_file(self, tmp_path):
        with pytest.raises(LoadError):
            await run_test_file(_write(tmp_path, INFRA))


class TestRunSuite:
    def _setup(self, tmp_path, policy=""):
        plans = tmp_path / "plans"
        plans.mkdir()
        (plans / "a.yaml").write_text(textwrap.dedent("""\
            variables:
              CITY: Rome
            settings:
              test_delay: 9s
            sessions:
              - name: weather
                tests:
                  - {name: t1, prompt: "Weather in {{CITY}}"}
                  - {name: t2, prompt: "Again"}
            """))
        settings = f"settings:\n  test_delay: 2s\n  variable_policy: {policy}\n" if policy else \
            "settings:\n  test_delay: 2s\n"
        suite = INFRA.replace("USER: ann", "USER: ann\n  CITY: Paris") + settings + textwrap.dedent("""\
            name: nightly
            test_files: [plans/a.yaml]
            """)
        return _write(tmp_path, suite, name="suite.yaml")

    @pytest.mark.asyncio
    async def test_suite_variables_and_settings(self, tmp_path):
        path = self._setup(tmp_path)
        model = ScriptedModel()
        sleep = Recorder()
        provider_factory, server_factory = _factories({"main": model}, {"fs": FakeServer("fs", ["t"])})
        run = await run_suite(path, provider_factory=provider_factory, server_factory=server_factory, sleep=sleep)

        assert run.name == "nightly"
        assert model.requests[0][0][-1]["content"] == "Weather in Paris"
        assert sleep.sleeps == [2.0]
        assert {r.execution.suite_name for r in run.results} == {"nightly"}
        assert run.results[0].execution.source_file.endswith("a.yaml")

    @pytest.mark.asyncio
    async def test_merge_test_priority(self, tmp_path):
        path = self._setup(tmp_path, policy="merge-test-priority")
        model = ScriptedModel()
        provider_factory, server_factory = _factories({"main": model}, {"fs": FakeServer("fs", ["t"])})
        await run_suite(path, provider_factory=provider_factory, server_factory=server_factory, sleep=Recorder())
        assert model.requests[0][0][-1]["content"] == "Weather in Rome"
