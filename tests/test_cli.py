"""Tests for the CLI module."""

from __future__ import annotations

import json
import logging
import textwrap

import pytest
from click.testing import CliRunner
from rich.logging import RichHandler

import agentbench.cli as cli_module
from agentbench import __version__
from agentbench.cli import cli, setup_logging
from agentbench.generators import GenerationError
from agentbench.loader import LoadError
from agentbench.models import AssertionResult, BenchmarkRun, ExecutionResult, TestRun


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli_module, "setup_logging", lambda verbose=False, log_file=None: None)


def _bench(success=True):
    results = [
        TestRun(
            execution=ExecutionResult(test_name="t1", session_name="s", latency_ms=10, tokens_used=5),
            assertions=[AssertionResult(type="output_contains", passed=True, message="ok")],
            passed=True,
        ),
        TestRun(
            execution=ExecutionResult(test_name="t2", session_name="s", errors=["tool failed"]),
            assertions=[AssertionResult(type="tool_called", passed=False, message="Tool 'x' was not called")],
            passed=False,
        ),
    ]
    return BenchmarkRun(
        id="run-1", name="plan.yaml", results=results,
        summary={"total": 2, "passed": 1, "failed": 1, "pass_rate": 0.5},
        success=success, created_at="now",
    )


def _fake_runner(bench=None, error=None, seen=None):
    async def fake(path, *, results=None, **kw):
        if seen is not None:
            seen.append(path)
        if error is not None:
            raise error
        return bench or _bench()
    return fake


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestRunCommand:
    def test_requires_exactly_one_source(self, runner):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 1
        assert "exactly one of --file or --suite" in result.output

        result = runner.invoke(cli, ["run", "-f", "a.yaml", "-s", "b.yaml"])
        assert result.exit_code == 1

    def test_file_run_writes_json_report(self, runner, tmp_path, monkeypatch):
        seen = []
        monkeypatch.setattr(cli_module, "run_test_file", _fake_runner(seen=seen))
        out = tmp_path / "reports" / "r.json"
        result = runner.invoke(cli, ["run", "-f", "plan.yaml", "-o", str(out)])

        assert seen == ["plan.yaml"]
        assert result.exit_code == 0
        assert "PASS" in result.output and "FAIL" in result.output
        assert "Tool 'x' was not called" in result.output
        assert "error: tool failed" in result.output
        assert "Total: 2  Passed: 1  Failed: 1  Pass rate: 50%" in result.output
        assert json.loads(out.read_text())["id"] == "run-1"

    def test_suite_run_junit_default_path(self, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(cli_module, "run_suite", _fake_runner(seen=seen))
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["run", "-s", "suite.yaml", "--report-type", "junit"])
            assert result.exit_code == 0
            assert seen == ["suite.yaml"]
            with open("report.xml") as f:
                assert "<testsuites" in f.read()

    def test_failed_verdict_exits_1(self, runner, monkeypatch):
        monkeypatch.setattr(cli_module, "run_test_file", _fake_runner(bench=_bench(success=False)))
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["run", "-f", "plan.yaml"])
        assert result.exit_code == 1
        assert "FAILURE" in result.output

    def test_load_error(self, runner, monkeypatch):
        monkeypatch.setattr(cli_module, "run_test_file", _fake_runner(error=LoadError("File not found: x.yaml")))
        result = runner.invoke(cli, ["run", "-f", "x.yaml"])
        assert result.exit_code == 1
        assert "Error: File not found: x.yaml" in result.output

    def test_plan_without_providers_rejected(self, runner, tmp_path):
        p = tmp_path / "plan.yaml"
        p.write_text(textwrap.dedent("""\
            sessions:
              - name: s
                tests:
                  - {name: t, agent: a, prompt: hi}
        """))
        result = runner.invoke(cli, ["run", "-f", str(p)])
        assert result.exit_code == 1
        assert "no providers defined" in result.output

    def test_interrupt_writes_partial_report(self, runner, tmp_path, monkeypatch):
        async def interrupted(path, *, results=None, **kw):
            results.append(_bench().results[0])
            raise KeyboardInterrupt

        monkeypatch.setattr(cli_module, "run_test_file", interrupted)
        out = tmp_path / "partial.json"
        result = runner.invoke(cli, ["run", "-f", "plan.yaml", "-o", str(out)])
        assert result.exit_code == 130
        data = json.loads(out.read_text())
        assert data["success"] is False
        assert [r["test_name"] for r in data["results"]] == ["t1"]


class TestGenerateCommand:
    def test_dry_run_prints_document(self, runner, monkeypatch):
        calls = []

        async def fake_generate(config_path, **kw):
            calls.append((config_path, kw))
            return "providers: []\n\nsessions:\n- name: s\n"

        monkeypatch.setattr(cli_module, "generate_tests", fake_generate)
        result = runner.invoke(cli, ["generate", "-c", "gen.yaml", "--dry-run", "--seed", "7"])
        assert result.exit_code == 0
        assert result.output == "providers: []\n\nsessions:\n- name: s\n"
        assert calls[0] == ("gen.yaml", {"output_dir": ".", "dry_run": True, "seed": 7})

    def test_writes_file(self, runner, monkeypatch):
        async def fake_generate(config_path, **kw):
            return f"{kw['output_dir']}/generated_test_20250101_000000.yaml"

        monkeypatch.setattr(cli_module, "generate_tests", fake_generate)
        result = runner.invoke(cli, ["generate", "-c", "gen.yaml", "--output-dir", "out"])
        assert result.exit_code == 0
        assert "Generated tests written to out/generated_test_20250101_000000.yaml" in result.output

    def test_generation_error(self, runner, monkeypatch):
        async def failing(config_path, **kw):
            raise GenerationError("all 3 generation attempts failed", ["missing prompt"])

        monkeypatch.setattr(cli_module, "generate_tests", failing)
        result = runner.invoke(cli, ["generate", "-c", "gen.yaml"])
        assert result.exit_code == 1
        assert "Error: all 3 generation attempts failed" in result.output

    def test_requires_config(self, runner):
        result = runner.invoke(cli, ["generate"])
        assert result.exit_code != 0


def test_setup_logging_handlers(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_file = tmp_path / "run.log"
    root.handlers = []
    try:
        setup_logging(verbose=True, log_file=str(log_file))
        assert root.level == logging.DEBUG
        assert any(isinstance(h, RichHandler) for h in root.handlers)
        assert any(isinstance(h, logging.FileHandler) for h in root.handlers)
        logging.getLogger("agentbench.test").info("hello file")
        for h in root.handlers:
            h.flush()
        assert "hello file" in log_file.read_text()
    finally:
        for h in root.handlers:
            if h not in saved_handlers:
                h.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
