"""Tests for the command-line tool server."""

from __future__ import annotations

import json

import pytest

from agentbench.agent import AgentBinding, InvokeConfig
from agentbench.assertions import evaluate_assertions
from agentbench.cli_server import CLIServer, parse_args_to_params, parse_subcommands, shell_argv
from agentbench.models import AgentConfig, AgentServer, Assertion, ServerConfig
from agentbench.registry import connect_server
from agentbench.transport import ClientState, TransportError
from tests.helpers.fakes import ScriptedModel, text_response, tool_response


def _config(command="echo", **kwargs):
    kwargs.setdefault("shell", "sh")
    kwargs.setdefault("disable_help_auto_discovery", True)
    return ServerConfig(name="shell", type="cli", command=command, **kwargs)


async def _server(command="echo", **kwargs):
    server = CLIServer(_config(command, **kwargs))
    await server.initialize()
    return server


# ── Helpers ─────────────────────────────────────────────────────────────


class TestHelpers:
    @pytest.mark.parametrize("shell,argv", [
        ("sh", ["sh", "-c", "ls -l"]),
        ("BASH", ["bash", "-c", "ls -l"]),
        ("cmd", ["cmd", "/C", "ls -l"]),
        ("pwsh", ["pwsh", "-NoProfile", "-NonInteractive", "-Command", "ls -l"]),
    ])
    def test_shell_argv(self, shell, argv):
        assert shell_argv(shell, "ls -l") == argv

    def test_shell_argv_unknown(self):
        with pytest.raises(TransportError, match="unsupported shell"):
            shell_argv("fish", "ls")

    def test_parse_args_to_params(self):
        params = parse_args_to_params("status --branch main --short -v --format=json")
        assert params == {"branch": "main", "short": "true", "v": "true", "format": "json"}

    def test_parse_subcommands(self):
        help_text = (
            "USAGE:\n   tool [global options] command\n\n"
            "COMMANDS:\n   init     Create a repo\n   status   Show state\n   --verbose\n\n"
            "GLOBAL OPTIONS:\n   --help\n"
        )
        assert parse_subcommands(help_text) == ["init", "status"]

    def test_parse_subcommands_without_section(self):
        assert parse_subcommands("usage: tool [-h]") == []


# ── Lifecycle ───────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_exposes_execute_tool(self):
        server = await _server()
        assert server.state is ClientState.READY
        [tool] = await server.list_tools()
        assert tool.name == "cli_execute"
        assert tool.server == "shell"
        assert tool.input_schema["properties"]["args"]["type"] == "string"
        assert await server.is_healthy()

    @pytest.mark.asyncio
    async def test_tool_prefix(self):
        server = await _server(tool_prefix="git")
        assert [t.name for t in await server.list_tools()] == ["git_execute"]

    @pytest.mark.asyncio
    async def test_missing_working_dir_fails(self, tmp_path):
        server = CLIServer(_config(working_dir=str(tmp_path / "missing")))
        with pytest.raises(TransportError, match="working directory does not exist"):
            await server.initialize()
        assert server.state is ClientState.FAILED

    @pytest.mark.asyncio
    async def test_close_twice_raises(self):
        server = await _server()
        await server.close()
        assert not await server.is_healthy()
        with pytest.raises(TransportError, match="already closed"):
            await server.close()

    @pytest.mark.asyncio
    async def test_close_uninitialized_raises(self):
        with pytest.raises(TransportError, match="never initialized"):
            await CLIServer(_config()).close()

    @pytest.mark.asyncio
    async def test_call_requires_ready(self):
        with pytest.raises(TransportError, match="not ready"):
            await CLIServer(_config()).call_tool("cli_execute", {"args": "hi"})

    @pytest.mark.asyncio
    async def test_registry_connects_cli_servers(self):
        server = await connect_server(_config())
        assert isinstance(server, CLIServer)
        assert server.get_info()["state"] == "ready"


# ── Help content ────────────────────────────────────────────────────────


class TestHelp:
    @pytest.mark.asyncio
    async def test_single_help_command(self):
        server = await _server(help_commands=["echo 'usage: tool [options]'"])
        assert server.help_content == "usage: tool [options]"
        [tool] = await server.list_tools()
        assert "Available commands and options:\nusage: tool [options]" in tool.description

    @pytest.mark.asyncio
    async def test_multiple_help_commands_are_joined(self):
        server = await _server(help_commands=["echo first", "echo second", "exit 1"])
        assert server.help_content == "first\n\n--- Help Command 2 ---\nsecond"

    @pytest.mark.asyncio
    async def test_auto_discovery(self, tmp_path):
        server = await _server(disable_help_auto_discovery=False, working_dir=str(tmp_path))
        # echo prints its first help flag back
        assert server.help_content == "--help"

    @pytest.mark.asyncio
    async def test_auto_discovery_disabled(self):
        server = await _server()
        assert server.help_content == ""
        [tool] = await server.list_tools()
        assert tool.description == "Execute echo CLI command with arguments."


# ── Execution ───────────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_stdout(self):
        server = await _server()
        result = await server.call_tool("cli_execute", {"args": "hello --name world"})
        assert not result.is_error
        assert json.loads(result.first_text()) == {"exit_code": 0, "stdout": "hello --name world\n", "stderr": ""}
        [execution] = server.executions
        assert execution.full_cmd == "echo hello --name world"
        assert execution.params == {"name": "world"}

    @pytest.mark.asyncio
    async def test_exit_code(self):
        server = await _server(command="exit")
        result = await server.call_tool("cli_execute", {"args": "3"})
        assert result.is_error
        assert json.loads(result.first_text())["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_stderr(self):
        server = await _server()
        result = await server.call_tool("cli_execute", {"args": "oops >&2"})
        data = json.loads(result.first_text())
        assert data["stdout"] == ""
        assert data["stderr"] == "oops\n"

    @pytest.mark.asyncio
    async def test_runs_in_working_dir(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        server = await _server(command="ls", working_dir=str(tmp_path))
        result = await server.call_tool("cli_execute", {})
        assert "marker.txt" in json.loads(result.first_text())["stdout"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        server = await _server()
        with pytest.raises(TransportError, match="unknown tool 'git_execute'"):
            await server.call_tool("git_execute", {"args": "hi"})


# ── Agent loop and assertions ───────────────────────────────────────────


class TestAssertionsAgainstServer:
    async def _run(self, server, *calls):
        responses = [
            tool_response("cli_execute", {"args": args}, call_id=f"call_{i}")
            for i, args in enumerate(calls, 1)
        ]
        model = ScriptedModel(responses + [text_response("done")])
        config = AgentConfig(name="helper", provider="main", servers=[AgentServer("shell")])
        binding = AgentBinding(config, model, {"shell": server})
        await binding.load_tools()
        return await binding.invoke([{"role": "user", "content": "run it"}], InvokeConfig())

    @pytest.mark.asyncio
    async def test_passing_assertions(self):
        result = await self._run(await _server(), "hello world")
        results = evaluate_assertions(result, [
            Assertion(type="cli_exit_code_equals", expected=0),
            Assertion(type="cli_stdout_contains", value="hello world"),
            Assertion(type="cli_stdout_regex", pattern=r"^hello \w+$"),
            Assertion(type="not", child=Assertion(type="cli_stderr_contains", value="error")),
        ])
        assert [r.passed for r in results] == [True, True, True, True]

    @pytest.mark.asyncio
    async def test_failing_command(self):
        server = await _server(command="sh -c 'echo broken >&2; exit 2'")
        result = await self._run(server, "")
        exit_code, stderr = evaluate_assertions(result, [
            Assertion(type="cli_exit_code_equals", expected=0),
            Assertion(type="cli_stderr_contains", value="broken"),
        ])
        assert not exit_code.passed
        assert exit_code.message == "Exit code 2, expected 0"
        assert stderr.passed

    @pytest.mark.asyncio
    async def test_first_call_is_checked(self):
        result = await self._run(await _server(), "first", "second")
        first, second = evaluate_assertions(result, [
            Assertion(type="cli_stdout_contains", value="first"),
            Assertion(type="cli_stdout_contains", value="second"),
        ])
        assert first.passed
        assert not second.passed
