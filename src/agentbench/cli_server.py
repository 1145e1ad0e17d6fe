"""Tool server that wraps a command-line program.

A ``cli`` server exposes a single ``<prefix>_execute`` tool (``cli_execute``
by default). Each call runs the configured command with the given
arguments through a shell and returns ``{"exit_code", "stdout",
"stderr"}`` as JSON text, which the ``cli_*`` assertions read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from agentbench.models import ServerConfig, ToolDescriptor, ToolResult
from agentbench.transport import CLI_SHELLS, ClientState, TransportError, validate_server_config

logger = logging.getLogger(__name__)

HELP_TIMEOUT = 10.0
HELP_PATTERNS = ("--help", "-h", "help")


def default_shell() -> str:
    return "powershell" if sys.platform == "win32" else "bash"


def shell_argv(shell: str, command: str) -> List[str]:
    """Argument vector that runs *command* through *shell*."""
    kind = shell.lower()
    if kind in ("powershell", "pwsh"):
        return [kind, "-NoProfile", "-NonInteractive", "-Command", command]
    if kind == "cmd":
        return ["cmd", "/C", command]
    if kind in ("bash", "sh", "zsh"):
        return [kind, "-c", command]
    raise TransportError(f"unsupported shell: {shell}")


def parse_args_to_params(args: str) -> Dict[str, str]:
    """Read ``--key value``, ``--key=value`` and ``-k value`` pairs; bare flags map to ``"true"``."""
    params: Dict[str, str] = {}
    parts = args.split()
    i = 0
    while i < len(parts):
        part = parts[i]
        if part.startswith("--") and "=" in part:
            key, _, value = part[2:].partition("=")
            params[key] = value
        elif part.startswith("--") or (part.startswith("-") and len(part) == 2):
            key = part.lstrip("-")
            if i + 1 < len(parts) and not parts[i + 1].startswith("-"):
                params[key] = parts[i + 1]
                i += 1
            else:
                params[key] = "true"
        i += 1
    return params


def parse_subcommands(help_output: str) -> List[str]:
    """Subcommand names listed under a ``COMMANDS:`` heading."""
    subcommands: List[str] = []
    in_commands = False
    for line in help_output.splitlines():
        trimmed = line.strip()
        if trimmed.startswith("COMMANDS:") or trimmed == "COMMANDS":
            in_commands = True
            continue
        if not in_commands:
            continue
        if trimmed.endswith(":") and not trimmed.startswith("-"):
            break
        if trimmed and not trimmed.startswith("-"):
            name = trimmed.split()[0]
            if not name.startswith("<"):
                subcommands.append(name)
    return subcommands


@dataclass
class CLIExecution:
    command: str
    args: List[str]
    full_cmd: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timestamp: str
    params: Dict[str, str] = field(default_factory=dict)


class CLIServer:
    """Presents a command-line program through the tool server interface."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.state = ClientState.UNINITIALIZED
        self.shell = config.shell or default_shell()
        self.working_dir = config.working_dir or os.getcwd()
        self.help_content = ""
        self.executions: List[CLIExecution] = []
        self._tools: List[ToolDescriptor] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def tool_name(self) -> str:
        return f"{self.config.tool_prefix or 'cli'}_execute"

    def validate(self) -> None:
        validate_server_config(self.config)
        if self.shell.lower() not in CLI_SHELLS:
            raise TransportError(f"server '{self.name}': unsupported shell {self.shell!r}")
        if not os.path.isdir(self.working_dir):
            raise TransportError(f"server '{self.name}': working directory does not exist: {self.working_dir}")

    async def initialize(self) -> None:
        if self.state is not ClientState.UNINITIALIZED:
            raise TransportError(f"server '{self.name}': cannot initialize from state {self.state.value}")
        self.state = ClientState.VALIDATING
        try:
            self.validate()
        except TransportError:
            self.state = ClientState.FAILED
            raise
        self.help_content = await self._load_help()
        self._tools = [self._build_tool()]
        self.state = ClientState.READY
        logger.info("CLI server %s ready (shell %s, cwd %s)", self.name, self.shell, self.working_dir)

    async def close(self) -> None:
        if self.state is ClientState.CLOSED:
            raise TransportError(f"server '{self.name}': client already closed")
        if self.state is not ClientState.READY:
            raise TransportError(f"server '{self.name}': client was never initialized")
        self.state = ClientState.CLOSED
        self.executions = []
        logger.debug("CLI server %s closed", self.name)

    # ── Help discovery ─────────────────────────────────────────────────

    async def _load_help(self) -> str:
        commands = list(self.config.help_commands)
        if commands:
            content = await self._run_help(commands[0])
            if not content:
                logger.warning("CLI server %s: help command returned no content", self.name)
                return ""
            if len(commands) == 1:
                return await self._with_subcommand_help(content)
            sections = [content]
            for number, command in enumerate(commands[1:], 2):
                output = await self._run_help(command)
                if output:
                    sections.append(f"--- Help Command {number} ---\n{output}")
            return "\n\n".join(sections)

        if self.config.disable_help_auto_discovery:
            return ""
        patterns = HELP_PATTERNS + (("/?",) if sys.platform == "win32" else ())
        for pattern in patterns:
            content = await self._run_help(f"{self.config.command} {pattern}")
            if content:
                logger.debug("CLI server %s: help discovered with %r", self.name, pattern)
                return await self._with_subcommand_help(content)
        return ""

    async def _with_subcommand_help(self, content: str) -> str:
        sections = [content]
        for sub in parse_subcommands(content):
            output = await self._run_help(f"{self.config.command} {sub} --help")
            if output:
                sections.append(f"=== {sub} ===\n{output}")
        return "\n\n".join(sections)

    async def _run_help(self, command: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *shell_argv(self.shell, command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.working_dir,
            )
        except OSError as e:
            logger.warning("CLI server %s: help command %r failed: %s", self.name, command, e)
            return ""
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=HELP_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("CLI server %s: help command %r timed out", self.name, command)
            return ""
        if process.returncode != 0:
            logger.debug("CLI server %s: help command %r exited %s", self.name, command, process.returncode)
            return ""
        return stdout.decode("utf-8", errors="replace").strip()

    def _build_tool(self) -> ToolDescriptor:
        description = f"Execute {self.config.command} CLI command with arguments."
        if self.help_content:
            description += f"\n\nAvailable commands and options:\n{self.help_content}"
        return ToolDescriptor(
            name=self.tool_name,
            description=description,
            input_schema={
                "type": "object",
                "properties": {
                    "args": {"type": "string", "description": "Command-line arguments to pass to the CLI"},
                },
                "required": [],
            },
            server=self.name,
        )

    # ── Operations ─────────────────────────────────────────────────────

    def _require_ready(self) -> None:
        if self.state is not ClientState.READY:
            raise TransportError(f"server '{self.name}': client is not ready (state {self.state.value})")

    async def list_tools(self) -> List[ToolDescriptor]:
        self._require_ready()
        return list(self._tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        self._require_ready()
        if name != self.tool_name:
            raise TransportError(f"server '{self.name}': unknown tool '{name}'")
        args = arguments.get("args")
        execution = await self.execute("" if args is None else str(args))
        payload = {"exit_code": execution.exit_code, "stdout": execution.stdout, "stderr": execution.stderr}
        return ToolResult(
            content=[{"type": "text", "text": json.dumps(payload)}],
            is_error=execution.exit_code != 0,
        )

    async def execute(self, args: str) -> CLIExecution:
        """Run the command with *args* and record the execution."""
        full_cmd = f"{self.config.command} {args}" if args else self.config.command
        timestamp = datetime.now(timezone.utc).isoformat()
        started = time.perf_counter()
        logger.debug("CLI server %s running %r", self.name, full_cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *shell_argv(self.shell, full_cmd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
            )
        except OSError as e:
            exit_code, stdout, stderr = -1, "", str(e)
        else:
            try:
                out, err = await process.communicate()
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise
            exit_code = process.returncode
            stdout = out.decode("utf-8", errors="replace")
            stderr = err.decode("utf-8", errors="replace")

        execution = CLIExecution(
            command=self.config.command,
            args=args.split(),
            full_cmd=full_cmd,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=int((time.perf_counter() - started) * 1000),
            timestamp=timestamp,
            params=parse_args_to_params(args),
        )
        self.executions.append(execution)
        logger.debug("CLI server %s: exit code %d in %dms", self.name, exit_code, execution.duration_ms)
        return execution

    async def is_healthy(self) -> bool:
        return self.state is ClientState.READY

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.config.type,
            "state": self.state.value,
            "command": self.config.command,
            "shell": self.shell,
            "working_dir": self.working_dir,
        }
