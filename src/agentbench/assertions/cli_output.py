"""Assertions over command-line tool results.

A CLI tool returns JSON text ``{"exit_code": 0, "stdout": "...",
"stderr": "..."}`` as its first content item.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional, Tuple

from agentbench.models import Assertion, AssertionResult

DEFAULT_CLI_TOOL = "cli_execute"


def find_cli_result(ctx, tool: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """First call named *tool* (or ``*_execute``) with a parseable CLI result."""
    name = tool or DEFAULT_CLI_TOOL
    for call in ctx.result.tool_calls:
        if call.name != name and not call.name.endswith("_execute"):
            continue
        text = call.result.first_text()
        if text is None:
            continue
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data, ""
    return None, f"No CLI tool call found matching '{name}'"


def cli_exit_code_equals(a: Assertion, ctx) -> AssertionResult:
    expected = a.expected
    if expected is None:
        try:
            expected = int(a.value)
        except ValueError:
            return AssertionResult(type=a.type, passed=False, message=f"Invalid exit code: {a.value!r}")
    data, error = find_cli_result(ctx, a.tool)
    if data is None:
        return AssertionResult(type=a.type, passed=False, message=error)
    actual = int(data.get("exit_code", 0))
    return AssertionResult(
        type=a.type,
        passed=actual == expected,
        message=f"Exit code {actual}, expected {expected}",
        details={"expected": expected, "actual": actual, "stderr": data.get("stderr", "")},
    )


def _stream_contains(a: Assertion, ctx, stream: str) -> AssertionResult:
    data, error = find_cli_result(ctx, a.tool)
    if data is None:
        return AssertionResult(type=a.type, passed=False, message=error)
    text = str(data.get(stream, ""))
    if a.value in text:
        return AssertionResult(type=a.type, passed=True, message=f"{stream} contains {a.value!r}")
    return AssertionResult(
        type=a.type, passed=False, message=f"{stream} does not contain {a.value!r}",
        details={stream: text},
    )


def cli_stdout_contains(a: Assertion, ctx) -> AssertionResult:
    return _stream_contains(a, ctx, "stdout")


def cli_stderr_contains(a: Assertion, ctx) -> AssertionResult:
    return _stream_contains(a, ctx, "stderr")


def cli_stdout_regex(a: Assertion, ctx) -> AssertionResult:
    data, error = find_cli_result(ctx, a.tool)
    if data is None:
        return AssertionResult(type=a.type, passed=False, message=error)
    try:
        matched = bool(re.search(a.pattern, str(data.get("stdout", ""))))
    except re.error as exc:
        return AssertionResult(type=a.type, passed=False, message=f"Invalid regex: {exc}")
    return AssertionResult(
        type=a.type,
        passed=matched,
        message="stdout matches pattern" if matched else f"stdout does not match {a.pattern!r}",
    )
