"""Tool-call assertions."""

from __future__ import annotations

import json
import re
from typing import Any, List, Mapping, Tuple

from jsonpath_ng import parse as parse_jsonpath
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from agentbench.models import Assertion, AssertionResult, ToolCall


def normalize(value: Any) -> str:
    """Text form used for equality: ``2.0`` -> ``"2"``, lists -> ``"[a, b]"``."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(normalize(v) for v in value) + "]"
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def get_nested_value(data: Mapping[str, Any], path: str) -> Tuple[Any, bool]:
    """Look up ``"a.b.c"`` in nested mappings; returns ``(value, found)``."""
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return None, False
        current = current[key]
    return current, True


def _calls(ctx, name: str) -> List[ToolCall]:
    return [c for c in ctx.result.tool_calls if c.name == name]


def tool_called(a: Assertion, ctx) -> AssertionResult:
    if _calls(ctx, a.tool):
        return AssertionResult(type=a.type, passed=True, message=f"Tool '{a.tool}' was called")
    return AssertionResult(type=a.type, passed=False, message=f"Tool '{a.tool}' was not called")


def tool_not_called(a: Assertion, ctx) -> AssertionResult:
    count = len(_calls(ctx, a.tool))
    if count == 0:
        return AssertionResult(type=a.type, passed=True, message=f"Tool '{a.tool}' was not called")
    return AssertionResult(
        type=a.type, passed=False, message=f"Tool '{a.tool}' was called {count} time(s)",
    )


def tool_call_count(a: Assertion, ctx) -> AssertionResult:
    expected = a.count or 0
    if a.tool:
        actual = len(_calls(ctx, a.tool))
        label = f"Tool '{a.tool}'"
    else:
        actual = len(ctx.result.tool_calls)
        label = "Tools"
    return AssertionResult(
        type=a.type,
        passed=actual == expected,
        message=f"{label} called {actual} time(s), expected {expected}",
        details={"expected": expected, "actual": actual},
    )


def tool_call_order(a: Assertion, ctx) -> AssertionResult:
    actual = [c.name for c in ctx.result.tool_calls]
    idx = 0
    for name in actual:
        if idx < len(a.sequence) and name == a.sequence[idx]:
            idx += 1
    passed = idx == len(a.sequence)
    if passed:
        message = f"Tools called in expected order: {a.sequence}"
    else:
        message = f"Expected order {a.sequence}, got {actual}"
    return AssertionResult(
        type=a.type, passed=passed, message=message,
        details={"expected": a.sequence, "actual": actual},
    )


def tool_param_equals(a: Assertion, ctx) -> AssertionResult:
    calls = _calls(ctx, a.tool)
    if not calls:
        return AssertionResult(type=a.type, passed=False, message=f"Tool '{a.tool}' was not called")

    mismatches: List[str] = []
    for call in calls:
        call_mismatches = []
        for key, expected in a.params.items():
            actual, found = get_nested_value(call.parameters, key)
            if not found:
                call_mismatches.append(f"missing param '{key}'")
            elif normalize(actual) != normalize(expected):
                call_mismatches.append(f"param '{key}': expected {expected!r}, got {actual!r}")
        if not call_mismatches:
            return AssertionResult(
                type=a.type, passed=True, message=f"Tool '{a.tool}' called with correct parameters",
            )
        mismatches.extend(call_mismatches)
    return AssertionResult(
        type=a.type, passed=False,
        message=f"Tool '{a.tool}' called with incorrect parameters: {mismatches}",
    )


def tool_param_matches_regex(a: Assertion, ctx) -> AssertionResult:
    calls = _calls(ctx, a.tool)
    if not calls:
        return AssertionResult(type=a.type, passed=False, message=f"Tool '{a.tool}' was not called")

    patterns = {}
    for key, pattern in a.params.items():
        try:
            patterns[key] = re.compile(str(pattern))
        except re.error as exc:
            return AssertionResult(
                type=a.type, passed=False, message=f"Invalid regex for param '{key}': {exc}",
            )

    mismatches: List[str] = []
    for call in calls:
        call_mismatches = []
        for key, regex in patterns.items():
            actual, found = get_nested_value(call.parameters, key)
            if not found:
                call_mismatches.append(f"missing param '{key}'")
            elif not regex.search(normalize(actual)):
                call_mismatches.append(f"param '{key}': {actual!r} does not match {regex.pattern!r}")
        if not call_mismatches:
            return AssertionResult(
                type=a.type, passed=True, message=f"Tool '{a.tool}' parameters match patterns",
            )
        mismatches.extend(call_mismatches)
    return AssertionResult(
        type=a.type, passed=False,
        message=f"Tool '{a.tool}' parameters did not match: {mismatches}",
    )


def tool_result_matches_json(a: Assertion, ctx) -> AssertionResult:
    calls = _calls(ctx, a.tool)
    if not calls:
        return AssertionResult(type=a.type, passed=False, message=f"Tool '{a.tool}' was not called")

    try:
        expr = parse_jsonpath(a.path)
    except (JsonPathLexerError, JsonPathParserError) as exc:
        return AssertionResult(type=a.type, passed=False, message=f"Invalid JSONPath '{a.path}': {exc}")

    mismatches: List[str] = []
    for call in calls:
        text = call.result.first_text()
        if text is None:
            mismatches.append("tool result has no text content")
            continue
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            mismatches.append(f"Failed to parse JSON: {exc}")
            continue
        values = [m.value for m in expr.find(data)]
        if not values:
            mismatches.append(f"No match for JSONPath '{a.path}'")
            continue
        if a.value in {normalize(v) for v in values} or normalize(values) == a.value:
            return AssertionResult(
                type=a.type, passed=True, message=f"Tool '{a.tool}' result matches '{a.path}'",
            )
        mismatches.append(f"'{a.path}' is {normalize(values[0])!r}, expected {a.value!r}")
    return AssertionResult(
        type=a.type, passed=False,
        message=f"Tool '{a.tool}' result did not match any call: {mismatches}",
    )
