"""Assertion registry and evaluator for agentbench.

Each leaf kind maps to a check function ``(assertion, ctx) ->
AssertionResult``. Combinators (``allOf``, ``anyOf``, ``not``) are
evaluated here by recursive descent.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from agentbench.models import Assertion, AssertionResult, ExecutionResult, ToolDescriptor
from agentbench.templates import render, render_params

MAX_DEPTH = 10

Check = Callable[[Assertion, "AssertionContext"], AssertionResult]


@dataclass
class AssertionContext:
    """Everything a check may look at."""
    result: ExecutionResult
    variables: Mapping[str, Any] = field(default_factory=dict)
    tools: List[ToolDescriptor] = field(default_factory=list)


_CHECK_REGISTRY: Dict[str, Check] = {}


def _ensure_registry() -> None:
    if _CHECK_REGISTRY:
        return
    from agentbench.assertions import behavior, cli_output, output, performance, tool

    _CHECK_REGISTRY.update({
        "tool_called": tool.tool_called,
        "tool_not_called": tool.tool_not_called,
        "tool_call_count": tool.tool_call_count,
        "tool_call_order": tool.tool_call_order,
        "tool_param_equals": tool.tool_param_equals,
        "tool_param_matches_regex": tool.tool_param_matches_regex,
        "tool_result_matches_json": tool.tool_result_matches_json,
        "output_contains": output.output_contains,
        "output_not_contains": output.output_not_contains,
        "output_regex": output.output_regex,
        "max_tokens": performance.max_tokens,
        "max_latency_ms": performance.max_latency_ms,
        "no_error_messages": behavior.no_error_messages,
        "no_hallucinated_tools": behavior.no_hallucinated_tools,
        "no_clarification_questions": behavior.no_clarification_questions,
        "no_rate_limit_errors": behavior.no_rate_limit_errors,
        "cli_exit_code_equals": cli_output.cli_exit_code_equals,
        "cli_stdout_contains": cli_output.cli_stdout_contains,
        "cli_stdout_regex": cli_output.cli_stdout_regex,
        "cli_stderr_contains": cli_output.cli_stderr_contains,
    })


def get_check(kind: str) -> Check:
    """Get the check function for a leaf assertion kind."""
    _ensure_registry()
    if kind not in _CHECK_REGISTRY:
        raise ValueError(f"Unknown assertion type: {kind!r}. Available: {sorted(_CHECK_REGISTRY)}")
    return _CHECK_REGISTRY[kind]


def evaluate_assertions(
    result: ExecutionResult,
    assertions: List[Assertion],
    variables: Optional[Mapping[str, Any]] = None,
    tools: Optional[List[ToolDescriptor]] = None,
) -> List[AssertionResult]:
    """Evaluate top-level assertions against one execution result."""
    ctx = AssertionContext(result=result, variables=variables or {}, tools=tools or [])
    return [evaluate(a, ctx) for a in assertions]


def evaluate(assertion: Assertion, ctx: AssertionContext, depth: int = 0) -> AssertionResult:
    """Evaluate a single node, recursing into combinators."""
    if depth > MAX_DEPTH:
        return AssertionResult(
            type=assertion.type, passed=False,
            message=f"Maximum assertion nesting depth ({MAX_DEPTH}) exceeded",
            details={"depth_exceeded": True},
        )

    if assertion.type in ("allOf", "anyOf"):
        return _evaluate_group(assertion, ctx, depth)
    if assertion.type == "not":
        return _evaluate_not(assertion, ctx, depth)

    try:
        check = get_check(assertion.type)
    except ValueError as e:
        return AssertionResult(type=assertion.type, passed=False, message=str(e))

    rendered = dataclasses.replace(
        assertion,
        value=render(assertion.value, ctx.variables),
        params=render_params(assertion.params, ctx.variables),
    )
    return check(rendered, ctx)


def _evaluate_group(assertion: Assertion, ctx: AssertionContext, depth: int) -> AssertionResult:
    kind = assertion.type
    if not assertion.children:
        return AssertionResult(type=kind, passed=False, message=f"{kind} has no child assertions")

    children = [evaluate(child, ctx, depth + 1) for child in assertion.children]
    for child in children:
        if child.details.get("depth_exceeded"):
            return AssertionResult(type=kind, passed=False, message=child.message, details=child.details)
    passed_count = sum(1 for c in children if c.passed)
    details = {"children": [dataclasses.asdict(c) for c in children]}

    if kind == "allOf":
        passed = passed_count == len(children)
        if passed:
            message = f"All {len(children)} assertions passed"
        else:
            failed = [c.message for c in children if not c.passed]
            message = f"{len(children) - passed_count} of {len(children)} assertions failed: {failed}"
    else:
        passed = passed_count > 0
        if passed:
            message = f"{passed_count} of {len(children)} assertions passed"
        else:
            message = f"None of {len(children)} assertions passed"
    return AssertionResult(type=kind, passed=passed, message=message, details=details)


def _evaluate_not(assertion: Assertion, ctx: AssertionContext, depth: int) -> AssertionResult:
    if assertion.child is None:
        return AssertionResult(type="not", passed=False, message="not has no child assertion")
    child = evaluate(assertion.child, ctx, depth + 1)
    if child.details.get("depth_exceeded"):
        return AssertionResult(type="not", passed=False, message=child.message, details=child.details)
    if child.passed:
        message = f"Negated assertion passed: {child.message}"
    else:
        message = f"Negated assertion failed as expected: {child.message}"
    return AssertionResult(
        type="not", passed=not child.passed, message=message,
        details={"child": dataclasses.asdict(child)},
    )
