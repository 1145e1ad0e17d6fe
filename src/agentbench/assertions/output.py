"""Final-output assertions."""

from __future__ import annotations

import re

from agentbench.models import Assertion, AssertionResult


def output_contains(a: Assertion, ctx) -> AssertionResult:
    if a.value in ctx.result.final_output:
        return AssertionResult(type=a.type, passed=True, message=f"Output contains {a.value!r}")
    return AssertionResult(type=a.type, passed=False, message=f"Output does not contain {a.value!r}")


def output_not_contains(a: Assertion, ctx) -> AssertionResult:
    if a.value not in ctx.result.final_output:
        return AssertionResult(type=a.type, passed=True, message=f"Output does not contain {a.value!r}")
    return AssertionResult(type=a.type, passed=False, message=f"Output contains {a.value!r}")


def output_regex(a: Assertion, ctx) -> AssertionResult:
    try:
        matched = bool(re.search(a.pattern, ctx.result.final_output))
    except re.error as exc:
        return AssertionResult(type=a.type, passed=False, message=f"Invalid regex: {exc}")
    return AssertionResult(
        type=a.type,
        passed=matched,
        message="Pattern matched" if matched else f"Pattern {a.pattern!r} not found in output",
    )
