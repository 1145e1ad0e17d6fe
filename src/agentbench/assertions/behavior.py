"""Behavioral assertions over the whole execution."""

from __future__ import annotations

import dataclasses
import logging

from agentbench.models import Assertion, AssertionResult

logger = logging.getLogger(__name__)


def no_error_messages(a: Assertion, ctx) -> AssertionResult:
    errors = ctx.result.errors
    if not errors:
        return AssertionResult(type=a.type, passed=True, message="No errors during execution")
    return AssertionResult(
        type=a.type, passed=False,
        message=f"{len(errors)} error(s) during execution: {errors}",
        details={"errors": list(errors)},
    )


def no_hallucinated_tools(a: Assertion, ctx) -> AssertionResult:
    known = {t.name for t in ctx.tools}
    unknown = sorted({c.name for c in ctx.result.tool_calls if c.name not in known})
    if not unknown:
        return AssertionResult(type=a.type, passed=True, message="All called tools exist")
    return AssertionResult(
        type=a.type, passed=False,
        message=f"Agent called unknown tools: {unknown}",
        details={"unknown_tools": unknown},
    )


def no_clarification_questions(a: Assertion, ctx) -> AssertionResult:
    stats = ctx.result.clarification_stats
    if stats is None:
        logger.warning("no_clarification_questions: clarification detection is not enabled, skipping")
        return AssertionResult(
            type=a.type, passed=True,
            message="Warning: clarification detection not enabled - assertion skipped",
            details={"warning": "clarification detection not enabled"},
        )
    count = int(stats.get("count", 0))
    if count > 0:
        return AssertionResult(
            type=a.type, passed=False,
            message=f"Agent asked for clarification {count} time(s)", details=dict(stats),
        )
    return AssertionResult(type=a.type, passed=True, message="No clarification questions detected")


def no_rate_limit_errors(a: Assertion, ctx) -> AssertionResult:
    stats = ctx.result.rate_limit_stats
    if stats is not None and stats.rate_limit_hits > 0:
        return AssertionResult(
            type=a.type, passed=False,
            message=f"Received {stats.rate_limit_hits} rate limit error(s) (HTTP 429)",
            details=dataclasses.asdict(stats),
        )
    return AssertionResult(type=a.type, passed=True, message="No rate limit errors (HTTP 429)")
