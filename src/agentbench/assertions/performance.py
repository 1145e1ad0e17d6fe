"""Token and latency budget assertions."""

from __future__ import annotations

from typing import Optional

from agentbench.models import Assertion, AssertionResult


def _limit(a: Assertion) -> Optional[int]:
    if a.count is not None:
        return a.count
    try:
        return int(a.value)
    except (TypeError, ValueError):
        return None


def max_tokens(a: Assertion, ctx) -> AssertionResult:
    limit = _limit(a)
    if limit is None:
        return AssertionResult(type=a.type, passed=False, message=f"Invalid token limit: {a.value!r}")
    used = ctx.result.tokens_used
    return AssertionResult(
        type=a.type,
        passed=used <= limit,
        message=f"Used {used} tokens (limit {limit})",
        details={"tokens_used": used, "limit": limit},
    )


def max_latency_ms(a: Assertion, ctx) -> AssertionResult:
    limit = _limit(a)
    if limit is None:
        return AssertionResult(type=a.type, passed=False, message=f"Invalid latency limit: {a.value!r}")
    latency = ctx.result.latency_ms
    return AssertionResult(
        type=a.type,
        passed=latency <= limit,
        message=f"Latency {latency}ms (limit {limit}ms)",
        details={"latency_ms": latency, "limit": limit},
    )
