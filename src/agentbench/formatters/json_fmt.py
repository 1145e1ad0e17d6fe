"""JSON report formatter."""

from __future__ import annotations

import dataclasses
import json

from agentbench.models import BenchmarkRun


def format_json(run: BenchmarkRun) -> str:
    """Format a run as a JSON string."""
    results = []
    for r in run.results:
        ex = r.execution
        results.append({
            "test_name": ex.test_name,
            "session_name": ex.session_name,
            "agent_name": ex.agent_name,
            "provider_type": ex.provider_type,
            "source_file": ex.source_file,
            "suite_name": ex.suite_name,
            "passed": r.passed,
            "start_time": ex.start_time,
            "end_time": ex.end_time,
            "latency_ms": ex.latency_ms,
            "tokens_used": ex.tokens_used,
            "final_output": ex.final_output,
            "errors": ex.errors,
            "tool_calls": [dataclasses.asdict(c) for c in ex.tool_calls],
            "assertions": [dataclasses.asdict(a) for a in r.assertions],
            "rate_limit_stats": dataclasses.asdict(ex.rate_limit_stats) if ex.rate_limit_stats else None,
        })

    output = {
        "id": run.id,
        "name": run.name,
        "created_at": run.created_at,
        "success": run.success,
        "summary": run.summary,
        "results": results,
    }
    return json.dumps(output, indent=2, default=str)
