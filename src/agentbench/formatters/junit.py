"""JUnit XML report formatter."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, List

from agentbench.models import BenchmarkRun, TestRun


def format_junit(run: BenchmarkRun) -> str:
    """Format a run as JUnit XML, one testsuite per session."""
    sessions: Dict[str, List[TestRun]] = {}
    for r in run.results:
        sessions.setdefault(r.execution.session_name, []).append(r)

    testsuites = ET.Element("testsuites", {
        "name": run.name,
        "tests": str(len(run.results)),
        "failures": str(sum(1 for r in run.results if not r.passed)),
    })
    for session_name, results in sessions.items():
        testsuite = ET.SubElement(testsuites, "testsuite", {
            "name": session_name,
            "tests": str(len(results)),
            "failures": str(sum(1 for r in results if not r.passed)),
        })
        for r in results:
            testcase = ET.SubElement(testsuite, "testcase", {
                "name": r.execution.test_name,
                "classname": session_name,
                "time": f"{r.execution.latency_ms / 1000:.3f}",
            })
            if not r.passed:
                reasons = [a.message for a in r.assertions if not a.passed] + r.execution.errors
                message = reasons[0] if reasons else "failed"
                failure = ET.SubElement(testcase, "failure", {"message": message})
                failure.text = "\n".join(reasons) or message

    ET.indent(testsuites)
    return ET.tostring(testsuites, encoding="unicode", xml_declaration=True)
