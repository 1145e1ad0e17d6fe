"""Validation and assembly of generated test plans."""

from __future__ import annotations

from typing import Any, List

import yaml

from agentbench.loader import ASSERTION_FIELDS, COMBINATORS, VALID_ASSERTION_TYPES


def validate_sessions(text: str, agent_names: List[str]) -> List[str]:
    """Check a generated ``sessions`` document; returns every violation found."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        return [f"YAML parse error: {e}"]

    sessions: Any = data.get("sessions") if isinstance(data, dict) else None
    if not isinstance(sessions, list) or not sessions:
        return ["no sessions found in generated output"]

    known = set(agent_names)
    errors: List[str] = []
    for si, session in enumerate(sessions):
        if not isinstance(session, dict):
            errors.append(f"session[{si}]: must be a mapping")
            continue
        session_label = f'session[{si}]("{session.get("name") or ""}")'
        if not session.get("name"):
            errors.append(f"{session_label}: missing name")
        tests = session.get("tests")
        if not isinstance(tests, list) or not tests:
            errors.append(f"{session_label}: has no tests")
            continue

        for ti, test in enumerate(tests):
            if not isinstance(test, dict):
                errors.append(f"{session_label}/test[{ti}]: must be a mapping")
                continue
            test_label = f'{session_label}/test[{ti}]("{test.get("name") or ""}")'
            if not test.get("name"):
                errors.append(f"{test_label}: missing name")
            if not test.get("prompt"):
                errors.append(f"{test_label}: missing prompt")
            agent = test.get("agent")
            if not agent:
                errors.append(f"{test_label}: missing agent field")
            elif agent not in known:
                errors.append(
                    f'{test_label}: unknown agent "{agent}" (valid: {", ".join(agent_names)})'
                )

            for ai, assertion in enumerate(test.get("assertions") or []):
                _check_assertion(assertion, f"{test_label}/assertion[{ai}]", errors)
    return errors


def _check_assertion(assertion: Any, label: str, errors: List[str]) -> None:
    """Collect problems in one assertion node and its combinator children."""
    if not isinstance(assertion, dict):
        errors.append(f"{label}: must be a mapping")
        return
    kind = assertion.get("type")
    if not kind:
        present = [c for c in COMBINATORS if c in assertion]
        if len(present) != 1:
            errors.append(f"{label}: missing type")
            return
        kind = present[0]
    if kind not in VALID_ASSERTION_TYPES:
        errors.append(f'{label}: unknown assertion type "{kind}"')
        return

    if kind in ("anyOf", "allOf"):
        children = assertion.get(kind)
        if not isinstance(children, list) or not children:
            errors.append(f"{label}: {kind} must be a non-empty list")
            return
        for ci, child in enumerate(children):
            _check_assertion(child, f"{label}/{kind}[{ci}]", errors)
    elif kind == "not":
        if "not" not in assertion:
            errors.append(f"{label}: not requires a nested assertion")
        else:
            _check_assertion(assertion["not"], f"{label}/not", errors)
    else:
        for req in ASSERTION_FIELDS[kind]:
            options = req if isinstance(req, tuple) else (req,)
            if not any(assertion.get(opt) not in (None, "", [], {}) for opt in options):
                errors.append(f'{label}: {kind} missing field "{" or ".join(options)}"')


def combine_output(config_text: str, sessions_yaml: str) -> str:
    """Append generated sessions to the source configuration.

    The ``generator`` section is removed so generation settings never end
    up in the emitted test file.
    """
    data = yaml.safe_load(config_text) or {}
    if not isinstance(data, dict):
        raise ValueError("configuration must be a YAML mapping")
    data.pop("generator", None)
    data.pop("sessions", None)
    infra = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    sessions_yaml = sessions_yaml.strip()
    if not sessions_yaml.startswith("sessions:"):
        sessions_yaml = "sessions:\n" + sessions_yaml
    return infra.strip() + "\n\n" + sessions_yaml + "\n"
