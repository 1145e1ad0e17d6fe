"""Reference text embedded in the test generation prompt."""

SESSION_SCHEMA = """
sessions:                        # required top-level key
  - name: "session-name"         # session identifier (string)
    tests:                       # list of tests, at least one
      - name: "test-name"        # test identifier (string)
        agent: "agent-name"      # must match a configured agent name
        prompt: "user prompt"    # message sent to the agent (string)
        assertions:              # list of assertions, see ASSERTION TYPES
          - type: tool_called
            tool: tool_name
"""

ASSERTION_TYPES_DOC = """
ASSERTION TYPES
===============

Tool assertions:
  tool_called                - the tool was called.             Required: tool
  tool_not_called            - the tool was never called.       Required: tool
  tool_call_count            - the tool was called N times.     Required: tool, count (int)
  tool_call_order            - tools were called in this order. Required: sequence (list)
  tool_param_equals          - a call used these parameters.    Required: tool, params (map)
  tool_param_matches_regex   - parameters match regexes.        Required: tool, params (map of regex)
  tool_result_matches_json   - JSONPath in the result equals value.
                               Required: tool, path, value

Output assertions:
  output_contains            - final output contains value.     Required: value
  output_not_contains        - final output lacks value.        Required: value
  output_regex               - final output matches pattern.    Required: pattern

Performance assertions:
  max_tokens                 - at most N tokens used.           Required: count (int)
  max_latency_ms             - at most N milliseconds.          Required: count (int)

Behavior assertions (no extra fields):
  no_error_messages, no_hallucinated_tools, no_clarification_questions, no_rate_limit_errors

CLI assertions (only for command-line tool servers):
  cli_exit_code_equals       - Required: expected (int)
  cli_stdout_contains        - Required: value
  cli_stdout_regex           - Required: pattern
  cli_stderr_contains        - Required: value

Combinators (nest other assertions):
  anyOf: [ ... ]             - passes if any child passes
  allOf: [ ... ]             - passes if every child passes
  not: { ... }               - passes if the child fails
"""

COMPLEXITY_GUIDE = {
    "simple": "One tool call per test. Direct prompts with an obvious expected outcome.",
    "medium": "One to three tool calls per test. Prompts may chain tools or reuse intermediate results.",
    "complex": "Several tool calls, conditional steps or multi-step workflows. Combinators are allowed.",
}
