"""LLM-based test plan generation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agentbench.generators.schema import ASSERTION_TYPES_DOC, COMPLEXITY_GUIDE, SESSION_SCHEMA
from agentbench.generators.validator import validate_sessions
from agentbench.models import ToolDescriptor

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

SYSTEM_PROMPT = (
    "You write test plans for agentbench, a harness that benchmarks tool-using AI agents.\n\n"
    "Produce one complete YAML \"sessions\" block that can be used as a test file as-is.\n\n"
    "OUTPUT RULES:\n"
    "1. Output only YAML. No markdown, no code fences, no commentary.\n"
    "2. The first line must be: sessions:\n"
    "3. Every test needs name, agent, prompt and at least one assertion.\n"
    "4. The agent field must be exactly one of the configured agent names.\n"
    "5. Write specific, realistic prompts a real user would send.\n"
    "6. Combine tool assertions with output assertions in each test.\n"
    "7. Use tool_called whenever the task clearly needs a particular tool.\n"
    "8. Use anyOf, allOf or not only when complexity is \"complex\".\n"
    "9. Use cli_* assertions only for command-line tool servers.\n"
    + SESSION_SCHEMA
    + ASSERTION_TYPES_DOC
)


class GenerationError(Exception):
    """Raised when no attempt produced a valid test plan."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class GeneratorSettings:
    provider: str = ""
    test_count: int = 5
    complexity: str = "medium"
    include_edge_cases: bool = False
    max_steps_per_test: int = 5
    tools: List[str] = field(default_factory=list)


def extract_yaml_from_response(content: str) -> str:
    """Strip a surrounding ```yaml / ```yml / ``` fence and whitespace."""
    content = content.strip()
    for fence in ("```yaml", "```yml", "```"):
        if content.startswith(fence):
            content = content[len(fence):]
            end = content.rfind("```")
            if end >= 0:
                content = content[:end]
            break
    return content.strip()


class TestPlanGenerator:
    """Ask a model for test sessions, validating and retrying with feedback."""

    __test__ = False

    def __init__(
        self,
        model: Any,
        settings: GeneratorSettings,
        agent_names: List[str],
        tools_by_agent: Dict[str, List[ToolDescriptor]],
        seed: Optional[int] = None,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.model = model
        self.settings = settings
        self.agent_names = agent_names
        self.tools_by_agent = tools_by_agent
        self.seed = seed
        self.max_attempts = max_attempts

    def build_prompt(self, attempt: int = 1, prev_errors: Optional[List[str]] = None) -> str:
        """Build the per-attempt user message."""
        s = self.settings
        lines = ["AGENT TOOLS", "==========="]
        for agent in self.agent_names:
            tools = self.tools_by_agent.get(agent) or []
            if not tools:
                lines.append(f'\nAgent: "{agent}" (no tools available)')
                continue
            lines.append(f'\nAgent: "{agent}"')
            for tool in tools:
                lines.append(f"  Tool: {tool.name}")
                if tool.description:
                    lines.append(f"    Description: {tool.description}")
                if tool.parameters:
                    lines.append(f"    Parameters: {json.dumps(tool.parameters, sort_keys=True)}")
                if tool.required:
                    lines.append(f"    Required: {', '.join(tool.required)}")

        lines += ["", "GENERATION CONSTRAINTS", "======================"]
        lines.append(f"test_count: {s.test_count}")
        lines.append(f"complexity: {s.complexity}")
        if s.include_edge_cases:
            lines.append("include_edge_cases: true - cover error cases, boundary values and unexpected input")
        lines.append(
            f"max_steps_per_test: {s.max_steps_per_test} - each prompt must be solvable "
            f"in at most {s.max_steps_per_test} tool calls"
        )
        guide = COMPLEXITY_GUIDE.get(s.complexity)
        if guide:
            lines.append(f"complexity guide: {guide}")

        if self.seed is not None:
            lines.append(f"\nUse this seed for any random choices: {self.seed}")

        if attempt > 1 and prev_errors:
            lines.append(f"\nPREVIOUS ATTEMPT {attempt - 1} FAILED WITH ERRORS")
            lines.append("Fix all of the following issues in your new output:")
            lines.extend(f"  - {e}" for e in prev_errors)

        lines.append("\nNow generate the sessions YAML block:")
        return "\n".join(lines) + "\n"

    def build_messages(self, attempt: int = 1, prev_errors: Optional[List[str]] = None) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self.build_prompt(attempt, prev_errors)},
        ]

    async def generate(self) -> str:
        """Return a validated sessions YAML block.

        Raises:
            GenerationError: After ``max_attempts`` failed attempts, carrying
                the last attempt's errors.
        """
        prev_errors: List[str] = []
        for attempt in range(1, self.max_attempts + 1):
            logger.info("Generating tests (attempt %d/%d)", attempt, self.max_attempts)
            try:
                response = await self.model.generate(self.build_messages(attempt, prev_errors))
            except Exception as e:
                logger.warning("Attempt %d: model call failed: %s", attempt, e)
                prev_errors = [f"LLM call failed: {e}"]
                continue

            content = getattr(response, "content", response) or ""
            if not content.strip():
                logger.warning("Attempt %d: empty response", attempt)
                prev_errors = ["LLM returned empty response"]
                continue

            sessions_yaml = extract_yaml_from_response(content)
            errors = validate_sessions(sessions_yaml, self.agent_names)
            if not errors:
                logger.info("Attempt %d produced a valid test plan", attempt)
                return sessions_yaml
            logger.warning("Attempt %d: %d validation error(s)", attempt, len(errors))
            for e in errors:
                logger.debug("  %s", e)
            prev_errors = errors

        raise GenerationError(
            f"all {self.max_attempts} generation attempts failed; last errors: {prev_errors}",
            prev_errors,
        )
