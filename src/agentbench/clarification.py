"""Detection of replies that ask the user for clarification instead of acting.

A judge model classifies each text-only reply. The judge is either the
agent's own model (``judge_provider: $self``) or another configured
provider.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SELF_JUDGE = "$self"
LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}
DEFAULT_LEVEL = "warning"
EXAMPLE_LIMIT = 200

JUDGE_PROMPT = (
    "You review replies written by an AI agent that was given a task and tools to complete it.\n"
    "Decide whether the reply asks the user for clarification, confirmation or permission "
    "instead of carrying out the task. A reply that reports results, explains a failure or "
    "finishes with an optional offer of further help does not count.\n"
    "Answer with exactly one word: YES or NO."
)


def new_stats() -> Dict[str, Any]:
    return {"count": 0, "iterations": [], "examples": []}


class ClarificationJudge:
    """Asks a judge model whether a reply is a clarification request."""

    def __init__(self, model: Any, level: str = DEFAULT_LEVEL) -> None:
        self.model = model
        self.level = level or DEFAULT_LEVEL

    async def is_clarification(self, text: str) -> bool:
        messages = [
            {"role": "system", "content": JUDGE_PROMPT},
            {"role": "user", "content": f"Agent reply:\n{text}"},
        ]
        try:
            response = await self.model.generate(messages, None)
        except Exception as e:
            logger.warning("Clarification judge failed, treating reply as an answer: %s", e)
            return False
        return (response.content or "").strip().upper().startswith("YES")

    async def check(
        self, text: str, iteration: int, stats: Dict[str, Any], errors: List[str], agent_name: str = "",
    ) -> bool:
        """Judge *text*; a detected request is added to *stats* and logged.

        At level ``error`` the request is also appended to *errors*.
        """
        if not text.strip() or not await self.is_clarification(text):
            return False
        example = text.strip()[:EXAMPLE_LIMIT]
        stats["count"] += 1
        stats["iterations"].append(iteration)
        stats["examples"].append(example)
        message = f"LLM asked for clarification instead of acting (iteration {iteration}): {example}"
        logger.log(LEVELS.get(self.level, logging.WARNING), "Agent %s: %s", agent_name, message)
        if self.level == "error":
            errors.append(message)
        return True


def resolve_judge(
    agent_name: str, detection: Any, agent_model: Any, providers: Dict[str, Any],
) -> Optional[ClarificationJudge]:
    """Pick the judge model for an agent, or None when detection is off.

    Raises:
        KeyError: If the named judge provider does not exist.
    """
    if detection is None or not detection.enabled:
        return None
    if detection.judge_provider == SELF_JUDGE:
        model = agent_model
    else:
        if detection.judge_provider not in providers:
            raise KeyError(detection.judge_provider)
        model = providers[detection.judge_provider]
    logger.debug("Agent %s: clarification judge is %s", agent_name, detection.judge_provider)
    return ClarificationJudge(model, detection.level)
