"""Result extractors: copy values out of tool results into template variables."""

from __future__ import annotations

import json
import logging
from typing import Dict, List

from jsonpath_ng import parse as parse_jsonpath
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from agentbench.assertions.tool import normalize
from agentbench.models import ExecutionResult, Extractor

logger = logging.getLogger(__name__)


def run_extractors(extractors: List[Extractor], result: ExecutionResult) -> Dict[str, str]:
    """Apply each extractor to the last call of its tool.

    Extractors that find nothing are logged and skipped.
    """
    values: Dict[str, str] = {}
    for ex in extractors:
        calls = [c for c in result.tool_calls if c.name == ex.tool]
        if not calls:
            logger.warning("Extractor %s: tool %r was not called", ex.variable_name, ex.tool)
            continue
        text = calls[-1].result.first_text()
        if text is None:
            logger.warning("Extractor %s: tool %r returned no text", ex.variable_name, ex.tool)
            continue
        try:
            data = json.loads(text)
            matches = parse_jsonpath(ex.path).find(data)
        except (json.JSONDecodeError, JsonPathLexerError, JsonPathParserError) as e:
            logger.warning("Extractor %s failed: %s", ex.variable_name, e)
            continue
        if not matches:
            logger.warning("Extractor %s: no match for %s", ex.variable_name, ex.path)
            continue
        values[ex.variable_name] = normalize(matches[0].value)
        logger.debug("Extracted %s=%r", ex.variable_name, values[ex.variable_name])
    return values
