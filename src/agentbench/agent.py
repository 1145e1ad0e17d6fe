"""Agent binding: a model handle plus the tools of its servers."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from agentbench.clarification import ClarificationJudge, new_stats
from agentbench.models import AgentConfig, ExecutionResult, ToolCall, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10


@dataclass
class InvokeConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout: Optional[float] = None
    retain_intermediate_responses: bool = False
    verbose: bool = False


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def filter_tools(tools: List[ToolDescriptor], allowed: Optional[List[str]]) -> List[ToolDescriptor]:
    """Narrow *tools* to the names in *allowed*, keeping the original order.

    An empty or missing allow-list keeps every tool.
    """
    if not allowed:
        return list(tools)
    names = set(allowed)
    return [t for t in tools if t.name in names]


def to_openai_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema or {"type": "object", "properties": {}},
        },
    }


def _error_result(message: str) -> ToolResult:
    return ToolResult(content=[{"type": "text", "text": f"Error: {message}"}], is_error=True)


class AgentBinding:
    """Runs tool-use turns for one configured agent.

    ``servers`` maps server names to connected transport clients. Call
    :meth:`load_tools` once before :meth:`invoke`.
    """

    def __init__(self, config: AgentConfig, model: Any, servers: Mapping[str, Any]) -> None:
        self.config = config
        self.model = model
        self.servers = servers
        self.tools: List[ToolDescriptor] = []
        self.tool_to_server: Dict[str, str] = {}
        self.last_result: Optional[ExecutionResult] = None
        self.clarification_judge: Optional[ClarificationJudge] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def provider_type(self) -> str:
        return str(getattr(self.model, "provider_type", ""))

    async def load_tools(self) -> List[ToolDescriptor]:
        """List tools from every server, applying per-server allow-lists."""
        tools: List[ToolDescriptor] = []
        tool_to_server: Dict[str, str] = {}
        for ref in self.config.servers:
            listed = await self.servers[ref.name].list_tools()
            if ref.allowed_tools:
                listed_names = {t.name for t in listed}
                for missing in sorted(set(ref.allowed_tools) - listed_names):
                    logger.warning(
                        "Agent %s: allowed tool %r not provided by server %s",
                        self.name, missing, ref.name,
                    )
            for tool in filter_tools(listed, ref.allowed_tools):
                if tool.name in tool_to_server:
                    logger.warning(
                        "Agent %s: tool %r from server %s shadowed by server %s",
                        self.name, tool.name, ref.name, tool_to_server[tool.name],
                    )
                    continue
                tool_to_server[tool.name] = ref.name
                tools.append(tool)
        self.tools = tools
        self.tool_to_server = tool_to_server
        return tools

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        config: InvokeConfig,
        tools: Optional[List[ToolDescriptor]] = None,
    ) -> ExecutionResult:
        """Run the model/tool loop until a final answer or the iteration cap.

        *messages* is extended in place with the assistant and tool turns.
        Failures are recorded in the result's ``errors`` instead of being
        raised.
        """
        tools = self.tools if tools is None else tools
        specs = [to_openai_tool(t) for t in tools]
        available = {t.name for t in tools}
        if hasattr(self.model, "reset_stats"):
            self.model.reset_stats()

        start_time = _now()
        started = time.perf_counter()
        calls: List[ToolCall] = []
        errors: List[str] = []
        outputs: List[str] = []
        last_content = ""
        tokens = 0
        clarifications = new_stats() if self.clarification_judge is not None else None
        self.last_result = None

        def build() -> ExecutionResult:
            final_output = "\n".join(outputs) if config.retain_intermediate_responses else last_content
            stats = getattr(self.model, "stats", None)
            return ExecutionResult(
                agent_name=self.name,
                provider_type=self.provider_type,
                start_time=start_time,
                end_time=_now(),
                messages=list(messages),
                tool_calls=list(calls),
                final_output=final_output,
                tokens_used=tokens or len(final_output) // 4,
                latency_ms=int((time.perf_counter() - started) * 1000),
                errors=list(errors),
                rate_limit_stats=copy.copy(stats) if stats is not None else None,
                clarification_stats=copy.deepcopy(clarifications),
            )

        try:
            for iteration in range(1, config.max_iterations + 1):
                try:
                    response = await self.model.generate(messages, specs or None)
                except Exception as e:
                    errors.append(f"LLM error: {e}")
                    break

                tokens += response.tokens
                if response.content:
                    last_content = response.content
                    outputs.append(response.content)
                messages.append(_assistant_message(response))
                if config.verbose:
                    logger.debug("Agent %s iteration %d: %d tool call(s)",
                                 self.name, iteration, len(response.tool_calls))

                if not response.tool_calls:
                    if clarifications is not None and response.content:
                        await self.clarification_judge.check(
                            response.content, iteration, clarifications, errors, self.name,
                        )
                    break

                count = len(response.tool_calls)
                if config.retain_intermediate_responses:
                    outputs.append(f"[Iteration {iteration}: {count} tool(s) to execute]")
                for idx, call in enumerate(response.tool_calls, 1):
                    if config.retain_intermediate_responses:
                        outputs.append(f"[tool_usage {idx}/{count}] {call.name}")
                    record = await self._execute_tool(call, available, config.tool_timeout, errors)
                    calls.append(record)
                    text = record.result.text()
                    if config.retain_intermediate_responses:
                        outputs.append(f"[tool_response] {text}")
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": text})
            else:
                errors.append(f"Reached maximum iterations ({config.max_iterations}) without a final answer")
        except asyncio.CancelledError:
            errors.append("Execution cancelled")
            self.last_result = build()
            raise

        self.last_result = build()
        return self.last_result

    async def _execute_tool(self, call: Any, available: set, timeout: Optional[float], errors: List[str]) -> ToolCall:
        timestamp = _now()
        started = time.perf_counter()
        server_name = self.tool_to_server.get(call.name)

        if call.name not in available or server_name is None:
            message = f"tool '{call.name}' is not available to agent '{self.name}'"
            errors.append(message)
            result = _error_result(message)
        else:
            client = self.servers[server_name]
            try:
                if timeout:
                    result = await asyncio.wait_for(client.call_tool(call.name, call.arguments), timeout)
                else:
                    result = await client.call_tool(call.name, call.arguments)
            except asyncio.TimeoutError:
                message = f"tool '{call.name}' timed out after {timeout:g}s"
                errors.append(message)
                result = _error_result(message)
            except Exception as e:
                message = f"tool '{call.name}' failed: {e}"
                errors.append(message)
                result = _error_result(message)

        return ToolCall(
            name=call.name,
            parameters=dict(call.arguments),
            timestamp=timestamp,
            duration_ms=int((time.perf_counter() - started) * 1000),
            result=result,
        )


def _assistant_message(response: Any) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": response.content or ""}
    if response.tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in response.tool_calls
        ]
    return message
