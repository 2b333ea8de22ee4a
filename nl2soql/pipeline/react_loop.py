"""
Bounded tool-calling loop: Reason -> Act -> Observe, at most ``max_iterations`` times.

Tool parameter schemas are declared explicitly when a tool is registered and
rendered into OpenAI function definitions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .openai_client import ChatProvider, ChatResponse, ToolCall, tool_result_message

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5
PARAM_TYPES = ("string", "number", "integer", "boolean", "array")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolParam:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    enum: Optional[Sequence[str]] = None
    items: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in PARAM_TYPES:
            raise ValueError(f"unsupported tool parameter type {self.type!r} for {self.name}")
        if self.type == "array" and not self.items:
            raise ValueError(f"array parameter {self.name} needs an item type")

    def to_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.items:
            schema["items"] = {"type": self.items}
        return schema


@dataclass
class ToolSpec:
    name: str
    description: str
    handler: ToolHandler
    params: List[ToolParam] = field(default_factory=list)

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.to_schema() for p in self.params},
                    "required": [p.name for p in self.params if p.required],
                },
            },
        }

    def missing_arguments(self, arguments: Dict[str, Any]) -> List[str]:
        return [p.name for p in self.params if p.required and p.name not in arguments]


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> ToolSpec:
        if spec.name in self._tools:
            raise ValueError(f"tool {spec.name} already registered")
        self._tools[spec.name] = spec
        return spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        return [spec.to_openai_tool() for spec in self._tools.values()]

    async def call(self, call: ToolCall) -> Dict[str, Any]:
        """Run one tool call; failures become error payloads for the model to observe."""
        spec = self._tools.get(call.name)
        if spec is None:
            return {"success": False, "error": f"Tool {call.name} not found"}
        missing = spec.missing_arguments(call.arguments)
        if missing:
            return {"success": False, "error": f"Missing required arguments: {', '.join(missing)}"}
        try:
            result = await spec.handler(call.arguments)
        except Exception as exc:
            logger.warning("tool %s failed: %s", call.name, exc)
            return {"success": False, "error": f"Error executing tool {call.name}: {exc}"}
        return {"success": True, "result": result}


@dataclass
class LoopResult:
    content: str
    messages: List[Dict[str, Any]]
    iterations: int
    tool_calls: List[ToolCall] = field(default_factory=list)
    exhausted: bool = False


def _assistant_message(response: ChatResponse) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": response.content or None}
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


class ReactLoop:
    def __init__(
        self,
        chat: ChatProvider,
        registry: ToolRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_tokens: int = 1000,
    ) -> None:
        self.chat = chat
        self.registry = registry
        self.max_iterations = max(1, max_iterations)
        self.max_tokens = max_tokens

    async def run(self, messages: Sequence[Dict[str, Any]]) -> LoopResult:
        history: List[Dict[str, Any]] = list(messages)
        tools = self.registry.to_openai_tools() or None
        executed: List[ToolCall] = []
        last = ChatResponse()

        for iteration in range(1, self.max_iterations + 1):
            last = await self.chat.complete(history, tools=tools, max_tokens=self.max_tokens)
            history.append(_assistant_message(last))
            if not last.tool_calls:
                return LoopResult(last.content, history, iteration, executed)

            for call in last.tool_calls:
                logger.debug("iteration %s: calling %s(%s)", iteration, call.name, call.arguments)
                payload = await self.registry.call(call)
                history.append(tool_result_message(call, payload))
                executed.append(call)

        logger.warning("tool loop stopped after %s iterations", self.max_iterations)
        return LoopResult(last.content, history, self.max_iterations, executed, exhausted=True)


__all__ = [
    "ToolParam",
    "ToolSpec",
    "ToolRegistry",
    "ReactLoop",
    "LoopResult",
    "DEFAULT_MAX_ITERATIONS",
]
