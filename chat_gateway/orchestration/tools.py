"""Tools the model may call during a chat turn."""

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from chat_gateway.providers.base import ToolCall, ToolDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    handler: Callable[[dict[str, Any]], Any]
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name, description=self.description, parameters=self.parameters
        )


class ToolExecutionError(Exception):
    pass


class ToolRegistry:
    def __init__(self, tools: list[ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __bool__(self) -> bool:
        return bool(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition() for tool in self._tools.values()]

    def execute(self, call: ToolCall) -> Any:
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {call.name}")
        try:
            return tool.handler(call.arguments)
        except Exception as e:
            logger.warning(
                "Tool execution failed",
                extra={"tool_name": call.name, "tool_call_id": call.id},
                exc_info=True,
            )
            raise ToolExecutionError(str(e)) from e


def serialize_tool_result(result: Any) -> str:
    """Render a tool result as the text fed back to the model."""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)
