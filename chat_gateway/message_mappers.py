"""Conversion helpers between gateway prompt messages and provider-specific formats."""

import json
from collections.abc import Sequence
from typing import Any

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from .providers.base import PromptMessage, ToolDefinition


def _tool_content(message: PromptMessage) -> str:
    return message.content if message.content else ""


def build_openai_messages(messages: Sequence[PromptMessage]) -> list[dict[str, Any]]:
    """Convert prompt messages to Chat Completions ``messages``."""
    wire: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            wire.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_call_id,
                    "content": _tool_content(message),
                }
            )
            continue

        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "assistant" and message.tool_calls:
            entry["content"] = message.content or None
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        wire.append(entry)
    return wire


def build_openai_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": dict(tool.parameters),
            },
        }
        for tool in tools
    ]


def build_anthropic_messages(
    messages: Sequence[PromptMessage],
) -> tuple[str | None, list[dict[str, Any]]]:
    """Split out the system instruction and build Messages API turns.

    Consecutive tool results are folded into one user turn, as the API requires.
    """
    system_parts: list[str] = []
    wire: list[dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            system_parts.append(message.content)
            continue

        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": _tool_content(message),
            }
            previous = wire[-1] if wire else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(part.get("type") == "tool_result" for part in previous["content"])
            ):
                previous["content"].append(block)
            else:
                wire.append({"role": "user", "content": [block]})
            continue

        if message.role == "assistant" and message.tool_calls:
            content: list[dict[str, Any]] = []
            if message.content:
                content.append({"type": "text", "text": message.content})
            content.extend(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                for call in message.tool_calls
            )
            wire.append({"role": "assistant", "content": content})
            continue

        wire.append({"role": message.role, "content": message.content})

    system = "\n\n".join(part for part in system_parts if part) or None
    return system, wire


def build_anthropic_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {"name": tool.name, "description": tool.description, "input_schema": dict(tool.parameters)}
        for tool in tools
    ]


def build_bedrock_messages(
    messages: Sequence[PromptMessage],
) -> list[SystemMessage | HumanMessage | AIMessage | ToolMessage]:
    """Convert prompt messages to LangChain message format for Bedrock."""
    lc_messages: list[SystemMessage | HumanMessage | AIMessage | ToolMessage] = []

    for message in messages:
        if message.role == "system":
            lc_messages.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            lc_messages.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"name": call.name, "args": call.arguments, "id": call.id}
                        for call in message.tool_calls
                    ],
                )
            )
        elif message.role == "tool":
            lc_messages.append(
                ToolMessage(content=_tool_content(message), tool_call_id=message.tool_call_id or "")
            )
        else:
            lc_messages.append(HumanMessage(content=message.content))

    return lc_messages
