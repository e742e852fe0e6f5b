"""Anthropic Messages API adapter and model handle."""

import json
import logging
from collections.abc import Iterator, Sequence
from typing import Any

import httpx
from langsmith import traceable

from chat_gateway.constants import ANTHROPIC_VERSION
from chat_gateway.message_mappers import build_anthropic_messages, build_anthropic_tools
from chat_gateway.ports import SecretStore
from chat_gateway.provider_registry import ModelOption, ProviderDefinition
from chat_gateway.schemas import AccountConfig, ChatOptions, Usage

from .base import (
    ModelDelta,
    PromptMessage,
    ProtocolAdapter,
    ToolCall,
    ToolDefinition,
    merge_headers,
    parse_tool_arguments,
    read_api_key,
    resolve_auth_header,
)

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
MODEL_LIST_LIMIT = 100


def _iter_sse_events(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data:
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable Anthropic stream line")


def _apply_api_headers(client: httpx.Client, api_key: str | None) -> None:
    if api_key:
        client.headers[API_KEY_HEADER] = api_key
    client.headers.setdefault("anthropic-version", ANTHROPIC_VERSION)


class AnthropicMessagesHandle:
    """Streams the Messages API over a pre-configured ``httpx.Client``.

    The client's base URL already ends in ``/v1``.
    """

    def __init__(
        self,
        client: httpx.Client,
        provider_id: str,
        model_id: str,
        api_key: str | None = None,
    ) -> None:
        self._client = client
        self.provider_id = provider_id
        self.model_id = model_id
        _apply_api_headers(self._client, api_key)

    def _build_payload(
        self,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tools: Sequence[ToolDefinition],
    ) -> dict[str, Any]:
        system, wire_messages = build_anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": self.model_id,
            "max_tokens": options.max_tokens,
            "messages": wire_messages,
            "temperature": min(options.temperature, 1.0),
            "stream": True,
        }
        if system:
            payload["system"] = system
        if options.top_p < 1.0:
            payload["top_p"] = options.top_p
        if tools:
            payload["tools"] = build_anthropic_tools(tools)
        return payload

    @traceable(run_type="llm", name="anthropic.messages.stream")
    def stream(
        self,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tools: Sequence[ToolDefinition] = (),
    ) -> Iterator[ModelDelta]:
        payload = self._build_payload(messages, options, tools)
        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        tool_blocks: dict[int, dict[str, Any]] = {}

        with self._client.stream("POST", "/messages", json=payload) as response:
            if response.status_code >= 400:
                response.read()
                response.raise_for_status()

            for event in _iter_sse_events(response.iter_lines()):
                event_type = event.get("type")

                if event_type == "message_start":
                    usage = event.get("message", {}).get("usage", {})
                    input_tokens = usage.get("input_tokens", 0) or 0
                    output_tokens = usage.get("output_tokens", 0) or 0

                elif event_type == "content_block_start":
                    block = event.get("content_block", {})
                    if block.get("type") == "tool_use":
                        tool_blocks[event.get("index", 0)] = {
                            "id": block.get("id", ""),
                            "name": block.get("name", ""),
                            "input_json": "",
                        }

                elif event_type == "content_block_delta":
                    delta = event.get("delta", {})
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield ModelDelta.text_delta(delta["text"])
                    elif delta.get("type") == "input_json_delta":
                        block = tool_blocks.get(event.get("index", 0))
                        if block is not None:
                            block["input_json"] += delta.get("partial_json", "")

                elif event_type == "content_block_stop":
                    block = tool_blocks.pop(event.get("index", 0), None)
                    if block is not None:
                        yield ModelDelta(
                            kind="tool_call",
                            tool_call=ToolCall(
                                id=block["id"],
                                name=block["name"],
                                arguments=parse_tool_arguments(
                                    block["input_json"], block["name"]
                                ),
                            ),
                        )

                elif event_type == "message_delta":
                    stop_reason = event.get("delta", {}).get("stop_reason") or stop_reason
                    output_tokens = event.get("usage", {}).get("output_tokens", output_tokens)

                elif event_type == "message_stop":
                    yield ModelDelta.finish(
                        stop_reason,
                        Usage(
                            prompt_tokens=input_tokens,
                            completion_tokens=output_tokens,
                            total_tokens=input_tokens + output_tokens,
                        ),
                    )
                    return

                elif event_type == "error":
                    error = event.get("error", {})
                    yield ModelDelta(
                        kind="error",
                        error=error.get("message") or error.get("type") or "Anthropic stream error",
                    )
                    return

        yield ModelDelta(kind="error", error="Anthropic stream ended without message_stop")

    def close(self) -> None:
        self._client.close()


class AnthropicAdapter(ProtocolAdapter):
    protocol = "anthropic"
    path_suffix = "/v1"

    def _build_client(
        self, definition: ProviderDefinition, account: AccountConfig, secrets: SecretStore
    ) -> tuple[httpx.Client, str | None]:
        """Return the client and the key the caller should send as ``x-api-key``."""
        base_url = self.resolve_base_url(definition, account)
        api_key = read_api_key(account, secrets)

        # A standard x-api-key scheme is handed over separately; any other
        # header name is emitted as a plain header.
        pass_api_key = definition.auth_scheme == "api-key-header" and (
            (definition.auth_header_name or API_KEY_HEADER).lower() == API_KEY_HEADER
        )
        if pass_api_key:
            headers = merge_headers(definition, account, reserved=(API_KEY_HEADER,))
        else:
            headers = merge_headers(definition, account, resolve_auth_header(definition, api_key))

        client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=account.timeout_ms / 1000,
            transport=httpx.HTTPTransport(retries=account.retry_count),
        )
        logger.info(
            "Anthropic client created",
            extra={
                "provider_id": definition.id,
                "base_url": base_url,
                "header_names": sorted(headers),
            },
        )
        return client, api_key if pass_api_key else None

    def build_model_handle(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        model_id: str,
        secrets: SecretStore,
    ) -> AnthropicMessagesHandle:
        client, api_key = self._build_client(definition, account, secrets)
        return AnthropicMessagesHandle(
            client=client,
            provider_id=definition.id,
            model_id=model_id,
            api_key=api_key,
        )

    def list_models(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        secrets: SecretStore,
    ) -> list[ModelOption]:
        client, api_key = self._build_client(definition, account, secrets)
        with client:
            _apply_api_headers(client, api_key)
            response = client.get("/models", params={"limit": MODEL_LIST_LIMIT})
            response.raise_for_status()
            data = response.json().get("data", [])
        return [
            ModelOption(model["id"], model.get("display_name") or model["id"])
            for model in data
            if model.get("id")
        ]
