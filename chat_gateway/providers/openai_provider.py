"""OpenAI-compatible provider adapter and model handle."""

import logging
from collections.abc import Iterator, Sequence
from typing import Any

from langsmith import traceable
from openai import OpenAI

from chat_gateway.constants import OPENAI_PLACEHOLDER_API_KEY
from chat_gateway.message_mappers import build_openai_messages, build_openai_tools
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


@traceable(run_type="llm", name="openai.chat.completions.stream")
def _open_chat_stream(client: OpenAI, request_params: dict[str, Any]) -> Any:
    return client.chat.completions.create(**request_params)


class OpenAIChatHandle:
    """Streams Chat Completions from one OpenAI-compatible endpoint."""

    def __init__(
        self,
        client: OpenAI,
        provider_id: str,
        model_id: str,
        include_usage: bool = True,
    ) -> None:
        self._client = client
        self.provider_id = provider_id
        self.model_id = model_id
        self._include_usage = include_usage

    def stream(
        self,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tools: Sequence[ToolDefinition] = (),
    ) -> Iterator[ModelDelta]:
        request_params: dict[str, Any] = {
            "model": self.model_id,
            "messages": build_openai_messages(messages),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "stream": True,
        }
        if self._include_usage:
            request_params["stream_options"] = {"include_usage": True}
        if tools:
            request_params["tools"] = build_openai_tools(tools)

        stream = _open_chat_stream(self._client, request_params)
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        usage: Usage | None = None
        try:
            for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = Usage(
                        prompt_tokens=chunk.usage.prompt_tokens or 0,
                        completion_tokens=chunk.usage.completion_tokens or 0,
                        total_tokens=chunk.usage.total_tokens or 0,
                    )
                for choice in chunk.choices or ():
                    delta = choice.delta
                    if delta is not None and delta.content:
                        yield ModelDelta.text_delta(delta.content)
                    for fragment in (delta.tool_calls if delta is not None else None) or ():
                        pending = pending_calls.setdefault(
                            fragment.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if fragment.id:
                            pending["id"] = fragment.id
                        if fragment.function is not None:
                            pending["name"] += fragment.function.name or ""
                            pending["arguments"] += fragment.function.arguments or ""
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        for index in sorted(pending_calls):
            pending = pending_calls[index]
            yield ModelDelta(
                kind="tool_call",
                tool_call=ToolCall(
                    id=pending["id"] or f"call_{index}",
                    name=pending["name"],
                    arguments=parse_tool_arguments(pending["arguments"], pending["name"]),
                ),
            )
        yield ModelDelta.finish(finish_reason, usage)

    def close(self) -> None:
        self._client.close()


class OpenAICompatibleAdapter(ProtocolAdapter):
    protocol = "openai-compatible"
    include_usage = True

    def _build_client(
        self, definition: ProviderDefinition, account: AccountConfig, secrets: SecretStore
    ) -> OpenAI:
        base_url = self.resolve_base_url(definition, account)
        api_key = read_api_key(account, secrets)

        # The SDK sends ``Authorization: Bearer <api_key>`` itself; any other
        # scheme or header name travels as an explicit header instead.
        pass_api_key = definition.auth_scheme == "bearer-header" and (
            (definition.auth_header_name or "Authorization").lower() == "authorization"
        )
        if pass_api_key:
            headers = merge_headers(definition, account, reserved=("Authorization",))
        else:
            headers = merge_headers(definition, account, resolve_auth_header(definition, api_key))

        client = OpenAI(
            api_key=(api_key if pass_api_key and api_key else OPENAI_PLACEHOLDER_API_KEY),
            base_url=base_url,
            timeout=account.timeout_ms / 1000,
            max_retries=account.retry_count,
            default_headers=headers or None,
        )
        logger.info(
            "OpenAI-compatible client created",
            extra={
                "provider_id": definition.id,
                "base_url": base_url,
                "header_names": sorted(headers),
            },
        )
        return client

    def build_model_handle(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        model_id: str,
        secrets: SecretStore,
    ) -> OpenAIChatHandle:
        return OpenAIChatHandle(
            client=self._build_client(definition, account, secrets),
            provider_id=definition.id,
            model_id=model_id,
            include_usage=self.include_usage,
        )

    def list_models(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        secrets: SecretStore,
    ) -> list[ModelOption]:
        client = self._build_client(definition, account, secrets)
        try:
            model_ids = sorted({model.id for model in client.models.list()})
        finally:
            client.close()
        return [ModelOption(model_id, model_id) for model_id in model_ids]
