"""Bedrock provider adapter and model handle."""

import logging
from collections.abc import Iterator, Sequence
from typing import Any

import boto3
from botocore.config import Config
from langchain_aws import ChatBedrockConverse
from langchain_core.messages import AIMessageChunk

from chat_gateway.constants import AWS_REGION
from chat_gateway.message_mappers import build_bedrock_messages, build_openai_tools
from chat_gateway.ports import SecretStore
from chat_gateway.provider_registry import ModelOption, ProviderDefinition
from chat_gateway.schemas import AccountConfig, ChatOptions, Usage

from .base import (
    ModelDelta,
    PromptMessage,
    ProtocolAdapter,
    ToolCall,
    ToolDefinition,
    normalize_base_url,
)

logger = logging.getLogger(__name__)


def _chunk_text(chunk: AIMessageChunk) -> str:
    if isinstance(chunk.content, str):
        return chunk.content
    return "".join(
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in chunk.content
        if not isinstance(block, dict) or block.get("type", "text") == "text"
    )


class BedrockConverseHandle:
    """Streams Bedrock Converse through LangChain, reusing one runtime client."""

    def __init__(self, runtime_client: Any, provider_id: str, model_id: str, region: str) -> None:
        self._runtime_client = runtime_client
        self.provider_id = provider_id
        self.model_id = model_id
        self._region = region

    def _chat_model(self, options: ChatOptions) -> ChatBedrockConverse:
        return ChatBedrockConverse(
            client=self._runtime_client,
            model=self.model_id,
            region_name=self._region,
            max_tokens=options.max_tokens,
            temperature=min(options.temperature, 1.0),
            top_p=options.top_p,
        )

    def stream(
        self,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tools: Sequence[ToolDefinition] = (),
    ) -> Iterator[ModelDelta]:
        model: Any = self._chat_model(options)
        if tools:
            model = model.bind_tools(build_openai_tools(tools))

        aggregate: AIMessageChunk | None = None
        for chunk in model.stream(
            build_bedrock_messages(messages),
            config={"run_name": "chat_gateway_bedrock_converse", "tags": ["chat-gateway"]},
        ):
            aggregate = chunk if aggregate is None else aggregate + chunk
            text = _chunk_text(chunk)
            if text:
                yield ModelDelta.text_delta(text)

        if aggregate is None:
            yield ModelDelta(kind="error", error="Bedrock stream returned no content")
            return

        for index, call in enumerate(aggregate.tool_calls):
            yield ModelDelta(
                kind="tool_call",
                tool_call=ToolCall(
                    id=call.get("id") or f"call_{index}",
                    name=call["name"],
                    arguments=dict(call.get("args") or {}),
                ),
            )

        usage_metadata = aggregate.usage_metadata
        usage = (
            Usage(
                prompt_tokens=usage_metadata.get("input_tokens", 0),
                completion_tokens=usage_metadata.get("output_tokens", 0),
                total_tokens=usage_metadata.get("total_tokens", 0),
            )
            if usage_metadata
            else None
        )
        response_metadata = aggregate.response_metadata or {}
        yield ModelDelta.finish(
            response_metadata.get("stopReason") or response_metadata.get("stop_reason"), usage
        )

    def close(self) -> None:
        close = getattr(self._runtime_client, "close", None)
        if close is not None:
            close()


class BedrockAdapter(ProtocolAdapter):
    protocol = "bedrock"

    def resolve_base_url(self, definition: ProviderDefinition, account: AccountConfig) -> str:
        if account.base_url:
            return normalize_base_url(account.base_url)
        return f"https://bedrock-runtime.{account.region or AWS_REGION}.amazonaws.com"

    def build_model_handle(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        model_id: str,
        secrets: SecretStore,
    ) -> BedrockConverseHandle:
        # Bedrock authenticates with the ambient AWS credential chain.
        region = account.region or AWS_REGION
        runtime_client = boto3.client(
            "bedrock-runtime",
            region_name=region,
            endpoint_url=self.resolve_base_url(definition, account),
            config=Config(
                read_timeout=account.timeout_ms / 1000,
                retries={"max_attempts": account.retry_count + 1, "mode": "standard"},
            ),
        )
        logger.info(
            "Bedrock runtime client created",
            extra={"provider_id": definition.id, "model": model_id, "region": region},
        )
        return BedrockConverseHandle(
            runtime_client=runtime_client,
            provider_id=definition.id,
            model_id=model_id,
            region=region,
        )

    def list_models(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        secrets: SecretStore,
    ) -> list[ModelOption]:
        region = account.region or AWS_REGION
        control_client = boto3.client(
            "bedrock",
            region_name=region,
            config=Config(
                read_timeout=account.timeout_ms / 1000,
                retries={"max_attempts": account.retry_count + 1, "mode": "standard"},
            ),
        )
        response = control_client.list_foundation_models(byOutputModality="TEXT")
        return [
            ModelOption(summary["modelId"], summary.get("modelName") or summary["modelId"])
            for summary in response.get("modelSummaries", [])
        ]
