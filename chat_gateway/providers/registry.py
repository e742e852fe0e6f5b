"""Resolution of accounts to provider definitions and protocol adapters."""

import logging
from collections.abc import Iterable, Mapping

from chat_gateway.constants import ProtocolFamily
from chat_gateway.errors import UnknownProvider, UnsupportedProtocol
from chat_gateway.provider_registry import PROVIDER_DEFINITIONS, ProviderDefinition
from chat_gateway.schemas import AccountConfig

from .anthropic_provider import AnthropicAdapter
from .base import ProtocolAdapter
from .bedrock_provider import BedrockAdapter
from .ollama_provider import OllamaAdapter
from .openai_provider import OpenAICompatibleAdapter

logger = logging.getLogger(__name__)


def default_adapters() -> list[ProtocolAdapter]:
    return [OpenAICompatibleAdapter(), AnthropicAdapter(), OllamaAdapter(), BedrockAdapter()]


class AdapterRegistry:
    """Two-step lookup: provider id -> definition -> adapter for the effective protocol.

    The effective protocol is the account's override when set, so one
    provider id can be reached through any wire-compatible adapter.
    """

    def __init__(
        self,
        definitions: Mapping[str, ProviderDefinition] | None = None,
        adapters: Iterable[ProtocolAdapter] | None = None,
    ) -> None:
        self._definitions = dict(PROVIDER_DEFINITIONS if definitions is None else definitions)
        self._adapters: dict[ProtocolFamily, ProtocolAdapter] = {}
        for adapter in default_adapters() if adapters is None else adapters:
            self.register(adapter)

    def register(self, adapter: ProtocolAdapter) -> None:
        self._adapters[adapter.protocol] = adapter
        logger.debug("Registered protocol adapter", extra={"protocol": adapter.protocol})

    def resolve_definition(self, provider_id: str) -> ProviderDefinition:
        definition = self._definitions.get(provider_id)
        if definition is None:
            raise UnknownProvider(provider_id)
        return definition

    def resolve_adapter(self, account: AccountConfig) -> ProtocolAdapter:
        definition = self.resolve_definition(account.provider_id)
        protocol = account.protocol_family or definition.protocol_family
        adapter = self._adapters.get(protocol)
        if adapter is None:
            raise UnsupportedProtocol(protocol)
        return adapter

    def list_definitions(self) -> list[ProviderDefinition]:
        return list(self._definitions.values())
