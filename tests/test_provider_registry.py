import unittest

from chat_gateway.errors import NoModelAvailable, UnknownProvider, UnsupportedProtocol
from chat_gateway.provider_registry import (
    PROVIDER_DEFINITIONS,
    ModelOption,
    ProviderDefinition,
    get_provider_definition,
    get_provider_options,
)
from chat_gateway.providers.anthropic_provider import AnthropicAdapter
from chat_gateway.providers.base import (
    ensure_path_suffix,
    merge_headers,
    normalize_base_url,
    pick_model_id,
    resolve_auth_header,
)
from chat_gateway.providers.bedrock_provider import BedrockAdapter
from chat_gateway.providers.ollama_provider import OllamaAdapter
from chat_gateway.providers.openai_provider import OpenAICompatibleAdapter
from chat_gateway.providers.registry import AdapterRegistry
from chat_gateway.schemas import AccountConfig


class ProviderCatalogTests(unittest.TestCase):
    def test_catalog_contains_every_protocol_family(self) -> None:
        families = {definition.protocol_family for definition in get_provider_options()}

        self.assertEqual(families, {"openai-compatible", "anthropic", "ollama", "bedrock"})

    def test_lookup_returns_none_for_unknown_id(self) -> None:
        self.assertIsNone(get_provider_definition("p999"))
        self.assertIs(get_provider_definition("openai"), PROVIDER_DEFINITIONS["openai"])

    def test_every_definition_lists_at_least_one_model(self) -> None:
        for definition in get_provider_options():
            with self.subTest(provider=definition.id):
                self.assertGreaterEqual(len(definition.models), 1)


class AdapterRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = AdapterRegistry()

    def test_resolve_adapter_uses_definition_protocol(self) -> None:
        expectations = {
            "openai": OpenAICompatibleAdapter,
            "deepseek": OpenAICompatibleAdapter,
            "anthropic": AnthropicAdapter,
            "ollama": OllamaAdapter,
            "bedrock": BedrockAdapter,
        }
        for provider_id, adapter_type in expectations.items():
            with self.subTest(provider=provider_id):
                adapter = self.registry.resolve_adapter(AccountConfig(provider_id=provider_id))
                self.assertIs(type(adapter), adapter_type)

    def test_adapter_supports_only_its_family(self) -> None:
        self.assertTrue(OllamaAdapter().supports(PROVIDER_DEFINITIONS["ollama"]))
        self.assertFalse(OllamaAdapter().supports(PROVIDER_DEFINITIONS["openai"]))
        self.assertTrue(AnthropicAdapter().supports(PROVIDER_DEFINITIONS["anthropic"]))

    def test_resolve_adapter_is_deterministic(self) -> None:
        account = AccountConfig(provider_id="openrouter")

        first = self.registry.resolve_adapter(account)
        second = self.registry.resolve_adapter(account)

        self.assertIs(first, second)

    def test_account_protocol_override_wins(self) -> None:
        account = AccountConfig(provider_id="ollama", protocol_family="openai-compatible")

        adapter = self.registry.resolve_adapter(account)

        self.assertEqual(adapter.protocol, "openai-compatible")

    def test_unknown_provider_raises(self) -> None:
        with self.assertRaises(UnknownProvider) as ctx:
            self.registry.resolve_adapter(AccountConfig(provider_id="p999"))

        self.assertEqual(ctx.exception.provider_id, "p999")
        self.assertEqual(ctx.exception.code, "unknown_provider")

    def test_missing_adapter_raises_unsupported_protocol(self) -> None:
        registry = AdapterRegistry(adapters=[OpenAICompatibleAdapter()])

        with self.assertRaises(UnsupportedProtocol) as ctx:
            registry.resolve_adapter(AccountConfig(provider_id="anthropic"))

        self.assertEqual(ctx.exception.protocol, "anthropic")

    def test_register_replaces_adapter_for_family(self) -> None:
        replacement = OpenAICompatibleAdapter()
        self.registry.register(replacement)

        adapter = self.registry.resolve_adapter(AccountConfig(provider_id="openai"))

        self.assertIs(adapter, replacement)


class AdapterHelperTests(unittest.TestCase):
    def setUp(self) -> None:
        self.definition = ProviderDefinition(
            id="custom",
            name="Custom",
            protocol_family="openai-compatible",
            default_base_url="https://llm.example.com/v1/",
            auth_scheme="bearer-header",
            models=(ModelOption("first-model", "First"), ModelOption("second-model", "Second")),
            default_headers=(("X-Client", "gateway"), ("authorization", "leak")),
        )

    def test_pick_model_id_prefers_requested_then_account_default(self) -> None:
        account = AccountConfig(provider_id="custom", default_model="account-model")

        self.assertEqual(pick_model_id(self.definition, account, " requested "), "requested")
        self.assertEqual(pick_model_id(self.definition, account, "  "), "account-model")
        self.assertEqual(
            pick_model_id(self.definition, AccountConfig(provider_id="custom")), "first-model"
        )

    def test_pick_model_id_raises_when_nothing_available(self) -> None:
        definition = ProviderDefinition(
            id="empty",
            name="Empty",
            protocol_family="openai-compatible",
            default_base_url="https://empty.example.com",
            auth_scheme="none",
        )

        with self.assertRaises(NoModelAvailable):
            pick_model_id(definition, AccountConfig(provider_id="empty"))

    def test_base_url_normalization_and_suffix(self) -> None:
        self.assertEqual(normalize_base_url("http://host:11434///"), "http://host:11434")
        self.assertEqual(ensure_path_suffix("http://host:11434/", "/v1"), "http://host:11434/v1")
        self.assertEqual(ensure_path_suffix("http://host:11434/v1", "v1"), "http://host:11434/v1")

    def test_adapters_append_family_suffix(self) -> None:
        ollama = PROVIDER_DEFINITIONS["ollama"]
        anthropic = PROVIDER_DEFINITIONS["anthropic"]

        self.assertEqual(
            OllamaAdapter().resolve_base_url(ollama, AccountConfig(provider_id="ollama")),
            "http://localhost:11434/v1",
        )
        self.assertEqual(
            AnthropicAdapter().resolve_base_url(
                anthropic,
                AccountConfig(provider_id="anthropic", base_url="https://proxy.example.com/"),
            ),
            "https://proxy.example.com/v1",
        )

    def test_bedrock_base_url_follows_account_region(self) -> None:
        definition = PROVIDER_DEFINITIONS["bedrock"]
        account = AccountConfig(provider_id="bedrock", region="us-east-1")

        self.assertEqual(
            BedrockAdapter().resolve_base_url(definition, account),
            "https://bedrock-runtime.us-east-1.amazonaws.com",
        )

    def test_resolve_auth_header_per_scheme(self) -> None:
        self.assertEqual(
            resolve_auth_header(self.definition, "sk-1"), ("Authorization", "Bearer sk-1")
        )
        self.assertEqual(
            resolve_auth_header(PROVIDER_DEFINITIONS["anthropic"], "sk-2"), ("x-api-key", "sk-2")
        )
        self.assertIsNone(resolve_auth_header(PROVIDER_DEFINITIONS["ollama"], "sk-3"))
        self.assertIsNone(resolve_auth_header(self.definition, None))

    def test_merge_headers_drops_duplicates_of_auth_header(self) -> None:
        account = AccountConfig(
            provider_id="custom",
            custom_headers={"x-client": "override", "AUTHORIZATION": "also-leak"},
        )

        headers = merge_headers(
            self.definition, account, resolve_auth_header(self.definition, "sk-1")
        )

        self.assertEqual(headers, {"x-client": "override", "Authorization": "Bearer sk-1"})


if __name__ == "__main__":
    unittest.main()
