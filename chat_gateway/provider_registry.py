"""Static catalog of known model backends."""

from dataclasses import dataclass, field

from .constants import AWS_REGION, AuthScheme, ProtocolFamily


@dataclass(frozen=True)
class ModelOption:
    id: str
    display_name: str


@dataclass(frozen=True)
class ProviderDefinition:
    id: str
    name: str
    protocol_family: ProtocolFamily
    default_base_url: str
    auth_scheme: AuthScheme
    models: tuple[ModelOption, ...] = ()
    auth_header_name: str | None = None
    default_headers: tuple[tuple[str, str], ...] = field(default=())


PROVIDER_DEFINITIONS: dict[str, ProviderDefinition] = {
    "openai": ProviderDefinition(
        id="openai",
        name="OpenAI",
        protocol_family="openai-compatible",
        default_base_url="https://api.openai.com/v1",
        auth_scheme="bearer-header",
        models=(
            ModelOption("gpt-4o-mini", "GPT-4o mini"),
            ModelOption("gpt-4o", "GPT-4o"),
            ModelOption("gpt-4.1-mini", "GPT-4.1 mini"),
            ModelOption("gpt-4.1", "GPT-4.1"),
        ),
    ),
    "anthropic": ProviderDefinition(
        id="anthropic",
        name="Anthropic",
        protocol_family="anthropic",
        default_base_url="https://api.anthropic.com",
        auth_scheme="api-key-header",
        auth_header_name="x-api-key",
        models=(
            ModelOption("claude-sonnet-4-5", "Claude Sonnet 4.5"),
            ModelOption("claude-haiku-4-5", "Claude Haiku 4.5"),
            ModelOption("claude-opus-4-1", "Claude Opus 4.1"),
        ),
    ),
    "deepseek": ProviderDefinition(
        id="deepseek",
        name="DeepSeek",
        protocol_family="openai-compatible",
        default_base_url="https://api.deepseek.com/v1",
        auth_scheme="bearer-header",
        models=(
            ModelOption("deepseek-chat", "DeepSeek Chat"),
            ModelOption("deepseek-reasoner", "DeepSeek Reasoner"),
        ),
    ),
    "openrouter": ProviderDefinition(
        id="openrouter",
        name="OpenRouter",
        protocol_family="openai-compatible",
        default_base_url="https://openrouter.ai/api/v1",
        auth_scheme="bearer-header",
        models=(
            ModelOption("openai/gpt-4o-mini", "GPT-4o mini (OpenRouter)"),
            ModelOption("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5 (OpenRouter)"),
        ),
        default_headers=(("X-Title", "chat-gateway"),),
    ),
    "ollama": ProviderDefinition(
        id="ollama",
        name="Ollama",
        protocol_family="ollama",
        default_base_url="http://localhost:11434",
        auth_scheme="none",
        models=(
            ModelOption("llama3.1", "Llama 3.1"),
            ModelOption("qwen2.5", "Qwen 2.5"),
        ),
    ),
    "bedrock": ProviderDefinition(
        id="bedrock",
        name="Amazon Bedrock",
        protocol_family="bedrock",
        default_base_url=f"https://bedrock-runtime.{AWS_REGION}.amazonaws.com",
        auth_scheme="none",
        models=(
            ModelOption("global.anthropic.claude-sonnet-4-6", "Claude Sonnet 4.6 (Bedrock)"),
            ModelOption(
                "global.anthropic.claude-haiku-4-5-20251001-v1:0", "Claude Haiku 4.5 (Bedrock)"
            ),
        ),
    ),
}


def get_provider_definition(provider_id: str) -> ProviderDefinition | None:
    return PROVIDER_DEFINITIONS.get(provider_id)


def get_provider_options() -> list[ProviderDefinition]:
    """Read-only export of the catalog, in registration order."""
    return list(PROVIDER_DEFINITIONS.values())
