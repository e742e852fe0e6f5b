"""Pydantic schemas for the chat gateway."""

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_RETRY_COUNT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOP_P,
    ProtocolFamily,
    ToolStatus,
)


class AccountConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    provider_id: str = Field(alias="providerId", min_length=1)
    protocol_family: ProtocolFamily | None = Field(default=None, alias="protocolFamily")
    base_url: str | None = Field(default=None, alias="baseUrl")
    api_key_secret_ref: str | None = Field(default=None, alias="apiKeySecretRef")
    default_model: str | None = Field(default=None, alias="defaultModel")
    custom_headers: dict[str, str] = Field(default_factory=dict, alias="customHeaders")
    region: str | None = None
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, alias="timeoutMs", gt=0)
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT, alias="retryCount", ge=0, le=10)
    enabled: bool = True

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, base_url: str | None) -> str | None:
        if base_url is None or not base_url.strip():
            return None
        if not base_url.startswith(("http://", "https://")):
            raise ValueError("baseUrl must be an http(s) URL")
        return base_url.strip()


class ChatOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, alias="maxTokens", ge=1, le=32_768)
    top_p: float = Field(default=DEFAULT_TOP_P, alias="topP", gt=0, le=1)
    system_prompt: str | None = Field(default=None, alias="systemPrompt")


class Usage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(default=0, alias="promptTokens", ge=0)
    completion_tokens: int = Field(default=0, alias="completionTokens", ge=0)
    total_tokens: int = Field(default=0, alias="totalTokens", ge=0)

    @model_validator(mode="after")
    def fill_total(self) -> "Usage":
        floor = self.prompt_tokens + self.completion_tokens
        if self.total_tokens < floor:
            self.total_tokens = floor
        return self

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class RepositoryReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repository_id: str | None = Field(default=None, alias="repositoryId")
    repository_name: str = Field(alias="repositoryName")
    owner: str
    description: str | None = None
    stars: int | None = None
    language: str | None = None
    url: str
    score: float | None = None


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    timestamp: float = Field(default_factory=time.time)
    references: list[RepositoryReference] = Field(default_factory=list)


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    delta: str


class ToolEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tool"] = "tool"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    status: ToolStatus
    call_id: str | None = Field(default=None, alias="callId")
    result: Any = None
    error: str | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    code: str = "backend_error"


class EndEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["end"] = "end"
    full_text: str = Field(alias="fullText")
    usage: Usage | None = None
    references: list[RepositoryReference] = Field(default_factory=list)


StreamEvent = Annotated[
    Union[TextEvent, ToolEvent, ErrorEvent, EndEvent], Field(discriminator="type")
]
TERMINAL_EVENT_TYPES = frozenset({"end", "error"})


class ChatResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    usage: Usage | None = None
    references: list[RepositoryReference] = Field(default_factory=list)
    provider_id: str = Field(alias="providerId")
    model_id: str = Field(alias="modelId")
    duration_seconds: float = Field(alias="durationSeconds")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    conversation_id: str = Field(default="default", alias="conversationId", min_length=1)
    account: AccountConfig
    model_id: str | None = Field(default=None, alias="modelId")
    options: ChatOptions = Field(default_factory=ChatOptions)

    @field_validator("message")
    @classmethod
    def validate_message(cls, message: str) -> str:
        if not message.strip():
            raise ValueError("message must not be empty")
        return message


class ModelOptionSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: str = Field(alias="displayName")


class ProviderOption(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    protocol_family: ProtocolFamily = Field(alias="protocolFamily")
    default_base_url: str = Field(alias="defaultBaseUrl")
    auth_scheme: str = Field(alias="authScheme")
    auth_header_name: str | None = Field(default=None, alias="authHeaderName")
    models: list[ModelOptionSchema]


class AbortResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    aborted: bool


class ModelListRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account: AccountConfig
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class ModelListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(alias="providerId")
    models: list[ModelOptionSchema]
    fetched_at: float = Field(alias="fetchedAt")
    ttl_seconds: float = Field(alias="ttlSeconds")


class ConnectionTestResult(BaseModel):
    """Outcome of a provider connection check. Failures are data, not errors."""

    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(alias="providerId")
    success: bool
    message: str
    model_count: int | None = Field(default=None, alias="modelCount")
    latency_ms: float | None = Field(default=None, alias="latencyMs")
    error_code: str | None = Field(default=None, alias="errorCode")


class ModelCacheStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    size: int
    total_access: int = Field(alias="totalAccess")
    expired_count: int = Field(alias="expiredCount")
    max_size: int | None = Field(default=None, alias="maxSize")
    ttl_seconds: float = Field(alias="ttlSeconds")


class GatewayStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_sessions: int = Field(alias="activeSessions")
    provider_count: int = Field(alias="providerCount")
    model_cache: ModelCacheStats = Field(alias="modelCache")
    model_list_cache_size: int = Field(alias="modelListCacheSize")
