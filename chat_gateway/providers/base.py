"""Provider adapter contract, model handle interface and shared helpers."""

import json
import logging
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from chat_gateway.constants import ProtocolFamily
from chat_gateway.errors import NoModelAvailable
from chat_gateway.ports import SecretStore
from chat_gateway.provider_registry import ModelOption, ProviderDefinition
from chat_gateway.schemas import AccountConfig, ChatOptions, Usage

logger = logging.getLogger(__name__)

DeltaKind = Literal["text", "tool_call", "tool_result", "error", "finish"]

_TRAILING_SLASHES = re.compile(r"/+$")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Mapping[str, Any]


@dataclass(frozen=True)
class PromptMessage:
    """Backend-neutral outbound message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ModelDelta:
    """One event of a backend stream, after wire decoding."""

    kind: DeltaKind
    text: str = ""
    tool_call: ToolCall | None = None
    result: Any = None
    error: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    @classmethod
    def text_delta(cls, text: str) -> "ModelDelta":
        return cls(kind="text", text=text)

    @classmethod
    def finish(cls, finish_reason: str | None, usage: Usage | None) -> "ModelDelta":
        return cls(kind="finish", finish_reason=finish_reason, usage=usage)


class ModelHandle(Protocol):
    """Callable model bound to one (provider, model, base URL) triple."""

    provider_id: str
    model_id: str

    def stream(
        self,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tools: Sequence[ToolDefinition] = (),
    ) -> Iterator[ModelDelta]:
        """Yield decoded deltas; the last one is ``finish`` or ``error``."""
        ...

    def close(self) -> None: ...


class ProtocolAdapter:
    """Builds model handles for one wire-protocol family."""

    protocol: ProtocolFamily
    path_suffix: str | None = None

    def supports(self, definition: ProviderDefinition) -> bool:
        return definition.protocol_family == self.protocol

    def default_model_id(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        requested_model_id: str | None = None,
    ) -> str:
        return pick_model_id(definition, account, requested_model_id)

    def resolve_base_url(self, definition: ProviderDefinition, account: AccountConfig) -> str:
        base_url = normalize_base_url(account.base_url or definition.default_base_url)
        if self.path_suffix:
            base_url = ensure_path_suffix(base_url, self.path_suffix)
        return base_url

    def build_model_handle(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        model_id: str,
        secrets: SecretStore,
    ) -> ModelHandle:
        raise NotImplementedError

    def list_models(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        secrets: SecretStore,
    ) -> list[ModelOption]:
        """Models the backend offers. Families without a listing API return the catalog."""
        return list(definition.models)

    def test_connection(
        self,
        definition: ProviderDefinition,
        account: AccountConfig,
        secrets: SecretStore,
    ) -> int:
        """Reach the backend with the account's credentials and return the model count.

        Raises the backend's own exception when the endpoint or the key is rejected.
        """
        return len(self.list_models(definition, account, secrets))


def parse_tool_arguments(raw: str, tool_name: str) -> dict[str, Any]:
    """Decode streamed tool-call arguments, keeping undecodable input under ``_raw``."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON", extra={"tool_name": tool_name})
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def normalize_base_url(base_url: str) -> str:
    return _TRAILING_SLASHES.sub("", base_url.strip())


def ensure_path_suffix(base_url: str, suffix: str) -> str:
    normalized = normalize_base_url(base_url)
    suffix = suffix if suffix.startswith("/") else f"/{suffix}"
    return normalized if normalized.endswith(suffix) else f"{normalized}{suffix}"


def pick_model_id(
    definition: ProviderDefinition,
    account: AccountConfig,
    requested_model_id: str | None = None,
) -> str:
    candidates = [requested_model_id, account.default_model]
    candidates.extend(model.id for model in definition.models)
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    raise NoModelAvailable(definition.id)


def read_api_key(account: AccountConfig, secrets: SecretStore) -> str | None:
    if not account.api_key_secret_ref:
        return None
    return secrets.get_secret(account.api_key_secret_ref) or None


def resolve_auth_header(
    definition: ProviderDefinition, api_key: str | None
) -> tuple[str, str] | None:
    if not api_key:
        return None
    if definition.auth_scheme == "bearer-header":
        return definition.auth_header_name or "Authorization", f"Bearer {api_key}"
    if definition.auth_scheme == "api-key-header":
        return definition.auth_header_name or "x-api-key", api_key
    return None


def merge_headers(
    definition: ProviderDefinition,
    account: AccountConfig,
    auth_header: tuple[str, str] | None = None,
    reserved: Sequence[str] = (),
) -> dict[str, str]:
    """Provider defaults, then account headers, then the auth header.

    Names in ``reserved`` (case-insensitive) are dropped from the provider and
    account headers; the auth header name is always reserved.
    """
    blocked = {name.lower() for name in reserved}
    if auth_header:
        blocked.add(auth_header[0].lower())

    headers: dict[str, str] = {}
    for source in (dict(definition.default_headers), account.custom_headers):
        for name, value in source.items():
            if name.lower() in blocked:
                continue
            for existing in [key for key in headers if key.lower() == name.lower()]:
                del headers[existing]
            headers[name] = value

    if auth_header:
        headers[auth_header[0]] = auth_header[1]
    return headers
