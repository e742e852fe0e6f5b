"""Types shared by the orchestration layer."""

from collections.abc import Callable
from dataclasses import dataclass

from chat_gateway.constants import SessionStatus
from chat_gateway.errors import BackendError
from chat_gateway.provider_registry import ProviderDefinition
from chat_gateway.providers.base import ModelHandle, ProtocolAdapter
from chat_gateway.schemas import AccountConfig, EndEvent, StreamEvent

EventCallback = Callable[[StreamEvent], None]


@dataclass(frozen=True)
class ResolvedModel:
    account: AccountConfig
    definition: ProviderDefinition
    adapter: ProtocolAdapter
    model_id: str
    base_url: str
    cache_key: str
    handle: ModelHandle


@dataclass(frozen=True)
class ChatOutcome:
    status: SessionStatus
    end: EndEvent | None = None
    error: BackendError | None = None
    duration_seconds: float = 0.0
