"""Resolution, augmentation and stream translation for one chat turn."""

import logging
import time
from collections.abc import Sequence

from chat_gateway.constants import HISTORY_WINDOW, MAX_TOOL_STEPS
from chat_gateway.errors import (
    AccountDisabled,
    BackendError,
    CacheConstructionFailure,
    GatewayError,
    classify_backend_error,
)
from chat_gateway.orchestration.augmentation import build_prompt_messages
from chat_gateway.orchestration.base import ChatOutcome, EventCallback, ResolvedModel
from chat_gateway.orchestration.tools import ToolExecutionError, ToolRegistry, serialize_tool_result
from chat_gateway.ports import HistoryStore, NullRetrievalClient, RetrievalClient, SecretStore
from chat_gateway.provider_registry import ProviderDefinition
from chat_gateway.providers.base import ModelDelta, ModelHandle, PromptMessage, ProtocolAdapter
from chat_gateway.providers.registry import AdapterRegistry
from chat_gateway.schemas import (
    TERMINAL_EVENT_TYPES,
    AccountConfig,
    ChatOptions,
    ChatResult,
    EndEvent,
    ErrorEvent,
    HistoryMessage,
    RepositoryReference,
    StreamEvent,
    TextEvent,
    ToolEvent,
    Usage,
)
from chat_gateway.services.model_cache import ModelInstanceCache
from chat_gateway.services.session_manager import CancellationToken

logger = logging.getLogger(__name__)


class _Cancelled(Exception):
    pass


class _EventGate:
    """Forwards events until the first terminal event or until cancellation."""

    def __init__(self, emit: EventCallback, token: CancellationToken) -> None:
        self._emit = emit
        self._token = token
        self.closed = False

    def send(self, event: StreamEvent) -> None:
        if self.closed:
            return
        if event.type in TERMINAL_EVENT_TYPES:
            self.closed = True
        if not self._token.run_unless_cancelled(self._emit, event):
            raise _Cancelled()


class ChatOrchestrator:
    def __init__(
        self,
        adapter_registry: AdapterRegistry,
        model_cache: ModelInstanceCache,
        secrets: SecretStore,
        history_store: HistoryStore,
        retrieval: RetrievalClient | None = None,
        tools: ToolRegistry | None = None,
        history_window: int = HISTORY_WINDOW,
        max_tool_steps: int = MAX_TOOL_STEPS,
    ) -> None:
        self._adapter_registry = adapter_registry
        self._model_cache = model_cache
        self._secrets = secrets
        self._history_store = history_store
        self._retrieval = retrieval or NullRetrievalClient()
        self._tools = tools or ToolRegistry()
        self._history_window = history_window
        self._max_tool_steps = max_tool_steps

    # Resolving

    def resolve(self, account: AccountConfig, model_id: str | None = None) -> ResolvedModel:
        """Resolve adapter, model id and handle; raises before any session exists."""
        definition = self._adapter_registry.resolve_definition(account.provider_id)
        if not account.enabled:
            raise AccountDisabled(account.provider_id)
        adapter = self._adapter_registry.resolve_adapter(account)
        resolved_model_id = adapter.default_model_id(definition, account, model_id)
        base_url = adapter.resolve_base_url(definition, account)
        cache_key = ModelInstanceCache.make_key(definition.id, resolved_model_id, base_url)

        handle = self._model_cache.get_or_create(
            cache_key,
            lambda: self._build_handle(adapter, definition, account, resolved_model_id),
        )
        return ResolvedModel(
            account=account,
            definition=definition,
            adapter=adapter,
            model_id=resolved_model_id,
            base_url=base_url,
            cache_key=cache_key,
            handle=handle,
        )

    def _build_handle(
        self,
        adapter: ProtocolAdapter,
        definition: ProviderDefinition,
        account: AccountConfig,
        model_id: str,
    ) -> ModelHandle:
        try:
            return adapter.build_model_handle(definition, account, model_id, self._secrets)
        except GatewayError:
            raise
        except Exception as e:
            logger.warning(
                "Model handle construction failed",
                extra={"provider_id": definition.id, "model": model_id},
                exc_info=True,
            )
            raise CacheConstructionFailure(
                f"Failed to create model client for {definition.id}/{model_id}: {e}"
            ) from e

    # Augmenting

    def _retrieve(self, message: str) -> list[RepositoryReference]:
        try:
            return list(self._retrieval.hybrid_search(message))
        except Exception:
            logger.warning("Retrieval failed; continuing without references", exc_info=True)
            return []

    def _read_history(self, conversation_id: str) -> list[HistoryMessage]:
        try:
            return list(self._history_store.get_history(conversation_id))
        except Exception:
            logger.warning(
                "History read failed; continuing without history",
                extra={"conversation_id": conversation_id},
                exc_info=True,
            )
            return []

    def _record_turn(self, conversation_id: str, message: str, end: EndEvent) -> None:
        try:
            self._history_store.append(conversation_id, HistoryMessage(role="user", content=message))
            self._history_store.append(
                conversation_id,
                HistoryMessage(
                    role="assistant", content=end.full_text, references=list(end.references)
                ),
            )
        except Exception:
            logger.warning(
                "History append failed",
                extra={"conversation_id": conversation_id},
                exc_info=True,
            )

    # Invoking

    def stream(
        self,
        message: str,
        conversation_id: str,
        resolved: ResolvedModel,
        emit: EventCallback,
        token: CancellationToken | None = None,
        options: ChatOptions | None = None,
    ) -> ChatOutcome:
        """Drive one turn, pushing events to ``emit``.

        Exactly one ``end`` or ``error`` event is emitted unless the token is
        cancelled first, in which case nothing further is emitted.
        """
        token = token or CancellationToken()
        options = options or ChatOptions()
        gate = _EventGate(emit, token)
        start = time.time()

        try:
            end = self._run_turn(message, conversation_id, resolved, gate, token, options)
        except _Cancelled:
            return self._aborted(resolved, start)
        except Exception as e:
            if token.cancelled:
                return self._aborted(resolved, start)
            error = classify_backend_error(e)
            logger.warning(
                "Chat stream failed",
                extra={
                    "provider_id": resolved.definition.id,
                    "model": resolved.model_id,
                    "error_code": error.code,
                    "status_code": error.status_code,
                },
                exc_info=not isinstance(e, BackendError),
            )
            try:
                gate.send(ErrorEvent(message=error.message, code=error.code))
            except _Cancelled:
                return self._aborted(resolved, start)
            return ChatOutcome(
                status="error", error=error, duration_seconds=round(time.time() - start, 2)
            )

        duration_seconds = round(time.time() - start, 2)
        logger.info(
            "Chat response generated",
            extra={
                "provider_id": resolved.definition.id,
                "model": resolved.model_id,
                "duration_ms": int(duration_seconds * 1000),
                "usage_prompt_tokens": end.usage.prompt_tokens if end.usage else None,
                "usage_completion_tokens": end.usage.completion_tokens if end.usage else None,
                "response_length": len(end.full_text),
                "reference_count": len(end.references),
            },
        )
        return ChatOutcome(status="completed", end=end, duration_seconds=duration_seconds)

    def _aborted(self, resolved: ResolvedModel, start: float) -> ChatOutcome:
        logger.info(
            "Chat stream cancelled",
            extra={"provider_id": resolved.definition.id, "model": resolved.model_id},
        )
        return ChatOutcome(status="aborted", duration_seconds=round(time.time() - start, 2))

    def _run_turn(
        self,
        message: str,
        conversation_id: str,
        resolved: ResolvedModel,
        gate: _EventGate,
        token: CancellationToken,
        options: ChatOptions,
    ) -> EndEvent:
        references = self._retrieve(message)
        history = self._read_history(conversation_id)
        if token.cancelled:
            raise _Cancelled()

        messages = build_prompt_messages(
            message,
            history,
            references,
            system_prompt=options.system_prompt,
            history_window=self._history_window,
        )
        tool_definitions = self._tools.definitions()
        text_parts: list[str] = []
        usage: Usage | None = None

        for step in range(self._max_tool_steps + 1):
            step_text, tool_calls, finish = self._run_step(
                resolved.handle, messages, options, tool_definitions, gate, token
            )
            text_parts.append(step_text)
            if finish.usage is not None:
                usage = finish.usage if usage is None else usage + finish.usage

            if not tool_calls or not self._tools or step == self._max_tool_steps:
                break

            messages.append(
                PromptMessage(role="assistant", content=step_text, tool_calls=tuple(tool_calls))
            )
            for call in tool_calls:
                if token.cancelled:
                    raise _Cancelled()
                try:
                    result = self._tools.execute(call)
                except ToolExecutionError as e:
                    gate.send(
                        ToolEvent(
                            name=call.name,
                            args=call.arguments,
                            status="error",
                            call_id=call.id,
                            error=str(e),
                        )
                    )
                    content = f"Error: {e}"
                else:
                    gate.send(
                        ToolEvent(
                            name=call.name,
                            args=call.arguments,
                            status="result",
                            call_id=call.id,
                            result=result,
                        )
                    )
                    content = serialize_tool_result(result)
                messages.append(PromptMessage(role="tool", content=content, tool_call_id=call.id))

        end = EndEvent(full_text="".join(text_parts), usage=usage, references=references)
        if token.cancelled:
            raise _Cancelled()
        self._record_turn(conversation_id, message, end)
        gate.send(end)
        return end

    def _run_step(
        self,
        handle: ModelHandle,
        messages: Sequence[PromptMessage],
        options: ChatOptions,
        tool_definitions: Sequence,
        gate: _EventGate,
        token: CancellationToken,
    ) -> tuple[str, list, ModelDelta]:
        """Pull one backend response to completion and translate its deltas."""
        text_parts: list[str] = []
        tool_calls = []
        deltas = handle.stream(messages, options, tool_definitions)
        try:
            for delta in deltas:
                if token.cancelled:
                    raise _Cancelled()

                if delta.kind == "text":
                    text_parts.append(delta.text)
                    gate.send(TextEvent(delta=delta.text))
                elif delta.kind == "tool_call" and delta.tool_call is not None:
                    tool_calls.append(delta.tool_call)
                    gate.send(
                        ToolEvent(
                            name=delta.tool_call.name,
                            args=delta.tool_call.arguments,
                            status="calling",
                            call_id=delta.tool_call.id,
                        )
                    )
                elif delta.kind == "tool_result":
                    call = delta.tool_call
                    gate.send(
                        ToolEvent(
                            name=call.name if call else "unknown",
                            args=call.arguments if call else {},
                            status="error" if delta.error else "result",
                            call_id=call.id if call else None,
                            result=delta.result,
                            error=delta.error,
                        )
                    )
                elif delta.kind == "error":
                    raise BackendError(delta.error or "Backend reported an error")
                elif delta.kind == "finish":
                    return "".join(text_parts), tool_calls, delta
        finally:
            close = getattr(deltas, "close", None)
            if close is not None:
                close()

        if token.cancelled:
            raise _Cancelled()
        raise BackendError("Backend stream ended without a finish event")

    # Single-shot

    def collect(
        self,
        message: str,
        conversation_id: str,
        resolved: ResolvedModel,
        options: ChatOptions | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResult:
        """Run the same turn without a push stream and return the final payload."""
        outcome = self.stream(
            message, conversation_id, resolved, emit=lambda event: None, token=token, options=options
        )
        if outcome.status == "error" and outcome.error is not None:
            raise outcome.error
        if outcome.end is None:
            raise BackendError("Chat request was cancelled")
        return ChatResult(
            content=outcome.end.full_text,
            usage=outcome.end.usage,
            references=outcome.end.references,
            provider_id=resolved.definition.id,
            model_id=resolved.model_id,
            duration_seconds=outcome.duration_seconds,
        )
