"""Application service: the gateway's inbound interface."""

import logging
import threading
import time
from collections.abc import Callable

from chat_gateway.config import GatewaySettings
from chat_gateway.errors import GatewayError, classify_backend_error
from chat_gateway.infra.history import InMemoryHistoryStore
from chat_gateway.infra.periodic import PeriodicTask
from chat_gateway.orchestration.base import EventCallback, ResolvedModel
from chat_gateway.orchestration.chat_orchestrator import ChatOrchestrator
from chat_gateway.orchestration.tools import ToolRegistry
from chat_gateway.ports import HistoryStore, RetrievalClient, SecretStore
from chat_gateway.provider_registry import ModelOption, ProviderDefinition
from chat_gateway.providers.registry import AdapterRegistry
from chat_gateway.schemas import (
    TERMINAL_EVENT_TYPES,
    AccountConfig,
    ChatOptions,
    ChatResult,
    ConnectionTestResult,
    GatewayStats,
    ModelCacheStats,
    ModelListResponse,
    ModelOptionSchema,
    StreamEvent,
)
from chat_gateway.services.model_cache import ModelInstanceCache
from chat_gateway.services.session_manager import CancellationToken, Session, SessionManager

logger = logging.getLogger(__name__)

KEYED_AUTH_SCHEMES = frozenset({"api-key-header", "bearer-header"})


class ChatGateway:
    """Owns the registry, cache, sessions and background sweeps of one gateway.

    Construct once, ``start()`` it, and ``shutdown()`` on exit (or use it as
    a context manager).
    """

    def __init__(
        self,
        secrets: SecretStore,
        history_store: HistoryStore | None = None,
        retrieval: RetrievalClient | None = None,
        adapter_registry: AdapterRegistry | None = None,
        settings: GatewaySettings | None = None,
        tools: ToolRegistry | None = None,
        model_cache: ModelInstanceCache | None = None,
        session_manager: SessionManager | None = None,
    ) -> None:
        self.settings = settings or GatewaySettings()
        self.adapter_registry = adapter_registry or AdapterRegistry()
        self.model_cache = model_cache or ModelInstanceCache(
            ttl_seconds=self.settings.model_cache_ttl_seconds,
            max_size=self.settings.model_cache_max_size,
        )
        self.sessions = session_manager or SessionManager(
            idle_timeout_seconds=self.settings.session_idle_timeout_seconds
        )
        self.orchestrator = ChatOrchestrator(
            adapter_registry=self.adapter_registry,
            model_cache=self.model_cache,
            secrets=secrets,
            history_store=history_store or InMemoryHistoryStore(),
            retrieval=retrieval,
            tools=tools,
            history_window=self.settings.history_window,
            max_tool_steps=self.settings.max_tool_steps,
        )
        self._secrets = secrets
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()
        self._model_lists: dict[str, tuple[float, list[ModelOption]]] = {}
        self._model_lists_lock = threading.Lock()
        self._tasks = [
            PeriodicTask(
                "session-sweep", self.settings.session_sweep_interval_seconds, self.sessions.sweep
            )
        ]
        if self.settings.model_cache_sweep_interval_seconds:
            self._tasks.append(
                PeriodicTask(
                    "model-cache-sweep",
                    self.settings.model_cache_sweep_interval_seconds,
                    self.model_cache.sweep,
                )
            )

    def start(self) -> "ChatGateway":
        for task in self._tasks:
            task.start()
        return self

    def shutdown(self, wait: bool = True) -> None:
        for task in self._tasks:
            task.stop()
        aborted = self.sessions.cancel_all()
        if wait:
            with self._threads_lock:
                threads = list(self._threads.values())
            for thread in threads:
                thread.join()
        self.model_cache.clear(close_handles=True)
        logger.info("Chat gateway stopped", extra={"aborted_sessions": aborted})

    def __enter__(self) -> "ChatGateway":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # Inbound interface

    def chat(
        self,
        message: str,
        conversation_id: str,
        account: AccountConfig,
        model_id: str | None = None,
        options: ChatOptions | None = None,
    ) -> ChatResult:
        logger.info(
            "Chat request received",
            extra={"provider_id": account.provider_id, "conversation_id": conversation_id},
        )
        resolved = self.orchestrator.resolve(account, model_id)
        return self.orchestrator.collect(message, conversation_id, resolved, options=options)

    def stream_chat(
        self,
        message: str,
        conversation_id: str,
        account: AccountConfig,
        on_event: EventCallback,
        model_id: str | None = None,
        options: ChatOptions | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> str:
        """Start a streaming turn and return its session id immediately.

        Resolution errors raise here, before any session exists. Each session
        runs on its own daemon thread and delivers events to ``on_event`` in
        order, so a slow backend never holds up another session.
        """
        resolved = self.orchestrator.resolve(account, model_id)
        session = self.sessions.create(conversation_id, token=cancellation_token)
        logger.info(
            "Stream chat started",
            extra={
                "session_id": session.id,
                "conversation_id": conversation_id,
                "provider_id": resolved.definition.id,
                "model": resolved.model_id,
            },
        )
        thread = threading.Thread(
            target=self._run_session,
            args=(session, message, conversation_id, resolved, on_event, options),
            name=f"chat-stream-{session.id[:8]}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads[session.id] = thread
        try:
            thread.start()
        except RuntimeError:
            with self._threads_lock:
                self._threads.pop(session.id, None)
            self.sessions.finish(session.id, "error")
            raise
        return session.id

    def _run_session(
        self,
        session: Session,
        message: str,
        conversation_id: str,
        resolved: ResolvedModel,
        on_event: EventCallback,
        options: ChatOptions | None,
    ) -> None:
        session_id = session.id
        deliver = self._delivery(session_id, on_event)
        try:
            outcome = self.orchestrator.stream(
                message,
                conversation_id,
                resolved,
                deliver,
                token=session.token,
                options=options,
            )
            # No-op when abort() or the terminal event already retired the session.
            self.sessions.finish(session_id, outcome.status)
        except Exception:
            logger.exception("Stream session crashed", extra={"session_id": session_id})
            self.sessions.finish(session_id, "error")
        finally:
            with self._threads_lock:
                self._threads.pop(session_id, None)

    def _delivery(self, session_id: str, on_event: EventCallback) -> Callable[[StreamEvent], None]:
        def deliver(event: StreamEvent) -> None:
            if event.type in TERMINAL_EVENT_TYPES:
                # Retire first so the session is already terminal when the caller sees it.
                self.sessions.finish(session_id, "completed" if event.type == "end" else "error")
            else:
                self.sessions.touch(session_id)
            try:
                on_event(event)
            except Exception:
                logger.exception(
                    "Stream event callback failed",
                    extra={"session_id": session_id, "event_type": event.type},
                )

        return deliver

    def abort(self, session_id: str) -> bool:
        """Cancel a session. False when it is unknown or already terminal."""
        return self.sessions.cancel(session_id)

    def has_session(self, session_id: str) -> bool:
        return self.sessions.is_active(session_id)

    def get_provider_options(self) -> list[ProviderDefinition]:
        return self.adapter_registry.list_definitions()

    def invalidate_account(self, account: AccountConfig, model_id: str | None = None) -> int:
        """Drop cached handles for an account, e.g. after its key or URL changed."""
        definition = self.adapter_registry.resolve_definition(account.provider_id)
        adapter = self.adapter_registry.resolve_adapter(account)
        base_url = adapter.resolve_base_url(definition, account)
        if model_id:
            key = ModelInstanceCache.make_key(definition.id, model_id.strip(), base_url)
            return int(self.model_cache.invalidate(key))
        removed = self.model_cache.invalidate_prefix(f"{definition.id}:")
        with self._model_lists_lock:
            for key in [key for key in self._model_lists if key.startswith(f"{definition.id}:")]:
                del self._model_lists[key]
        logger.info(
            "Model cache invalidated for account",
            extra={"provider_id": definition.id, "removed": removed},
        )
        return removed

    # Provider discovery

    def list_models(self, account: AccountConfig, force_refresh: bool = False) -> ModelListResponse:
        """Models the account's backend offers, cached per account for the list TTL."""
        definition = self.adapter_registry.resolve_definition(account.provider_id)
        adapter = self.adapter_registry.resolve_adapter(account)
        base_url = adapter.resolve_base_url(definition, account)
        key = f"{definition.id}:{base_url}:{account.api_key_secret_ref or ''}"
        ttl = self.settings.model_list_ttl_seconds
        now = time.time()

        with self._model_lists_lock:
            cached = self._model_lists.get(key)
        if cached is not None and not force_refresh and now - cached[0] < ttl:
            fetched_at, models = cached
        else:
            try:
                models = adapter.list_models(definition, account, self._secrets)
            except Exception as e:
                raise classify_backend_error(e) from e
            fetched_at = now
            with self._model_lists_lock:
                self._model_lists[key] = (fetched_at, models)
            logger.info(
                "Model list fetched",
                extra={"provider_id": definition.id, "model_count": len(models)},
            )

        return ModelListResponse(
            provider_id=definition.id,
            models=[
                ModelOptionSchema(id=model.id, display_name=model.display_name) for model in models
            ],
            fetched_at=fetched_at,
            ttl_seconds=max(0.0, round(ttl - (now - fetched_at), 2)),
        )

    def test_connection(self, account: AccountConfig) -> ConnectionTestResult:
        """Check that the account reaches its backend. Never raises for backend failures."""
        try:
            definition = self.adapter_registry.resolve_definition(account.provider_id)
            adapter = self.adapter_registry.resolve_adapter(account)
        except GatewayError as e:
            return ConnectionTestResult(
                provider_id=account.provider_id, success=False, message=str(e), error_code=e.code
            )
        if definition.auth_scheme in KEYED_AUTH_SCHEMES and not account.api_key_secret_ref:
            return ConnectionTestResult(
                provider_id=definition.id,
                success=False,
                message=f"{definition.name} requires an API key",
                error_code="auth_failure",
            )

        start = time.time()
        try:
            model_count = adapter.test_connection(definition, account, self._secrets)
        except Exception as e:
            error = classify_backend_error(e)
            logger.warning(
                "Provider connection test failed",
                extra={"provider_id": definition.id, "error_code": error.code},
            )
            return ConnectionTestResult(
                provider_id=definition.id,
                success=False,
                message=str(error),
                latency_ms=round((time.time() - start) * 1000, 1),
                error_code=error.code,
            )
        latency_ms = round((time.time() - start) * 1000, 1)
        logger.info(
            "Provider connection test succeeded",
            extra={"provider_id": definition.id, "latency_ms": latency_ms},
        )
        return ConnectionTestResult(
            provider_id=definition.id,
            success=True,
            message="Connection succeeded",
            model_count=model_count,
            latency_ms=latency_ms,
        )

    def stats(self) -> GatewayStats:
        with self._model_lists_lock:
            model_list_cache_size = len(self._model_lists)
        return GatewayStats(
            active_sessions=self.sessions.active_count(),
            provider_count=len(self.adapter_registry.list_definitions()),
            model_cache=ModelCacheStats(**self.model_cache.stats()),
            model_list_cache_size=model_list_cache_size,
        )
