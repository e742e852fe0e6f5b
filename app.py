"""Chat gateway API using FastAPI + Mangum for AWS Lambda."""

import logging
import queue
from collections.abc import Iterator
from functools import lru_cache

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from mangum import Mangum

from chat_gateway.config import GatewaySettings
from chat_gateway.errors import (
    AuthFailure,
    BadRequestError,
    GatewayError,
    RateLimited,
    ResolutionError,
)
from chat_gateway.infra.runtime import (
    ensure_langsmith_configured,
    flush_langsmith_traces,
    get_secret_store,
)
from chat_gateway.provider_registry import ProviderDefinition
from chat_gateway.schemas import (
    TERMINAL_EVENT_TYPES,
    AbortResponse,
    AccountConfig,
    ChatRequest,
    ChatResult,
    ConnectionTestResult,
    GatewayStats,
    ModelListRequest,
    ModelListResponse,
    ModelOptionSchema,
    ProviderOption,
    StreamEvent,
)
from chat_gateway.services.chat_service import ChatGateway

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

app = FastAPI()
router = APIRouter(prefix="/api")

STREAM_POLL_SECONDS = 1.0


@lru_cache(maxsize=1)
def get_chat_gateway() -> ChatGateway:
    return ChatGateway(secrets=get_secret_store(), settings=GatewaySettings.from_env()).start()


def _to_http_exception(e: Exception) -> HTTPException:
    if isinstance(e, (ResolutionError, BadRequestError)):
        logger.warning("Chat request rejected", extra={"error_code": e.code})
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, AuthFailure):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, RateLimited):
        return HTTPException(status_code=429, detail=str(e))
    if not isinstance(e, GatewayError):
        logger.exception("Chat request failed")
    return HTTPException(status_code=502, detail=str(e))


def _provider_option(definition: ProviderDefinition) -> ProviderOption:
    return ProviderOption(
        id=definition.id,
        name=definition.name,
        protocol_family=definition.protocol_family,
        default_base_url=definition.default_base_url,
        auth_scheme=definition.auth_scheme,
        auth_header_name=definition.auth_header_name,
        models=[
            ModelOptionSchema(id=model.id, display_name=model.display_name)
            for model in definition.models
        ],
    )


def _format_sse(event: StreamEvent) -> str:
    return f"event: {event.type}\ndata: {event.model_dump_json(by_alias=True)}\n\n"


def _stream_events(
    gateway: ChatGateway, session_id: str, events: "queue.Queue[StreamEvent]"
) -> Iterator[str]:
    try:
        while True:
            try:
                event = events.get(timeout=STREAM_POLL_SECONDS)
            except queue.Empty:
                if gateway.has_session(session_id):
                    continue
                # Retired: a terminal event may still be in flight, aborted sessions send none.
                try:
                    event = events.get(timeout=STREAM_POLL_SECONDS)
                except queue.Empty:
                    return
            yield _format_sse(event)
            if event.type in TERMINAL_EVENT_TYPES:
                return
    finally:
        # Client went away before the terminal event; no-op otherwise.
        gateway.abort(session_id)
        flush_langsmith_traces()


@router.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/providers", response_model=list[ProviderOption])
def list_providers() -> list[ProviderOption]:
    """Known providers and their models, for account configuration UIs."""
    return [_provider_option(definition) for definition in get_chat_gateway().get_provider_options()]


@router.post("/providers/models", response_model=ModelListResponse)
def list_models(request: ModelListRequest) -> ModelListResponse:
    """Models reported by the account's backend, cached unless ``forceRefresh`` is set."""
    try:
        return get_chat_gateway().list_models(request.account, force_refresh=request.force_refresh)
    except Exception as e:
        raise _to_http_exception(e) from e


@router.post("/providers/test", response_model=ConnectionTestResult)
def test_provider_connection(account: AccountConfig) -> ConnectionTestResult:
    return get_chat_gateway().test_connection(account)


@router.get("/stats", response_model=GatewayStats)
def stats() -> GatewayStats:
    return get_chat_gateway().stats()


@router.post("/chat", response_model=ChatResult)
def chat(request: ChatRequest) -> ChatResult:
    """Run one chat turn and return the complete answer."""
    ensure_langsmith_configured()
    try:
        return get_chat_gateway().chat(
            request.message,
            request.conversation_id,
            request.account,
            model_id=request.model_id,
            options=request.options,
        )
    except Exception as e:
        raise _to_http_exception(e) from e
    finally:
        flush_langsmith_traces()


@router.post("/chat/stream")
def stream_chat(request: ChatRequest) -> StreamingResponse:
    """Open a streaming session; events are sent as server-sent events."""
    ensure_langsmith_configured()
    gateway = get_chat_gateway()
    events: "queue.Queue[StreamEvent]" = queue.Queue()
    try:
        session_id = gateway.stream_chat(
            request.message,
            request.conversation_id,
            request.account,
            on_event=events.put,
            model_id=request.model_id,
            options=request.options,
        )
    except Exception as e:
        flush_langsmith_traces()
        raise _to_http_exception(e) from e

    return StreamingResponse(
        _stream_events(gateway, session_id, events),
        media_type="text/event-stream",
        headers={"X-Session-Id": session_id, "Cache-Control": "no-cache"},
    )


@router.delete("/chat/sessions/{session_id}", response_model=AbortResponse)
def abort_session(session_id: str) -> AbortResponse:
    """Cancel a streaming session; ``aborted`` is false if it already ended."""
    aborted = get_chat_gateway().abort(session_id)
    logger.info("Abort requested", extra={"session_id": session_id, "aborted": aborted})
    return AbortResponse(session_id=session_id, aborted=aborted)


app.include_router(router)


handler = Mangum(app)
