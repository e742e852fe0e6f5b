import unittest
from contextlib import ExitStack
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient

import app as app_module
from chat_gateway.errors import AuthFailure, RateLimited, UnknownProvider
from chat_gateway.provider_registry import get_provider_options
from chat_gateway.schemas import (
    ChatResult,
    ConnectionTestResult,
    EndEvent,
    GatewayStats,
    ModelCacheStats,
    ModelListResponse,
    ModelOptionSchema,
    TextEvent,
    Usage,
)

CHAT_BODY = {
    "message": "hi",
    "conversationId": "conv-1",
    "account": {"providerId": "openai", "apiKeySecretRef": "openai-key"},
}


class ApiContractTests(unittest.TestCase):
    def setUp(self) -> None:
        app_module.get_chat_gateway.cache_clear()
        self.gateway = Mock()
        self._stack = ExitStack()
        self._stack.enter_context(
            patch.object(app_module, "ensure_langsmith_configured", return_value=None)
        )
        self.flush_mock = self._stack.enter_context(
            patch.object(app_module, "flush_langsmith_traces", return_value=None)
        )
        self._stack.enter_context(
            patch.object(app_module, "get_chat_gateway", return_value=self.gateway)
        )
        self.addCleanup(self._stack.close)

    def test_health_endpoint(self) -> None:
        with TestClient(app_module.app) as client:
            response = client.get("/api/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_providers_endpoint_returns_catalog_fields(self) -> None:
        self.gateway.get_provider_options.return_value = get_provider_options()

        with TestClient(app_module.app) as client:
            response = client.get("/api/providers")

        self.assertEqual(response.status_code, 200)
        payload = {provider["id"]: provider for provider in response.json()}
        self.assertEqual(payload["ollama"]["protocolFamily"], "ollama")
        self.assertEqual(payload["ollama"]["authScheme"], "none")
        self.assertEqual(payload["anthropic"]["authHeaderName"], "x-api-key")
        self.assertIn("displayName", payload["openai"]["models"][0])
        self.assertIn("defaultBaseUrl", payload["bedrock"])

    def test_models_endpoint_returns_listing(self) -> None:
        self.gateway.list_models.return_value = ModelListResponse(
            provider_id="openai",
            models=[ModelOptionSchema(id="gpt-4o", display_name="gpt-4o")],
            fetched_at=1700000000.0,
            ttl_seconds=3600.0,
        )

        with TestClient(app_module.app) as client:
            response = client.post(
                "/api/providers/models",
                json={"account": CHAT_BODY["account"], "forceRefresh": True},
            )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["providerId"], "openai")
        self.assertEqual(payload["models"], [{"id": "gpt-4o", "displayName": "gpt-4o"}])
        self.assertEqual(payload["ttlSeconds"], 3600.0)
        args, kwargs = self.gateway.list_models.call_args
        self.assertEqual(args[0].provider_id, "openai")
        self.assertTrue(kwargs["force_refresh"])

    def test_models_endpoint_maps_auth_failure(self) -> None:
        self.gateway.list_models.side_effect = AuthFailure("Authentication failed: bad key", 401)

        with TestClient(app_module.app) as client:
            response = client.post("/api/providers/models", json={"account": CHAT_BODY["account"]})

        self.assertEqual(response.status_code, 401)

    def test_connection_test_endpoint_returns_result_body(self) -> None:
        self.gateway.test_connection.return_value = ConnectionTestResult(
            provider_id="anthropic",
            success=False,
            message="Authentication failed: invalid x-api-key",
            latency_ms=12.5,
            error_code="auth_failure",
        )

        with TestClient(app_module.app) as client:
            response = client.post(
                "/api/providers/test",
                json={"providerId": "anthropic", "apiKeySecretRef": "anthropic-key"},
            )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["errorCode"], "auth_failure")
        self.assertEqual(payload["latencyMs"], 12.5)
        self.assertEqual(self.gateway.test_connection.call_args.args[0].provider_id, "anthropic")

    def test_stats_endpoint(self) -> None:
        self.gateway.stats.return_value = GatewayStats(
            active_sessions=2,
            provider_count=6,
            model_cache=ModelCacheStats(
                size=1, total_access=4, expired_count=0, max_size=32, ttl_seconds=300
            ),
            model_list_cache_size=1,
        )

        with TestClient(app_module.app) as client:
            response = client.get("/api/stats")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["activeSessions"], 2)
        self.assertEqual(payload["modelCache"]["totalAccess"], 4)
        self.assertEqual(payload["modelCache"]["maxSize"], 32)
        self.assertEqual(payload["modelListCacheSize"], 1)

    def test_chat_endpoint_success_response_shape(self) -> None:
        self.gateway.chat.return_value = ChatResult(
            content="hello",
            usage=Usage(prompt_tokens=10, completion_tokens=20),
            references=[],
            provider_id="openai",
            model_id="gpt-4o-mini",
            duration_seconds=0.35,
        )

        with TestClient(app_module.app) as client:
            response = client.post("/api/chat", json={**CHAT_BODY, "modelId": "gpt-4o-mini"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["content"], "hello")
        self.assertEqual(payload["providerId"], "openai")
        self.assertEqual(payload["modelId"], "gpt-4o-mini")
        self.assertEqual(payload["usage"]["totalTokens"], 30)
        self.assertEqual(payload["durationSeconds"], 0.35)
        self.assertEqual(self.flush_mock.call_count, 1)

        args, kwargs = self.gateway.chat.call_args
        self.assertEqual(args[:2], ("hi", "conv-1"))
        self.assertEqual(args[2].api_key_secret_ref, "openai-key")
        self.assertEqual(kwargs["model_id"], "gpt-4o-mini")

    def test_chat_endpoint_empty_message_returns_422(self) -> None:
        with TestClient(app_module.app) as client:
            response = client.post("/api/chat", json={**CHAT_BODY, "message": "   "})

        self.assertEqual(response.status_code, 422)
        self.gateway.chat.assert_not_called()

    def test_chat_endpoint_maps_gateway_errors(self) -> None:
        cases = [
            (UnknownProvider("p999"), 400),
            (AuthFailure("Authentication failed: bad key", status_code=401), 401),
            (RateLimited("Rate limited: slow down"), 429),
            (RuntimeError("provider down"), 502),
        ]
        for error, status_code in cases:
            with self.subTest(error=type(error).__name__):
                self.gateway.chat.side_effect = error
                with TestClient(app_module.app) as client:
                    response = client.post("/api/chat", json=CHAT_BODY)

                self.assertEqual(response.status_code, status_code)
                self.assertEqual(response.json()["detail"], str(error))

    def test_stream_endpoint_emits_server_sent_events(self) -> None:
        def stream_chat(message, conversation_id, account, on_event, **kwargs):
            on_event(TextEvent(delta="Hel"))
            on_event(TextEvent(delta="lo"))
            on_event(EndEvent(full_text="Hello"))
            return "session-1"

        self.gateway.stream_chat.side_effect = stream_chat

        with TestClient(app_module.app) as client:
            response = client.post("/api/chat/stream", json=CHAT_BODY)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["x-session-id"], "session-1")
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        blocks = [block for block in response.text.split("\n\n") if block]
        self.assertEqual(
            [block.splitlines()[0] for block in blocks],
            ["event: text", "event: text", "event: end"],
        )
        self.assertIn('"fullText":"Hello"', blocks[-1])
        self.gateway.abort.assert_called_once_with("session-1")
        self.assertEqual(self.flush_mock.call_count, 1)

    def test_stream_endpoint_resolution_error_maps_to_400(self) -> None:
        self.gateway.stream_chat.side_effect = UnknownProvider("p999")

        with TestClient(app_module.app) as client:
            response = client.post(
                "/api/chat/stream", json={**CHAT_BODY, "account": {"providerId": "p999"}}
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Unknown provider: p999")

    def test_abort_endpoint(self) -> None:
        self.gateway.abort.return_value = False

        with TestClient(app_module.app) as client:
            response = client.delete("/api/chat/sessions/session-9")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"sessionId": "session-9", "aborted": False})
        self.gateway.abort.assert_called_once_with("session-9")


if __name__ == "__main__":
    unittest.main()
