"""Shared constants and literal types for the chat gateway."""

from typing import Literal

AWS_REGION = "ap-northeast-1"
LANGSMITH_API_KEY_PARAMETER_NAME = "/chat-gateway/langsmith-api-key"
LANGSMITH_PROJECT = "chat-gateway"

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TOP_P = 1.0
DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_RETRY_COUNT = 2

SESSION_IDLE_TIMEOUT_SECONDS = 5 * 60
SESSION_SWEEP_INTERVAL_SECONDS = 60
MODEL_CACHE_TTL_SECONDS = 5 * 60
MODEL_CACHE_MAX_SIZE = 32
MODEL_CACHE_SWEEP_INTERVAL_SECONDS = 60
HISTORY_WINDOW = 10
MAX_TOOL_STEPS = 5
MODEL_LIST_TTL_SECONDS = 60 * 60

ANTHROPIC_VERSION = "2023-06-01"
OPENAI_PLACEHOLDER_API_KEY = "sk-no-key-required"

DEFAULT_SYSTEM_PROMPT = (
    "You are a GitHub repository assistant that helps users find and understand "
    "high-quality open-source projects.\n\n"
    "Use the repository information provided to answer questions and make suggestions. "
    "Mention relevant repositories in your answer when there are any."
)
REFERENCE_CLOSING_INSTRUCTION = "Cite the repositories above where appropriate."

ProtocolFamily = Literal["openai-compatible", "anthropic", "ollama", "bedrock"]
AuthScheme = Literal["none", "api-key-header", "bearer-header"]
SessionStatus = Literal["active", "completed", "error", "aborted"]
ToolStatus = Literal["calling", "result", "error"]

TERMINAL_SESSION_STATUSES: frozenset[SessionStatus] = frozenset(
    {"completed", "error", "aborted"}
)
