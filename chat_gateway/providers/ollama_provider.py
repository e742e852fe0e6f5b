"""Ollama adapter: the OpenAI-compatible wire protocol served under ``/v1``."""

from .openai_provider import OpenAICompatibleAdapter


class OllamaAdapter(OpenAICompatibleAdapter):
    protocol = "ollama"
    path_suffix = "/v1"
    # Older Ollama releases reject ``stream_options``.
    include_usage = False
