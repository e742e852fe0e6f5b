"""Runtime infrastructure helpers for credentials and tracing."""

import logging
import os
from functools import lru_cache
from typing import Any

import boto3
from langsmith.run_trees import get_cached_client

from chat_gateway.constants import (
    AWS_REGION,
    LANGSMITH_API_KEY_PARAMETER_NAME,
    LANGSMITH_PROJECT,
)
from chat_gateway.ports import SecretStore

logger = logging.getLogger(__name__)


class SsmSecretStore:
    """Reads secrets from SSM Parameter Store; a secret ref is a parameter name.

    Values are fetched per call and never cached or logged.
    """

    def __init__(self, ssm_client: Any | None = None, region_name: str = AWS_REGION) -> None:
        self._ssm_client = ssm_client or boto3.client("ssm", region_name=region_name)

    def get_secret(self, ref: str) -> str:
        result = self._ssm_client.get_parameter(Name=ref, WithDecryption=True)
        value = result["Parameter"].get("Value")
        if not value:
            raise RuntimeError(f"SSM parameter {ref} has no value")
        return value


class EnvSecretStore:
    """Resolves a secret ref as the name of an environment variable."""

    def get_secret(self, ref: str) -> str:
        value = os.environ.get(ref)
        if not value:
            raise RuntimeError(f"Environment variable {ref} is not set")
        return value


def _get_optional_secret(secrets: SecretStore, ref: str) -> str | None:
    try:
        return secrets.get_secret(ref)
    except Exception:
        logger.warning(
            "Optional secret is unavailable; disabling dependent feature",
            extra={"secret_ref": ref},
            exc_info=True,
        )
        return None


def _configure_langsmith(langsmith_api_key: str | None) -> None:
    if not langsmith_api_key:
        os.environ.pop("LANGSMITH_TRACING", None)
        os.environ.pop("LANGSMITH_API_KEY", None)
        logger.info("LangSmith tracing disabled because API key is unavailable")
        return

    os.environ["LANGSMITH_TRACING"] = "true"
    os.environ["LANGSMITH_API_KEY"] = langsmith_api_key
    os.environ.setdefault("LANGSMITH_PROJECT", LANGSMITH_PROJECT)


@lru_cache(maxsize=1)
def get_secret_store() -> SecretStore:
    if os.environ.get("CHAT_GATEWAY_SECRET_BACKEND", "ssm").lower() == "env":
        return EnvSecretStore()
    return SsmSecretStore()


@lru_cache(maxsize=1)
def ensure_langsmith_configured() -> None:
    """Configure LangSmith environment variables (called once via lru_cache)."""
    ref = os.environ.get("CHAT_GATEWAY_LANGSMITH_SECRET_REF", LANGSMITH_API_KEY_PARAMETER_NAME)
    _configure_langsmith(_get_optional_secret(get_secret_store(), ref))


def flush_langsmith_traces() -> None:
    if os.environ.get("LANGSMITH_TRACING", "").lower() != "true":
        return
    if not os.environ.get("LANGSMITH_API_KEY"):
        return
    try:
        get_cached_client().flush()
    except Exception:
        logger.warning("Failed to flush LangSmith traces", exc_info=True)
