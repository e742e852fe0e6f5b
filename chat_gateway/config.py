"""Gateway-level settings with environment overrides."""

import logging
import os
from dataclasses import dataclass

from .constants import (
    HISTORY_WINDOW,
    MAX_TOOL_STEPS,
    MODEL_CACHE_MAX_SIZE,
    MODEL_CACHE_SWEEP_INTERVAL_SECONDS,
    MODEL_CACHE_TTL_SECONDS,
    MODEL_LIST_TTL_SECONDS,
    SESSION_IDLE_TIMEOUT_SECONDS,
    SESSION_SWEEP_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_GATEWAY_"


@dataclass(frozen=True)
class GatewaySettings:
    """Timers and limits owned by the gateway.

    The session idle timeout, the cache TTL and the per-account request
    timeout (``AccountConfig.timeout_ms``) are independent of each other.
    """

    session_idle_timeout_seconds: float = SESSION_IDLE_TIMEOUT_SECONDS
    session_sweep_interval_seconds: float = SESSION_SWEEP_INTERVAL_SECONDS
    model_cache_ttl_seconds: float = MODEL_CACHE_TTL_SECONDS
    model_cache_max_size: int = MODEL_CACHE_MAX_SIZE
    model_cache_sweep_interval_seconds: float | None = MODEL_CACHE_SWEEP_INTERVAL_SECONDS
    history_window: int = HISTORY_WINDOW
    max_tool_steps: int = MAX_TOOL_STEPS
    model_list_ttl_seconds: float = MODEL_LIST_TTL_SECONDS

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        defaults = cls()
        cache_sweep = _read_float(
            "MODEL_CACHE_SWEEP_INTERVAL_SECONDS", defaults.model_cache_sweep_interval_seconds
        )
        return cls(
            session_idle_timeout_seconds=_read_float(
                "SESSION_IDLE_TIMEOUT_SECONDS", defaults.session_idle_timeout_seconds
            ),
            session_sweep_interval_seconds=_read_float(
                "SESSION_SWEEP_INTERVAL_SECONDS", defaults.session_sweep_interval_seconds
            ),
            model_cache_ttl_seconds=_read_float(
                "MODEL_CACHE_TTL_SECONDS", defaults.model_cache_ttl_seconds
            ),
            model_cache_max_size=int(
                _read_float("MODEL_CACHE_MAX_SIZE", defaults.model_cache_max_size)
            ),
            # 0 disables the background cache sweep; expiry is still checked on read.
            model_cache_sweep_interval_seconds=cache_sweep or None,
            history_window=int(_read_float("HISTORY_WINDOW", defaults.history_window)),
            max_tool_steps=int(_read_float("MAX_TOOL_STEPS", defaults.max_tool_steps)),
            model_list_ttl_seconds=_read_float(
                "MODEL_LIST_TTL_SECONDS", defaults.model_list_ttl_seconds
            ),
        )


def _read_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Ignoring invalid gateway setting",
            extra={"setting": ENV_PREFIX + name, "value": raw},
        )
        return default
