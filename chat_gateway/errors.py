"""Domain-level exceptions for the chat gateway."""

from typing import Any


class GatewayError(Exception):
    """Base class for every error the gateway raises or reports."""

    code = "gateway_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(GatewayError, ValueError):
    """Raised for client-side invalid requests at the domain layer."""

    code = "bad_request"


class ResolutionError(GatewayError):
    """Raised before any session exists; the caller should fix its configuration."""

    code = "resolution_error"


class UnknownProvider(ResolutionError):
    code = "unknown_provider"

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id}")
        self.provider_id = provider_id


class UnsupportedProtocol(ResolutionError):
    code = "unsupported_protocol"

    def __init__(self, protocol: str) -> None:
        super().__init__(f"No adapter registered for protocol: {protocol}")
        self.protocol = protocol


class NoModelAvailable(ResolutionError):
    code = "no_model_available"

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"No model configured for provider: {provider_id}")
        self.provider_id = provider_id


class AccountDisabled(ResolutionError):
    code = "account_disabled"

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Account for provider {provider_id} is disabled")
        self.provider_id = provider_id


class BackendError(GatewayError):
    """Runtime failure reported by (or while reaching) a model backend."""

    code = "backend_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthFailure(BackendError):
    code = "auth_failure"


class RateLimited(BackendError):
    code = "rate_limited"

    def __init__(
        self, message: str, status_code: int | None = 429, retry_after: float | None = None
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class CacheConstructionFailure(BackendError):
    code = "cache_construction_failure"


class SessionNotFound(GatewayError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


_THROTTLING_CODES = {"ThrottlingException", "TooManyRequestsException"}
_ACCESS_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "ExpiredTokenException",
}


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(response, dict):
        # botocore ClientError
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(status, int):
            return status
    return None


def _error_code(exc: BaseException) -> str | None:
    response: Any = getattr(exc, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code")
    return None


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None


def classify_backend_error(exc: BaseException) -> BackendError:
    """Map an SDK/transport exception onto the gateway's runtime taxonomy."""
    if isinstance(exc, BackendError):
        return exc

    status = _status_code(exc)
    error_code = _error_code(exc)
    detail = str(exc) or exc.__class__.__name__

    if status in (401, 403) or error_code in _ACCESS_CODES:
        return AuthFailure(f"Authentication failed: {detail}", status_code=status)
    if status == 429 or error_code in _THROTTLING_CODES:
        return RateLimited(
            f"Rate limited: {detail}", status_code=status, retry_after=_retry_after(exc)
        )
    return BackendError(f"Backend request failed: {detail}", status_code=status)
