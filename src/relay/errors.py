from enum import Enum


class ErrorCode(str, Enum):
    INVALID_API_KEY = "invalid_api_key"
    OUT_OF_QUOTA = "out_of_quota"
    MODEL_NOT_ALLOWED = "model_not_allowed"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"
    INVALID_REQUEST = "invalid_request"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    INTERNAL_ERROR = "internal_error"


class ConfigError(ValueError):
    """Raised when the provider or access configuration is invalid."""


class ProviderNotConfigured(LookupError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"provider '{provider}' is not configured")
        self.provider = provider


class UpstreamRejected(Exception):
    """The upstream answered with a non-2xx status before any byte was streamed."""

    def __init__(self, status_code: int, body: bytes, content_type: str | None = None) -> None:
        super().__init__(f"upstream rejected the request with status {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type or "application/json"


class UpstreamStreamError(Exception):
    """The upstream failed after streaming began."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str = "provider_server_error",
        code: str = "upstream_stream_error",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.code = code
