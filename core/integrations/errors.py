"""Exception taxonomy for connectors.

Every error carries a short ``code`` and a ``retryable`` flag so the sync
orchestrator and webhook gateway can turn it into a structured result.
"""

from __future__ import annotations

from typing import Iterable


class ConnectorError(Exception):
    """Base exception for connector errors."""

    code = "internal"
    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


# --- Configuration ---

class ConfigurationError(ConnectorError):
    """Raised when a connector or its environment is misconfigured."""

    code = "config"


class UnsupportedProviderError(ConfigurationError):
    """Raised when no connector is registered for a provider slug."""

    def __init__(self, provider: str, supported: Iterable[str] = ()):
        self.provider = provider
        self.supported = tuple(sorted(supported))
        super().__init__(f"Unsupported provider: {provider}")


class InvalidDefinitionError(ConfigurationError):
    """Raised when a connector definition fails validation."""

    def __init__(self, connector_id: str, problems: list[str]):
        self.connector_id = connector_id
        self.problems = list(problems)
        super().__init__(f"Invalid connector definition {connector_id!r}: " + "; ".join(problems))


# --- Authentication ---

class AuthenticationError(ConnectorError):
    """Raised when authentication fails."""

    code = "auth"


class CredentialsInvalidError(AuthenticationError):
    """Raised when credentials can no longer be refreshed and need re-authorization."""


# --- Provider transport ---

class ProviderError(ConnectorError):
    """Raised when a provider call fails."""

    code = "provider"


class ProviderHTTPError(ProviderError):
    """Raised for a non-success HTTP status from a provider."""

    def __init__(self, status_code: int, message: str, retry_after: float | None = None):
        self.status_code = status_code
        self.retry_after = retry_after
        if status_code == 429:
            self.code = "rate_limited"
        elif status_code >= 500:
            self.code = "server_error"
        super().__init__(message, retryable=status_code == 429 or status_code >= 500)

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call times out."""

    code = "timeout"
    retryable = True


class ProviderNetworkError(ProviderError):
    """Raised when a provider cannot be reached."""

    code = "network"
    retryable = True


# --- Data ---

class TransformError(ConnectorError):
    """Raised when a record cannot be mapped onto a normalized entity."""

    code = "transform"

    def __init__(self, message: str, field: str | None = None, record_id: str | None = None):
        self.field = field
        self.record_id = record_id
        super().__init__(message)
