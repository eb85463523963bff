"""
SyncHub Credential Lifecycle Manager.

Owns every connector credential set, keyed by (workspace, connector):
- Auth header construction per AuthType (OAuth2, bearer, API key, basic, custom)
- OAuth2 authorization URL with single-use CSRF state
- Authorization code exchange
- Expiry tracking (refresh 60s before expiry) and refresh-token exchange
- Single in-flight refresh per credential set
- Credential states: valid -> expiring -> refreshing -> valid | invalid
- Revocation, scope checks, masking for logs
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
from urllib.parse import quote, urlencode
import asyncio
import base64
import logging
import secrets
import time

import httpx

from core.integrations.errors import (
    AuthenticationError,
    ConfigurationError,
    CredentialsInvalidError,
    ProviderError,
    ProviderHTTPError,
    ProviderNetworkError,
    ProviderTimeoutError,
)
from core.integrations.state_store import ConnectorStateStore
from core.integrations.types import AuthType, ConnectorDefinition, ConnectorState, OAuth2Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Credential states
# ---------------------------------------------------------------------------

class CredentialState(str, Enum):
    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    INVALID = "invalid"


# Allowed transitions: {current_state: [allowed_next_states]}
_CREDENTIAL_TRANSITIONS: dict[CredentialState, list[CredentialState]] = {
    CredentialState.VALID: [CredentialState.EXPIRING, CredentialState.REFRESHING, CredentialState.INVALID],
    CredentialState.EXPIRING: [CredentialState.REFRESHING, CredentialState.INVALID],
    CredentialState.REFRESHING: [CredentialState.VALID, CredentialState.EXPIRING, CredentialState.INVALID],
    CredentialState.INVALID: [CredentialState.VALID],  # only new credentials leave invalid
}


def can_transition(current: CredentialState, target: CredentialState) -> bool:
    return target == current or target in _CREDENTIAL_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------

@dataclass
class OAuthToken:
    """OAuth2 token as stored inside ConnectorState.credentials."""
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    issued_at: float = 0.0
    scopes: list[str] = field(default_factory=list)

    @property
    def expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    def is_expiring(self, now: float, buffer_seconds: float = 60) -> bool:
        if self.expires_in is None:
            return False
        return now >= self.issued_at + (self.expires_in - buffer_seconds)

    def to_credentials(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "issued_at": self.issued_at,
            "scope": " ".join(self.scopes),
        }
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expires_in is not None:
            data["expires_in"] = self.expires_in
        return data

    @classmethod
    def from_credentials(cls, credentials: dict[str, Any]) -> OAuthToken | None:
        if not credentials.get("access_token"):
            return None
        expires_in = credentials.get("expires_in")
        return cls(
            access_token=credentials["access_token"],
            refresh_token=credentials.get("refresh_token"),
            token_type=credentials.get("token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
            issued_at=float(credentials.get("issued_at") or 0.0),
            scopes=_split_scopes(credentials.get("scope")),
        )

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        issued_at: float,
        previous: OAuthToken | None = None,
    ) -> OAuthToken:
        expires_in = data.get("expires_in")
        scopes = _split_scopes(data.get("scope"))
        return cls(
            access_token=data["access_token"],
            # Providers may omit the refresh token on refresh: keep the old one
            refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
            issued_at=issued_at,
            scopes=scopes or (previous.scopes if previous else []),
        )


def _split_scopes(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [s for s in value.replace(",", " ").split() if s]
    return [str(s) for s in value]


_SECRET_MARKERS = ("key", "secret", "token", "password")


def mask_credentials(credentials: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``credentials`` safe to log."""
    masked: dict[str, Any] = {}
    for key, value in credentials.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS) and isinstance(value, str):
            masked[key] = f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "***"
        else:
            masked[key] = value
    return masked


# ---------------------------------------------------------------------------
# AuthManager
# ---------------------------------------------------------------------------

class AuthManager:
    """Credential lifecycle for every (workspace, connector) pair."""

    def __init__(
        self,
        store: ConnectorStateStore,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        buffer_seconds: float = 60,
        timeout: float = 15.0,
    ):
        self.store = store
        self.client = client
        self.clock = clock
        self.buffer_seconds = buffer_seconds
        self.timeout = timeout
        self._states: dict[tuple[str, str], CredentialState] = {}
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}
        self._oauth_states: dict[str, dict[str, str]] = {}  # CSRF state tracking
        self.refresh_count = 0

    # --- State machine ---

    def status(self, state: ConnectorState) -> CredentialState:
        if state.credentials.get("status") == CredentialState.INVALID.value:
            return CredentialState.INVALID
        current = self._states.get(state.key, CredentialState.VALID)
        if current in (CredentialState.INVALID, CredentialState.REFRESHING):
            return current
        token = OAuthToken.from_credentials(state.credentials)
        if token and token.is_expiring(self.clock(), self.buffer_seconds):
            return CredentialState.EXPIRING
        return CredentialState.VALID

    def _transition(self, state: ConnectorState, target: CredentialState) -> None:
        current = self._states.get(state.key, CredentialState.VALID)
        if not can_transition(current, target):
            raise ValueError(f"Invalid credential transition: {current.value} -> {target.value}")
        self._states[state.key] = target

    def is_invalid(self, state: ConnectorState) -> bool:
        return self.status(state) == CredentialState.INVALID

    async def mark_invalid(self, state: ConnectorState, reason: str) -> None:
        """Move credentials to invalid. Syncs stop until new credentials arrive."""
        self._states[state.key] = CredentialState.INVALID
        if state.credentials.get("status") != CredentialState.INVALID.value:
            await self.store.save_credentials(
                state, {**state.credentials, "status": CredentialState.INVALID.value}
            )
        logger.warning(
            "Credentials invalid for %s/%s: %s", state.workspace_id, state.connector_id, reason
        )

    async def set_credentials(self, state: ConnectorState, credentials: dict[str, Any]) -> None:
        """Store fresh credentials (manual entry or re-authorization)."""
        cleaned = {k: v for k, v in credentials.items() if k != "status"}
        if "access_token" in cleaned and "issued_at" not in cleaned:
            cleaned["issued_at"] = self.clock()
        await self.store.save_credentials(state, cleaned)
        self._states[state.key] = CredentialState.VALID

    # --- Headers ---

    def build_headers(self, definition: ConnectorDefinition, credentials: dict[str, Any]) -> dict[str, str]:
        auth = definition.auth
        if auth.type == AuthType.NONE:
            return {}

        if auth.type == AuthType.OAUTH2:
            token = credentials.get("access_token")
            if not token:
                raise AuthenticationError(f"{definition.id}: missing access_token")
            token_type = credentials.get("token_type") or "Bearer"
            if token_type.lower() == "bearer":
                token_type = "Bearer"
            return {"Authorization": f"{token_type} {token}"}

        if auth.type == AuthType.BEARER:
            token = credentials.get("token") or credentials.get("access_token")
            if not token:
                raise AuthenticationError(f"{definition.id}: missing bearer token")
            return {"Authorization": f"Bearer {token}"}

        if auth.type == AuthType.API_KEY:
            key = credentials.get("api_key")
            if not key:
                raise AuthenticationError(f"{definition.id}: missing api_key")
            config = auth.api_key
            if config is not None and config.location == "query":
                return {}
            header = config.header_name if config else "Authorization"
            prefix = config.prefix if config else "Bearer"
            return {header: f"{prefix} {key}" if prefix else key}

        if auth.type == AuthType.BASIC:
            username = credentials.get("username")
            if username is None:
                raise AuthenticationError(f"{definition.id}: missing username")
            raw = f"{username}:{credentials.get('password', '')}"
            return {"Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}"}

        if auth.type == AuthType.CUSTOM:
            return {str(k): str(v) for k, v in (credentials.get("headers") or {}).items()}

        return {}

    def build_query_params(self, definition: ConnectorDefinition, credentials: dict[str, Any]) -> dict[str, str]:
        config = definition.auth.api_key
        if definition.auth.type == AuthType.API_KEY and config and config.location == "query":
            key = credentials.get("api_key")
            if not key:
                raise AuthenticationError(f"{definition.id}: missing api_key")
            return {config.query_param: key}
        return {}

    # --- OAuth2 authorization ---

    def _oauth_config(self, definition: ConnectorDefinition) -> OAuth2Config:
        if definition.auth.type != AuthType.OAUTH2 or definition.auth.oauth2 is None:
            raise ConfigurationError(f"{definition.id} does not use OAuth2")
        return definition.auth.oauth2

    @staticmethod
    def _format_url(url: str, state: ConnectorState) -> str:
        try:
            return url.format(**state.config)
        except KeyError as e:
            raise ConfigurationError(f"Missing connector config {e.args[0]!r} for {url}") from e

    def authorization_url(
        self,
        definition: ConnectorDefinition,
        state: ConnectorState,
        extra_scopes: list[str] | None = None,
    ) -> str:
        """Authorization URL carrying a fresh single-use CSRF state."""
        config = self._oauth_config(definition)
        csrf = secrets.token_urlsafe(32)
        self._oauth_states[csrf] = {
            "workspace_id": state.workspace_id,
            "connector_id": state.connector_id,
        }
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "state": csrf,
        }
        scopes = list(config.scopes) + list(extra_scopes or [])
        if scopes:
            params["scope"] = " ".join(scopes)
        base = self._format_url(config.authorization_url, state)
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode(params, quote_via=quote)}"

    def consume_oauth_state(self, value: str) -> dict[str, str]:
        """Pop a CSRF state. Unknown or reused states raise AuthenticationError."""
        stored = self._oauth_states.pop(value, None)
        if stored is None:
            raise AuthenticationError("OAuth state mismatch")
        return stored

    async def _post_form(self, url: str, data: dict[str, Any]) -> httpx.Response:
        headers = {"Accept": "application/json"}
        try:
            if self.client is not None:
                return await self.client.post(url, data=data, headers=headers, timeout=self.timeout)
            async with httpx.AsyncClient() as client:
                return await client.post(url, data=data, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Token endpoint timed out: {url}") from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Token endpoint unreachable: {url}: {e}") from e

    async def exchange_code(
        self,
        definition: ConnectorDefinition,
        state: ConnectorState,
        code: str,
        oauth_state: str | None = None,
    ) -> OAuthToken:
        """Exchange an authorization code and persist the resulting token."""
        if oauth_state is not None:
            stored = self.consume_oauth_state(oauth_state)
            if stored["workspace_id"] != state.workspace_id or stored["connector_id"] != state.connector_id:
                raise AuthenticationError("OAuth state mismatch")

        config = self._oauth_config(definition)
        resp = await self._post_form(
            self._format_url(config.token_url, state),
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.redirect_uri,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
        )
        if resp.status_code >= 400:
            raise AuthenticationError(
                f"Token exchange failed for {definition.id}: HTTP {resp.status_code}"
            )
        data = self._token_payload(resp, definition)
        token = OAuthToken.from_response(data, issued_at=self.clock())
        await self.set_credentials(state, {**_without_tokens(state.credentials), **token.to_credentials()})
        logger.info("Authorized %s for workspace %s", definition.id, state.workspace_id)
        return token

    @staticmethod
    def _token_payload(resp: httpx.Response, definition: ConnectorDefinition) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"Token endpoint for {definition.id} returned non-JSON", retryable=True) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise ProviderError(f"Token endpoint for {definition.id} returned no access_token", retryable=True)
        return data

    # --- Refresh ---

    def needs_refresh(self, definition: ConnectorDefinition, state: ConnectorState) -> bool:
        if definition.auth.type != AuthType.OAUTH2:
            return False
        token = OAuthToken.from_credentials(state.credentials)
        return token is not None and token.is_expiring(self.clock(), self.buffer_seconds)

    async def ensure_fresh(self, definition: ConnectorDefinition, state: ConnectorState) -> dict[str, Any]:
        """Credentials safe to use now, refreshing first when close to expiry."""
        if self.is_invalid(state):
            raise CredentialsInvalidError(f"Credentials for {definition.id} need re-authorization")
        if self.needs_refresh(definition, state):
            return await self.refresh(definition, state)
        return state.credentials

    async def refresh(
        self,
        definition: ConnectorDefinition,
        state: ConnectorState,
        force: bool = False,
        stale_token: str | None = None,
    ) -> dict[str, Any]:
        """Refresh credentials. Concurrent callers share one token-endpoint call.

        With ``stale_token`` set, a refresh is skipped when the stored access
        token already differs from it (another caller refreshed first).
        """
        key = state.key
        task = self._inflight.get(key)
        if task is None:
            if self.is_invalid(state):
                raise CredentialsInvalidError(f"Credentials for {definition.id} need re-authorization")
            current = state.credentials.get("access_token")
            if stale_token is not None and current and current != stale_token:
                return state.credentials
            if not force and not self.needs_refresh(definition, state):
                return state.credentials
            task = asyncio.create_task(self._refresh(definition, state))
            self._inflight[key] = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        for key, inflight in list(self._inflight.items()):
            if inflight is task:
                del self._inflight[key]

    async def _refresh(self, definition: ConnectorDefinition, state: ConnectorState) -> dict[str, Any]:
        token = OAuthToken.from_credentials(state.credentials)
        if definition.auth.type != AuthType.OAUTH2 or token is None or not token.refresh_token:
            await self.mark_invalid(state, "no refresh token available")
            raise CredentialsInvalidError(f"Credentials for {definition.id} cannot be refreshed")

        config = self._oauth_config(definition)
        self._transition(state, CredentialState.REFRESHING)
        self.refresh_count += 1
        try:
            resp = await self._post_form(
                self._format_url(config.token_url, state),
                {
                    "grant_type": "refresh_token",
                    "refresh_token": token.refresh_token,
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                },
            )
            if resp.status_code in (400, 401, 403):
                await self.mark_invalid(state, f"refresh rejected with HTTP {resp.status_code}")
                raise CredentialsInvalidError(
                    f"Refresh token for {definition.id} was rejected (HTTP {resp.status_code})"
                )
            if resp.status_code >= 400:
                raise ProviderHTTPError(resp.status_code, f"Token refresh failed for {definition.id}")
            data = self._token_payload(resp, definition)
        except CredentialsInvalidError:
            raise
        except (ProviderError, ConfigurationError):
            self._transition(state, CredentialState.EXPIRING)
            raise

        new_token = OAuthToken.from_response(data, issued_at=self.clock(), previous=token)
        credentials = {**state.credentials, **new_token.to_credentials()}
        credentials.pop("status", None)
        await self.store.save_credentials(state, credentials)
        self._transition(state, CredentialState.VALID)
        logger.info("Refreshed credentials for %s/%s", state.workspace_id, state.connector_id)
        return credentials

    # --- Revocation & scopes ---

    async def revoke(self, definition: ConnectorDefinition, state: ConnectorState) -> bool:
        """Revoke the access token at the provider and drop stored tokens."""
        token = OAuthToken.from_credentials(state.credentials)
        if token is None:
            return False
        config = definition.auth.oauth2
        if config and config.revoke_url:
            try:
                resp = await self._post_form(
                    self._format_url(config.revoke_url, state),
                    {"token": token.access_token, "client_id": config.client_id},
                )
                if resp.status_code >= 400:
                    logger.warning("Revocation for %s returned HTTP %s", definition.id, resp.status_code)
            except ProviderError as e:
                logger.warning("Revocation for %s failed: %s", definition.id, e)
        await self.store.save_credentials(state, _without_tokens(state.credentials))
        self._states.pop(state.key, None)
        return True

    def has_scopes(self, state: ConnectorState, required: list[str]) -> bool:
        granted = set(_split_scopes(state.credentials.get("scope")))
        return all(s in granted for s in required)


def _without_tokens(credentials: dict[str, Any]) -> dict[str, Any]:
    token_keys = {"access_token", "refresh_token", "token_type", "expires_in", "issued_at", "scope", "status"}
    return {k: v for k, v in credentials.items() if k not in token_keys}
