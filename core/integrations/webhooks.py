"""
SyncHub Webhook Gateway — Inbound Event Verification.

Authenticates and applies provider-pushed events:
- Provider resolution against the connector registry
- Signing secret lookup ({PROVIDER}_WEBHOOK_SECRET env, then stored secret)
- HMAC-SHA256 verification over the exact raw body, constant-time compare
- Duplicate event suppression (idempotency store)
- Event → normalized entity → upsert

Signature helpers cover the two schemes in use:
- Timestamped: "t=<unix>,v1=<hex>" over "<t>.<raw body>"
- Body HMAC, base64 encoded
"""
from __future__ import annotations
from typing import Any, Mapping, Optional
import base64
import hashlib
import hmac
import logging
import os
import time

from core.integrations.auth_manager import AuthManager
from core.integrations.errors import TransformError, UnsupportedProviderError
from core.integrations.persistence import Persistence
from core.integrations.registry import ConnectorRegistry
from core.integrations.state_store import ConnectorStateStore
from core.integrations.types import ConnectorState, WebhookResult
from core.observability.otel_setup import set_span_attributes, start_span
from core.resilience.idempotency import IdempotencyStore, webhook_event_key

logger = logging.getLogger(__name__)

STORED_SECRET_KEY = "webhook_secret"


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def _as_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def constant_time_equals(expected: str | bytes, received: str | bytes) -> bool:
    """Compare two signatures. Unequal lengths are rejected before any byte comparison."""
    a, b = _as_bytes(expected), _as_bytes(received)
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def compute_signature(secret: str, timestamp: str | int, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of "<timestamp>.<raw body>"."""
    message = f"{timestamp}.".encode("utf-8") + _as_bytes(raw_body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[Optional[str], list[str]]:
    """Split "t=...,v1=...,v1=..." into (timestamp, [signatures])."""
    timestamp: Optional[str] = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_timestamped_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    if not header or not secret:
        return False
    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        return False
    if tolerance_seconds is not None:
        try:
            age = (now if now is not None else time.time()) - int(timestamp)
        except ValueError:
            return False
        if abs(age) > tolerance_seconds:
            return False
    expected = compute_signature(secret, timestamp, raw_body)
    return any(constant_time_equals(expected, candidate) for candidate in signatures)


def compute_base64_hmac(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(raw_body), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_base64_hmac(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    return constant_time_equals(compute_base64_hmac(secret, raw_body), signature.strip())


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def secret_env_var(provider: str) -> str:
    return f"{provider.upper().replace('-', '_')}_WEBHOOK_SECRET"


def resolve_signing_secret(
    provider: str,
    state: Optional[ConnectorState],
    environ: Mapping[str, str],
) -> Optional[str]:
    """Environment first, then the secret stored with the connector."""
    env_secret = environ.get(secret_env_var(provider))
    if env_secret:
        return env_secret
    if state is not None:
        stored = state.credentials.get(STORED_SECRET_KEY)
        if stored:
            return str(stored)
    return None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class WebhookGateway:
    """Routes one inbound provider request to its connector and persistence."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        store: ConnectorStateStore,
        persistence: Persistence,
        auth: AuthManager,
        idempotency: Optional[IdempotencyStore] = None,
        tracer=None,
        environ: Optional[Mapping[str, str]] = None,
        app_url: str = "",
        tolerance_seconds: Optional[int] = None,
    ):
        self.registry = registry
        self.store = store
        self.persistence = persistence
        self.auth = auth
        self.idempotency = idempotency or IdempotencyStore()
        self.tracer = tracer
        self.environ = environ if environ is not None else os.environ
        self.app_url = app_url.rstrip("/")
        self.tolerance_seconds = tolerance_seconds

    def _unsupported(self, provider: str) -> WebhookResult:
        logger.warning("Unsupported webhook provider: %s", provider)
        return WebhookResult(
            success=False,
            status_code=400,
            error="Unsupported provider",
            supported_providers=tuple(self.registry.list_providers()),
        )

    async def handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        workspace_id: str = "default",
    ) -> WebhookResult:
        """Verify, dedupe and apply one webhook. Never raises."""
        if not self.registry.is_registered(provider):
            return self._unsupported(provider)

        with start_span(self.tracer, f"webhook.{provider}", {"webhook.provider": provider}) as span:
            try:
                result = await self._handle(provider, raw_body, normalize_headers(headers), workspace_id)
            except Exception:
                logger.exception("Handling %s webhook crashed", provider)
                result = WebhookResult(success=False, status_code=500, error="Failed to process webhook")
            set_span_attributes(
                span,
                **{
                    "webhook.status": result.status_code,
                    "webhook.event_id": result.event_id,
                    "webhook.action": result.action,
                },
            )
            return result

    async def _handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: dict[str, str],
        workspace_id: str,
    ) -> WebhookResult:
        definition = self.registry.definition(provider)
        try:
            state = await self.store.load(workspace_id, definition.id)
        except Exception:
            logger.exception("Loading %s state for workspace %s failed", provider, workspace_id)
            return WebhookResult(success=False, status_code=500, error="Failed to process webhook")
        secret = resolve_signing_secret(provider, state, self.environ)
        if not secret:
            logger.error("No signing secret configured for %s", provider)
            return WebhookResult(success=False, status_code=500, error="Webhook not configured")

        try:
            connector = self.registry.create(provider, state, self.auth)
        except Exception:
            logger.exception("Building %s connector failed", provider)
            return WebhookResult(success=False, status_code=500, error="Failed to process webhook")
        connector.webhook_tolerance_seconds = self.tolerance_seconds

        try:
            verified = connector.verify_webhook(raw_body, headers, secret)
        except Exception as e:
            logger.warning("Signature check for %s raised: %s", provider, e)
            verified = False
        if not verified:
            event_id = self._peek_event_id(connector, raw_body, headers)
            logger.warning("Webhook signature verification failed for %s (event=%s)", provider, event_id)
            return WebhookResult(
                success=False,
                status_code=401,
                event_id=event_id,
                error="Invalid signature",
            )

        try:
            event = connector.read_webhook_event(raw_body, headers)
        except Exception as e:
            logger.warning("Malformed %s webhook payload: %s", provider, e)
            return WebhookResult(success=False, status_code=400, error="Malformed payload")

        key = webhook_event_key(provider, workspace_id, event.id)
        if not self.idempotency.reserve(key, scope=f"{workspace_id}/{provider}"):
            logger.info("Duplicate %s event %s skipped", provider, event.id)
            return WebhookResult(
                success=True,
                status_code=200,
                event_id=event.id,
                action="skipped",
                object_id=event.object_id,
                message="Duplicate event",
            )

        try:
            entity = connector.parse_webhook(event)
        except TransformError as e:
            self.idempotency.release(key)
            logger.warning("Could not map %s event %s (%s): %s", provider, event.id, event.type, e)
            return WebhookResult(
                success=False,
                status_code=422,
                event_id=event.id,
                error=f"Invalid event data: {e}",
            )
        except Exception:
            self.idempotency.release(key)
            logger.exception("Processing %s event %s crashed", provider, event.id)
            return WebhookResult(
                success=False,
                status_code=500,
                event_id=event.id,
                error="Failed to process webhook",
            )

        if entity is None:
            self.idempotency.complete(key, "ignored")
            return WebhookResult(
                success=True,
                status_code=200,
                event_id=event.id,
                action="ignored",
                object_id=event.object_id,
                message=f"Unhandled event type: {event.type}",
            )

        try:
            outcome = await self.persistence.upsert(workspace_id, definition.id, entity)
        except Exception:
            self.idempotency.release(key)
            logger.exception("Persisting %s event %s failed", provider, event.id)
            return WebhookResult(
                success=False,
                status_code=500,
                event_id=event.id,
                error="Failed to process webhook",
            )

        action = connector.webhook_action(event, outcome)
        self.idempotency.complete(key, action)
        logger.info("Applied %s event %s (%s): %s", provider, event.id, event.type, action)
        return WebhookResult(
            success=True,
            status_code=200,
            event_id=event.id,
            action=action,
            object_id=event.object_id or entity.external_id,
            message=f"{entity.entity_type.value.capitalize()} {action}",
        )

    @staticmethod
    def _peek_event_id(connector, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        try:
            return connector.read_webhook_event(raw_body, headers).id
        except Exception:
            # Unverified input: any parse failure just hides the id
            return None

    async def describe(self, provider: str, workspace_id: str = "default") -> dict[str, Any]:
        """Endpoint info. Raises UnsupportedProviderError for unknown providers."""
        if not self.registry.is_registered(provider):
            raise UnsupportedProviderError(provider, self.registry.list_providers())
        definition = self.registry.definition(provider)
        state = await self.store.load(workspace_id, definition.id)
        secret = resolve_signing_secret(provider, state, self.environ)
        return {
            "provider": provider,
            "status": "configured" if secret else "not_configured",
            "supportedEvents": list(definition.webhooks.events) if definition.webhooks else [],
            "webhookUrl": f"{self.app_url}/webhooks/{provider}",
        }
