"""Test webhook signatures and the gateway's verify → dedupe → apply pipeline."""
import hashlib
import hmac
import json

import pytest

from core.integrations import webhooks
from core.integrations.auth_manager import AuthManager
from core.integrations.errors import UnsupportedProviderError
from core.integrations.persistence import InMemoryPersistence
from core.integrations.registry import ConnectorRegistry
from core.integrations.state_store import ConnectorStateStore
from core.integrations.types import EntityType
from core.integrations.webhooks import (
    WebhookGateway,
    compute_base64_hmac,
    compute_signature,
    constant_time_equals,
    resolve_signing_secret,
    verify_base64_hmac,
    verify_timestamped_signature,
)
from providers import build_default_registry

from fakes import FakeConnector, seeded

SECRET = "whsec_test"


def _signed(payload: dict, secret: str = SECRET, timestamp: int = 1700000000) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    header = f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"
    return body, {"X-Fake-Signature": header, "Content-Type": "application/json"}


async def _gateway(environ=None, persistence=None, tolerance_seconds=None):
    stored, store, auth, state = await seeded()
    persistence = persistence or stored
    store.persistence = persistence
    await store.save(state)
    registry = ConnectorRegistry()
    registry.register(FakeConnector)
    registry.freeze()
    gateway = WebhookGateway(
        registry,
        store,
        persistence,
        auth,
        environ={"FAKE_WEBHOOK_SECRET": SECRET} if environ is None else environ,
        app_url="https://hooks.example.com/",
        tolerance_seconds=tolerance_seconds,
    )
    return gateway, persistence


# --- Signatures ---

def test_example_signature_matches_reference_hmac():
    body = b'{"id":"evt_1"}'
    expected = hmac.new(b"whsec_test", b'1700000000.{"id":"evt_1"}', hashlib.sha256).hexdigest()
    assert compute_signature("whsec_test", 1700000000, body) == expected
    assert verify_timestamped_signature(body, f"t=1700000000,v1={expected}", "whsec_test")
    assert not verify_timestamped_signature(body, f"t=1700000000,v1={expected.upper()}", "whsec_test")


def test_any_single_byte_flip_is_rejected():
    body = b'{"id":"evt_1","type":"customer.updated"}'
    header = f"t=1700000000,v1={compute_signature(SECRET, 1700000000, body)}"
    for index in range(len(body)):
        tampered = bytearray(body)
        tampered[index] ^= 0x01
        assert not verify_timestamped_signature(bytes(tampered), header, SECRET)


def test_length_mismatch_skips_byte_comparison(monkeypatch):
    compared = []
    monkeypatch.setattr(webhooks.hmac, "compare_digest", lambda a, b: compared.append((a, b)) or False)
    assert constant_time_equals("abcd", "abcdef") is False
    assert compared == []
    assert constant_time_equals("abcd", "abcx") is False
    assert len(compared) == 1


def test_signature_header_edge_cases():
    body = b"{}"
    good = compute_signature(SECRET, 1700000000, body)
    assert verify_timestamped_signature(body, f"t=1700000000,v1=deadbeef,v1={good}", SECRET)
    assert not verify_timestamped_signature(body, f"v1={good}", SECRET)
    assert not verify_timestamped_signature(body, "t=1700000000", SECRET)
    assert not verify_timestamped_signature(body, None, SECRET)
    assert not verify_timestamped_signature(body, f"t=1700000000,v1={good}", "")


def test_replay_window():
    body = b"{}"
    header = f"t=1700000000,v1={compute_signature(SECRET, 1700000000, body)}"
    assert verify_timestamped_signature(body, header, SECRET, tolerance_seconds=300, now=1700000100)
    assert not verify_timestamped_signature(body, header, SECRET, tolerance_seconds=300, now=1700000400)


def test_base64_hmac():
    body = b'{"id":1}'
    signature = compute_base64_hmac("shpss_secret", body)
    assert verify_base64_hmac(body, signature, "shpss_secret")
    assert not verify_base64_hmac(body + b" ", signature, "shpss_secret")
    assert not verify_base64_hmac(body, None, "shpss_secret")


def test_secret_resolution_prefers_environment():
    assert resolve_signing_secret("fake", None, {"FAKE_WEBHOOK_SECRET": "env"}) == "env"
    assert resolve_signing_secret("fake", None, {}) is None


# --- Gateway ---

@pytest.mark.asyncio
async def test_gateway_applies_verified_event():
    gateway, persistence = await _gateway()
    body, headers = _signed({
        "id": "evt_1",
        "type": "customer.updated",
        "object": {"id": "cus_9", "email": "new@example.com", "vip": "yes"},
    })

    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")

    assert result.status_code == 200
    assert result.to_dict() == {
        "received": True,
        "eventId": "evt_1",
        "action": "created",
        "objectId": "cus_9",
        "message": "Customer created",
    }
    entity = persistence.get_entity("ws-1", "fake", EntityType.CUSTOMER, "cus_9")
    assert entity.email == "new@example.com"
    assert entity.metadata == {"vip": True}


@pytest.mark.asyncio
async def test_gateway_dedupes_redelivery():
    gateway, persistence = await _gateway()
    body, headers = _signed({"id": "evt_2", "type": "customer.updated", "object": {"id": "cus_1"}})

    first = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    second = await gateway.handle("fake", body, headers, workspace_id="ws-1")

    assert first.action == "created"
    assert second.status_code == 200
    assert second.action == "skipped"
    assert second.message == "Duplicate event"
    assert persistence.upsert_calls == 1


@pytest.mark.asyncio
async def test_gateway_rejects_bad_signature_without_side_effects():
    gateway, persistence = await _gateway()
    body, headers = _signed({"id": "evt_3", "type": "customer.updated", "object": {"id": "cus_1"}}, secret="wrong")

    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")

    assert result.status_code == 401
    assert result.to_dict() == {"error": "Invalid signature", "eventId": "evt_3"}
    assert persistence.upsert_calls == 0
    # The rejected id was never reserved, so a correctly signed retry applies
    body, headers = _signed({"id": "evt_3", "type": "customer.updated", "object": {"id": "cus_1"}})
    assert (await gateway.handle("fake", body, headers, workspace_id="ws-1")).status_code == 200


@pytest.mark.asyncio
async def test_gateway_unknown_provider():
    gateway, _ = await _gateway()
    result = await gateway.handle("paypal", b"{}", {}, workspace_id="ws-1")
    assert result.status_code == 400
    assert result.to_dict() == {"error": "Unsupported provider", "supportedProviders": ["fake"]}


@pytest.mark.asyncio
async def test_gateway_without_secret_is_not_configured():
    gateway, _ = await _gateway(environ={})
    body, headers = _signed({"id": "evt_4", "type": "customer.updated", "object": {"id": "c"}})
    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert result.status_code == 500
    assert result.error == "Webhook not configured"


@pytest.mark.asyncio
async def test_gateway_uses_stored_secret():
    gateway, _ = await _gateway(environ={})
    state = await gateway.store.load("ws-1", "fake")
    await gateway.store.save_credentials(state, {**state.credentials, "webhook_secret": "whsec_stored"})
    body, headers = _signed({"id": "evt_5", "type": "customer.updated", "object": {"id": "c"}}, secret="whsec_stored")
    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert result.status_code == 200


@pytest.mark.asyncio
async def test_gateway_malformed_payload():
    gateway, _ = await _gateway()
    body = b"not json"
    header = f"t=1700000000,v1={compute_signature(SECRET, 1700000000, body)}"
    result = await gateway.handle("fake", body, {"x-fake-signature": header}, workspace_id="ws-1")
    assert result.status_code == 400
    assert result.error == "Malformed payload"


@pytest.mark.asyncio
async def test_gateway_ignores_unhandled_event_types():
    gateway, persistence = await _gateway()
    body, headers = _signed({"id": "evt_6", "type": "charge.refunded", "object": {"id": "ch_1"}})
    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert result.status_code == 200
    assert result.action == "ignored"
    assert persistence.upsert_calls == 0


@pytest.mark.asyncio
async def test_gateway_deletion_event():
    gateway, persistence = await _gateway()
    created, headers = _signed({"id": "evt_7", "type": "customer.updated", "object": {"id": "cus_2", "email": "a@b.co"}})
    await gateway.handle("fake", created, headers, workspace_id="ws-1")
    deleted, headers = _signed({"id": "evt_8", "type": "customer.deleted", "object": {"id": "cus_2"}})

    result = await gateway.handle("fake", deleted, headers, workspace_id="ws-1")

    assert result.action == "deleted"
    record = persistence.get_record("ws-1", "fake", EntityType.CUSTOMER, "cus_2")
    assert record["deleted"] is True
    assert record["email"] == "a@b.co"


@pytest.mark.asyncio
async def test_gateway_transform_failure_releases_event():
    gateway, persistence = await _gateway()
    bad, headers = _signed({"id": "evt_9", "type": "customer.updated", "object": {"email": "no-id@b.co"}})

    result = await gateway.handle("fake", bad, headers, workspace_id="ws-1")

    assert result.status_code == 422
    assert result.event_id == "evt_9"
    assert persistence.upsert_calls == 0
    # Released, so the provider's retry is processed rather than skipped
    retry = await gateway.handle("fake", bad, headers, workspace_id="ws-1")
    assert retry.status_code == 422


class _FailingPersistence(InMemoryPersistence):
    def __init__(self):
        super().__init__()
        self.fail = True

    async def upsert(self, workspace_id, connector_id, entity):
        if self.fail:
            raise RuntimeError("database unavailable")
        return await super().upsert(workspace_id, connector_id, entity)


@pytest.mark.asyncio
async def test_gateway_persistence_failure_allows_retry():
    persistence = _FailingPersistence()
    gateway, _ = await _gateway(persistence=persistence)
    body, headers = _signed({"id": "evt_10", "type": "customer.updated", "object": {"id": "cus_3"}})

    failed = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert failed.status_code == 500
    assert failed.to_dict() == {"error": "Failed to process webhook", "eventId": "evt_10"}

    persistence.fail = False
    retried = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert retried.status_code == 200
    assert retried.action == "created"


@pytest.mark.asyncio
async def test_gateway_replay_window_rejects_old_events():
    gateway, _ = await _gateway(tolerance_seconds=300)
    body, headers = _signed({"id": "evt_11", "type": "customer.updated", "object": {"id": "c"}}, timestamp=1)
    result = await gateway.handle("fake", body, headers, workspace_id="ws-1")
    assert result.status_code == 401


@pytest.mark.asyncio
async def test_describe_endpoint():
    gateway, _ = await _gateway()
    info = await gateway.describe("fake", workspace_id="ws-1")
    assert info == {
        "provider": "fake",
        "status": "configured",
        "supportedEvents": ["customer.updated", "customer.deleted", "order.created"],
        "webhookUrl": "https://hooks.example.com/webhooks/fake",
    }
    with pytest.raises(UnsupportedProviderError):
        await gateway.describe("paypal")


# --- Robustness against hostile input ---

NOT_AN_EVENT = [
    b"[1, 2, 3]",
    b'{"id": "\xc3\x28", "type": "customer.created"}',
    b"not json",
    b"",
]

# Parse as JSON objects but carry a non-object 'data'
BAD_STRIPE_DATA = [
    b'{"id": "evt_1", "type": "customer.created", "data": [1]}',
    b'{"id": "evt_1", "type": "customer.created", "data": "cus_1"}',
]

PROVIDER_SECRETS = {"STRIPE_WEBHOOK_SECRET": "whsec_live", "SHOPIFY_WEBHOOK_SECRET": "shpss_live"}


def _provider_gateway(persistence=None):
    persistence = persistence or InMemoryPersistence()
    store = ConnectorStateStore(persistence)
    return WebhookGateway(
        build_default_registry(),
        store,
        persistence,
        AuthManager(store),
        environ=PROVIDER_SECRETS,
    ), persistence


def _provider_headers(provider: str, body: bytes, signed: bool) -> dict:
    if provider == "stripe":
        signature = compute_signature("whsec_live", 1700000000, body) if signed else "00"
        return {"Stripe-Signature": f"t=1700000000,v1={signature}"}
    return {
        "X-Shopify-Hmac-Sha256": compute_base64_hmac("shpss_live", body) if signed else "AAAA",
        "X-Shopify-Webhook-Id": "wh-1",
        "X-Shopify-Topic": "customers/create",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["stripe", "shopify"])
@pytest.mark.parametrize("body", NOT_AN_EVENT + BAD_STRIPE_DATA)
async def test_unsigned_malformed_body_is_401_not_a_crash(provider, body):
    """Garbage with a bad signature is rejected as unauthenticated."""
    gateway, persistence = _provider_gateway()
    result = await gateway.handle(provider, body, _provider_headers(provider, body, signed=False), "ws-1")
    assert result.status_code == 401
    assert result.error == "Invalid signature"
    assert persistence.upsert_calls == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["stripe", "shopify"])
@pytest.mark.parametrize("body", NOT_AN_EVENT)
async def test_signed_malformed_body_is_400(provider, body):
    """A correctly signed body that is not a usable event is a bad request."""
    gateway, persistence = _provider_gateway()
    result = await gateway.handle(provider, body, _provider_headers(provider, body, signed=True), "ws-1")
    assert result.status_code == 400
    assert result.error == "Malformed payload"
    assert persistence.upsert_calls == 0


class _UnreadablePersistence(InMemoryPersistence):
    async def get_connector_state(self, workspace_id, connector_id):
        raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_state_load_failure_is_500_result():
    """Storage outages before verification still produce a structured result."""
    gateway, _ = _provider_gateway(persistence=_UnreadablePersistence())
    body = b'{"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}'
    result = await gateway.handle("stripe", body, _provider_headers("stripe", body, signed=True), "ws-1")
    assert result.status_code == 500
    assert result.error == "Failed to process webhook"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", BAD_STRIPE_DATA)
async def test_signed_stripe_event_with_non_object_data_is_400(body):
    """Stripe events must wrap their object in a 'data' mapping."""
    gateway, _ = _provider_gateway()
    result = await gateway.handle("stripe", body, _provider_headers("stripe", body, signed=True), "ws-1")
    assert result.status_code == 400
