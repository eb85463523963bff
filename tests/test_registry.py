"""Test connector registration, definition validation and the connector contract."""
import dataclasses

import httpx
import pytest

from core.integrations.adapter_base import BaseConnector
from core.integrations.errors import (
    ConfigurationError,
    InvalidDefinitionError,
    ProviderHTTPError,
    ProviderNetworkError,
    UnsupportedProviderError,
)
from core.integrations.registry import ConnectorRegistry
from core.integrations.types import EntityType, FieldMapping, TransformDefinition
from core.integrations.validation import definition_problems

from fakes import FAKE_DEFINITION, FakeConnector, seeded


def _with(**changes):
    return dataclasses.replace(FAKE_DEFINITION, **changes)


# --- Registry ---

def test_register_and_create():
    registry = ConnectorRegistry()
    registry.register(FakeConnector)
    assert registry.is_registered("fake")
    assert registry.list_providers() == ["fake"]
    assert registry.definition("fake") is FAKE_DEFINITION


def test_duplicate_registration_rejected():
    registry = ConnectorRegistry()
    registry.register(FakeConnector)
    with pytest.raises(ConfigurationError, match="already registered"):
        registry.register(FakeConnector)


def test_frozen_registry_rejects_registration():
    registry = ConnectorRegistry()
    registry.freeze()
    assert registry.frozen
    with pytest.raises(ConfigurationError, match="frozen"):
        registry.register(FakeConnector)


def test_unknown_provider_lists_supported():
    registry = ConnectorRegistry()
    registry.register(FakeConnector)
    with pytest.raises(UnsupportedProviderError) as exc:
        registry.get("paypal")
    assert exc.value.supported == ("fake",)


def test_invalid_definition_is_rejected_at_registration():
    class Broken(FakeConnector):
        definition = _with(slug="Not A Slug", version="v1")

    registry = ConnectorRegistry()
    with pytest.raises(InvalidDefinitionError) as exc:
        registry.register(Broken)
    assert "slug must match ^[a-z0-9-]+$" in exc.value.problems
    assert "version must be semver (x.y.z)" in exc.value.problems
    assert not registry.is_registered("Not A Slug")


def test_subclass_without_definition_fails_fast():
    with pytest.raises(TypeError, match="definition"):
        class NoDefinition(BaseConnector):  # noqa: F841
            base_url = "https://x.test"


# --- Validation ---

def test_valid_definition_has_no_problems():
    assert definition_problems(FAKE_DEFINITION) == []


def test_enabled_entity_without_transform():
    transforms = {k: v for k, v in FAKE_DEFINITION.transforms.items() if k != EntityType.ORDER}
    problems = definition_problems(_with(transforms=transforms))
    assert "enabled entity order has no transform" in problems


def test_unknown_coercion_is_reported():
    transforms = dict(FAKE_DEFINITION.transforms)
    transforms[EntityType.ORDER] = TransformDefinition(
        entity=EntityType.ORDER,
        mappings=(FieldMapping("id", "external_id", coerce="roman"),),
    )
    problems = definition_problems(_with(transforms=transforms))
    assert "transform order uses unknown coercion 'roman'" in problems
    assert definition_problems(_with(transforms=transforms), custom_coercions=["roman"]) == []


def test_duplicate_entities_and_empty_list():
    entities = FAKE_DEFINITION.entities + (FAKE_DEFINITION.entities[0],)
    assert "entity customer is declared twice" in definition_problems(_with(entities=entities))
    assert "at least one entity is required" in definition_problems(_with(entities=(), transforms={}))


# --- Contract ---

@pytest.mark.asyncio
async def test_test_connection_never_raises():
    _, _, auth, state = await seeded()
    connector = FakeConnector(state, auth)
    assert (await connector.test_connection()).connected is True

    connector.rejected_tokens = {"at-1"}
    status = await connector.test_connection()
    assert status.connected is False
    assert "unauthorized" in status.error


@pytest.mark.asyncio
async def test_request_pipeline_translates_errors():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/missing":
            return httpx.Response(404, text="not found")
        if request.url.path == "/busy":
            return httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")
        if request.url.path == "/down":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"ok": True})

    _, _, auth, state = await seeded()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    connector = FakeConnector(state, auth, client=client)

    assert await connector.get("/ping", {"q": "1"}) == {"ok": True}
    assert seen[0].headers["Authorization"] == "Bearer at-1"
    assert seen[0].url.params["q"] == "1"

    with pytest.raises(ProviderHTTPError) as missing:
        await connector.get("/missing")
    assert missing.value.retryable is False

    with pytest.raises(ProviderHTTPError) as busy:
        await connector.get("/busy")
    assert busy.value.code == "rate_limited"
    assert busy.value.retry_after == 7.0
    assert busy.value.retryable is True

    with pytest.raises(ProviderNetworkError):
        await connector.get("/down")

    health = connector.get_health()
    assert health.total_requests == 4
    assert health.failed_requests == 3


@pytest.mark.asyncio
async def test_url_placeholders_need_config():
    _, _, auth, state = await seeded()

    class Templated(FakeConnector):
        base_url = "https://{shop}.fake.test/api"

    connector = Templated(state, auth)
    with pytest.raises(ConfigurationError, match="shop"):
        connector.url_for("/orders")
    connector.state.config["shop"] = "acme"
    assert connector.url_for("/orders") == "https://acme.fake.test/api/orders"
