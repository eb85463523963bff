"""Connector registry mapping provider slugs to connector classes."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.integrations.adapter_base import BaseConnector
from core.integrations.auth_manager import AuthManager
from core.integrations.errors import ConfigurationError, UnsupportedProviderError
from core.integrations.types import ConnectorDefinition, ConnectorState
from core.integrations.validation import validate_connector_definition

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Registry of available connector implementations.

    Populated at startup, then frozen; lookups afterwards are read-only.

    Example:
        registry = ConnectorRegistry()
        registry.register(StripeConnector)
        registry.freeze()

        connector = registry.create("stripe", state, auth)
    """

    def __init__(self):
        self._connectors: dict[str, type[BaseConnector]] = {}
        self._frozen = False

    def register(self, connector_class: type[BaseConnector]) -> type[BaseConnector]:
        """Validate and register a connector class under its definition slug.

        Returns the class so it can be used as a decorator.
        """
        if self._frozen:
            raise ConfigurationError("Connector registry is frozen")
        definition = connector_class.definition
        validate_connector_definition(definition, connector_class.coercions.keys())
        if definition.slug in self._connectors:
            raise ConfigurationError(f"Connector {definition.slug!r} is already registered")
        self._connectors[definition.slug] = connector_class
        logger.debug("Registered connector: %s", definition.slug)
        return connector_class

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, provider: str) -> type[BaseConnector]:
        connector_class = self._connectors.get(provider)
        if connector_class is None:
            raise UnsupportedProviderError(provider, self._connectors.keys())
        return connector_class

    def definition(self, provider: str) -> ConnectorDefinition:
        return self.get(provider).definition

    def create(
        self,
        provider: str,
        state: ConnectorState,
        auth: AuthManager,
        client: Optional[httpx.AsyncClient] = None,
    ) -> BaseConnector:
        """Instantiate the connector for ``provider`` bound to one workspace state."""
        return self.get(provider)(state, auth, client=client)

    def list_providers(self) -> list[str]:
        return sorted(self._connectors)

    def definitions(self) -> list[ConnectorDefinition]:
        return [self._connectors[slug].definition for slug in self.list_providers()]

    def is_registered(self, provider: str) -> bool:
        return provider in self._connectors
