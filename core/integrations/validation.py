"""Connector definition validation.

Run once at registration; an invalid definition never reaches a sync.
"""

from __future__ import annotations

import re
from typing import Iterable

from core.integrations.errors import InvalidDefinitionError
from core.integrations.normalizer import COERCIONS
from core.integrations.types import AuthType, ConnectorDefinition

_SLUG = re.compile(r"^[a-z0-9-]+$")
_SEMVER = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$")
_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


def definition_problems(
    definition: ConnectorDefinition,
    custom_coercions: Iterable[str] = (),
) -> list[str]:
    """Return every problem found in ``definition`` (empty when valid)."""
    problems: list[str] = []

    if not definition.id:
        problems.append("id is required")
    if not definition.name:
        problems.append("name is required")
    if not definition.slug or not _SLUG.match(definition.slug):
        problems.append("slug must match ^[a-z0-9-]+$")
    if not _SEMVER.match(definition.version or ""):
        problems.append("version must be semver (x.y.z)")

    auth = definition.auth
    if auth.type == AuthType.OAUTH2:
        if auth.oauth2 is None:
            problems.append("oauth2 auth requires an OAuth2 config")
        elif not auth.oauth2.authorization_url or not auth.oauth2.token_url:
            problems.append("oauth2 config requires authorization_url and token_url")

    if not definition.entities:
        problems.append("at least one entity is required")
    seen = set()
    for entity in definition.entities:
        if entity.name in seen:
            problems.append(f"entity {entity.name.value} is declared twice")
        seen.add(entity.name)
        if not entity.target_table:
            problems.append(f"entity {entity.name.value} requires target_table")
        if not entity.primary_key:
            problems.append(f"entity {entity.name.value} requires primary_key")

    for endpoint in definition.endpoints:
        if endpoint.method.upper() not in _METHODS:
            problems.append(f"endpoint {endpoint.name} has invalid method {endpoint.method}")
        if not endpoint.path:
            problems.append(f"endpoint {endpoint.name} requires a path")

    known = set(COERCIONS) | set(custom_coercions)
    for entity_type, transform in definition.transforms.items():
        if transform.entity != entity_type:
            problems.append(f"transform keyed {entity_type.value} targets {transform.entity.value}")
        if entity_type not in seen:
            problems.append(f"transform for undeclared entity {entity_type.value}")
        if not transform.mappings:
            problems.append(f"transform {entity_type.value} has no mappings")
        for mapping in transform.mappings:
            if not mapping.source or not mapping.target:
                problems.append(f"transform {entity_type.value} has a mapping without source/target")
            if mapping.coerce is not None and mapping.coerce not in known:
                problems.append(
                    f"transform {entity_type.value} uses unknown coercion {mapping.coerce!r}"
                )

    for entity in definition.entities:
        if entity.enabled and entity.name not in definition.transforms:
            problems.append(f"enabled entity {entity.name.value} has no transform")

    return problems


def validate_connector_definition(
    definition: ConnectorDefinition,
    custom_coercions: Iterable[str] = (),
) -> None:
    """Raise InvalidDefinitionError when ``definition`` has any problem."""
    problems = definition_problems(definition, custom_coercions)
    if problems:
        raise InvalidDefinitionError(definition.id or "<unnamed>", problems)
